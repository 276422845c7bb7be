"""
Error taxonomy.

Per-image outcomes (class/method not found, tool failures on one image) are
reported as attempt results, not raised past the orchestrator. Everything
here that reaches the pipeline driver ends the run.
"""

from enum import Enum


class PatchError(Exception):
    """Base class for every failure the engine raises."""


class ConfigError(PatchError):
    pass


class NoCandidateImages(PatchError):
    """The archive holds no recognizable classes*.dex image."""


class EntryNotFound(PatchError):
    pass


class IOFailure(PatchError):
    """Filesystem or archive read/write problem. Always fatal."""


class DisassemblyError(PatchError):
    pass


class AssemblyError(PatchError):
    pass


class SigningError(PatchError):
    pass


class FailureCause(Enum):
    NO_CANDIDATE_IMAGES = "no-candidate-images"
    TARGET_NOT_FOUND    = "target-not-found"
    IO_FAILURE          = "io-failure"
    SIGNING_ERROR       = "signing-error"
