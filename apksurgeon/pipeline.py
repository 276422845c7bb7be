"""
Pipeline driver.

  ① copy input APK into a private temp root
  ② order classes*.dex candidates (highest first)
  ③ try each image until one is patched
  ④ rebuild the archive around the patched image (signatures stripped)
  ⑤ sign with the caller's material
  ⑥ temp root released on every exit path
"""

import shutil
import tempfile
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from . import rebuilder
from .config import DEFAULT_PATCH, MIN_SDK, PatchSpec
from .errors import FailureCause, IOFailure, NoCandidateImages, PatchError, SigningError
from .log import err, info, ok, warn
from .orchestrator import AttemptResult, PatchOrchestrator, Progress
from .selector import select_from_archive
from .signing import SignerEntry


@dataclass
class PipelineResult:
    success: bool
    message: str
    output: Optional[Path] = None
    cause: Optional[FailureCause] = None
    error: Optional[BaseException] = None
    patched_entry: Optional[str] = None
    unsigned_output: Optional[Path] = None
    attempts: List[AttemptResult] = field(default_factory=list)


def _log_progress(msg: str) -> None:
    info(msg)


class PatchPipeline:
    def __init__(self, disassembler, assembler, signer,
                 spec: PatchSpec = DEFAULT_PATCH,
                 min_sdk: int = MIN_SDK,
                 progress: Optional[Progress] = None,
                 temp_root: Optional[Path] = None,
                 keep_unsigned: bool = False):
        self.spec = spec
        self.disassembler = disassembler
        self.assembler = assembler
        self.signer = signer
        self.min_sdk = min_sdk
        self.progress = progress or _log_progress
        self.temp_root = temp_root
        self.keep_unsigned = keep_unsigned

    def run(self, input_apk: Path, output_apk: Path,
            material: Sequence[SignerEntry]) -> PipelineResult:
        input_apk, output_apk = Path(input_apk), Path(output_apk)
        attempts: List[AttemptResult] = []
        try:
            with tempfile.TemporaryDirectory(prefix="apk_processing_", dir=self.temp_root) as tmp:
                return self._run(Path(tmp), input_apk, output_apk, material, attempts)
        except NoCandidateImages as exc:
            warn(str(exc))
            self.progress(f"Error: {exc}")
            return PipelineResult(False, str(exc), cause=FailureCause.NO_CANDIDATE_IMAGES,
                                  error=exc, attempts=attempts)
        except (PatchError, OSError) as exc:
            err(f"Processing failed: {exc}")
            self.progress(f"Error: {exc}")
            return PipelineResult(False, f"Processing failed: {exc}",
                                  cause=FailureCause.IO_FAILURE, error=exc, attempts=attempts)

    def _run(self, tmp: Path, input_apk: Path, output_apk: Path,
             material: Sequence[SignerEntry], attempts: List[AttemptResult]) -> PipelineResult:
        self.progress("Copying input APK")
        work_apk = tmp / "input.apk"
        try:
            shutil.copyfile(input_apk, work_apk)
        except OSError as exc:
            raise IOFailure(f"cannot copy {input_apk}: {exc}") from exc

        self.progress("Getting sorted DEX file list (highest to lowest)")
        images = select_from_archive(work_apk)
        info(f"Candidates: {', '.join(f'{i.entry}({i.priority})' for i in images)}")

        orchestrator = PatchOrchestrator(self.spec, self.disassembler, self.assembler, self.progress)
        winner = None
        for result in orchestrator.attempts(work_apk, images, tmp):
            attempts.append(result)
            if result.patched:
                winner = result
                break

        if winner is None:
            summary = ", ".join(f"{a.image.entry}: {a.reason.value}" for a in attempts)
            msg = f"Target method not found in any DEX file ({summary})"
            err(msg)
            self.progress(msg)
            return PipelineResult(False, msg, cause=FailureCause.TARGET_NOT_FOUND, attempts=attempts)

        entry = winner.image.entry
        self.progress(f"Updating APK with modified {entry}")
        unsigned = tmp / "unsigned_modified.apk"
        try:
            replacement = winner.path.read_bytes()
        except OSError as exc:
            raise IOFailure(f"cannot read patched {entry}: {exc}") from exc
        rebuilder.rebuild(work_apk, entry, replacement, unsigned)

        self.progress("Signing modified APK")
        try:
            self.signer.sign(unsigned, output_apk, material, self.min_sdk)
        except SigningError as exc:
            err(f"Signing failed: {exc}")
            self.progress(f"Error: {exc}")
            kept = self._keep_unsigned(unsigned, output_apk)
            return PipelineResult(False, f"Signing failed: {exc}", cause=FailureCause.SIGNING_ERROR,
                                  error=exc, patched_entry=entry, unsigned_output=kept,
                                  attempts=attempts)

        ok(f"✅ {output_apk.name}: {entry} patched and signed")
        self.progress(f"APK processing complete: {output_apk.name}")
        return PipelineResult(True, "Successfully modified and signed APK", output=output_apk,
                              patched_entry=entry, attempts=attempts)

    def _keep_unsigned(self, unsigned: Path, output_apk: Path) -> Optional[Path]:
        if not self.keep_unsigned:
            return None
        dest = output_apk.with_name(f"{output_apk.stem}.unsigned.apk")
        try:
            shutil.copyfile(unsigned, dest)
        except OSError as exc:
            warn(f"could not keep unsigned archive: {exc}")
            return None
        info(f"Unsigned archive kept at {dest}")
        return dest

    def submit(self, executor: Executor, input_apk: Path, output_apk: Path,
               material: Sequence[SignerEntry]) -> "Future[PipelineResult]":
        """Schedule run() on a background worker."""
        return executor.submit(self.run, input_apk, output_apk, material)
