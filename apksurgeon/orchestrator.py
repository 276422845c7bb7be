"""
Per-image patch attempts.

  Extracted → Disassembled → ClassLocated → MethodLocated → Reassembled → Promoted
       └──────────┴──────────────┴──────────────┴──────────────┴──→ Failed(reason)

Each image gets its own scratch directory under the work root.  Failed
attempts delete theirs straight away; the winning attempt keeps only the
promoted image.  Attempts are produced lazily so the caller decides when to
stop, normally at the first Patched result.
"""

import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from . import archive as archive_index
from . import smali
from .config import PatchSpec
from .errors import AssemblyError, DisassemblyError, IOFailure
from .log import err, info, ok
from .selector import BytecodeImageRef

Progress = Callable[[str], None]


class AttemptState(Enum):
    EXTRACTED      = "extracted"
    DISASSEMBLED   = "disassembled"
    CLASS_LOCATED  = "class-located"
    METHOD_LOCATED = "method-located"
    REASSEMBLED    = "reassembled"
    PROMOTED       = "promoted"
    FAILED         = "failed"


class FailureReason(Enum):
    CLASS_NOT_FOUND   = "ClassNotFound"
    METHOD_NOT_FOUND  = "MethodNotFound"
    DISASSEMBLY_ERROR = "DisassemblyError"
    ASSEMBLY_ERROR    = "AssemblyError"


@dataclass
class AttemptResult:
    image: BytecodeImageRef
    state: AttemptState
    reason: Optional[FailureReason] = None
    path: Optional[Path] = None
    detail: str = ""

    @property
    def patched(self) -> bool:
        return self.state is AttemptState.PROMOTED


def _promote(src: Path, dest: Path) -> None:
    """Move reassembled bytes over the extracted image, keeping dest's path."""
    try:
        dest.unlink()
    except FileNotFoundError:
        pass
    try:
        src.rename(dest)
    except OSError:
        # cross-device: copy then drop the source
        shutil.copyfile(src, dest)
        src.unlink()


class PatchOrchestrator:
    def __init__(self, spec: PatchSpec, disassembler, assembler,
                 progress: Optional[Progress] = None):
        self.spec = spec
        self.disassembler = disassembler
        self.assembler = assembler
        self.progress = progress or (lambda msg: None)

    def _failed(self, image, reason, detail="") -> AttemptResult:
        return AttemptResult(image, AttemptState.FAILED, reason, detail=detail)

    def attempt(self, archive: Path, image: BytecodeImageRef, scratch: Path) -> AttemptResult:
        """Run one image through the state machine inside `scratch`."""
        name = image.entry
        extracted = scratch / Path(name).name
        size = archive_index.extract(archive, name, extracted)
        info(f"  {name}: {size // 1024}K extracted")

        smali_dir = scratch / "smali"
        try:
            smali_dir.mkdir()
        except OSError as exc:
            raise IOFailure(f"cannot create {smali_dir}: {exc}") from exc

        self.progress(f"Disassembling {name}")
        try:
            self.disassembler.disassemble(extracted, smali_dir)
        except DisassemblyError as exc:
            err(f"  {name}: disassembly failed: {exc}")
            self.progress(f"Error disassembling {name}: {exc}")
            return self._failed(image, FailureReason.DISASSEMBLY_ERROR, str(exc))

        class_file = smali.locate(smali_dir, self.spec.target_class)
        if class_file is None:
            info(f"  {name}: target class {self.spec.target_class} not present")
            self.progress(f"Target class not found in {name}")
            return self._failed(image, FailureReason.CLASS_NOT_FOUND)
        self.progress(f"Found target class file: {class_file.name}")

        try:
            replaced = smali.replace(class_file, self.spec.target_signature,
                                     self.spec.replacement_body)
        except (OSError, UnicodeDecodeError) as exc:
            raise IOFailure(f"cannot rewrite {class_file}: {exc}") from exc
        if not replaced:
            self.progress(f"Target method not found in class {class_file.name} ({name})")
            return self._failed(image, FailureReason.METHOD_NOT_FOUND)
        self.progress(f"Method replaced in {class_file.name}")

        rebuilt = scratch / f"modified_{extracted.name}"
        self.progress(f"Reassembling smali to {rebuilt.name}")
        try:
            self.assembler.assemble(smali_dir, rebuilt)
        except AssemblyError as exc:
            err(f"  {name}: reassembly failed: {exc}")
            self.progress(f"Error reassembling {name}: {exc}")
            return self._failed(image, FailureReason.ASSEMBLY_ERROR, str(exc))

        try:
            _promote(rebuilt, extracted)
            shutil.rmtree(smali_dir, ignore_errors=True)
        except OSError as exc:
            raise IOFailure(f"cannot replace {extracted.name} with reassembled image: {exc}") from exc
        ok(f"  ✓ {name} patched ({extracted.stat().st_size // 1024}K)")
        self.progress(f"{name} successfully modified")
        return AttemptResult(image, AttemptState.PROMOTED, path=extracted)

    def attempts(self, archive: Path, images: Iterable[BytecodeImageRef],
                 work_root: Path) -> Iterator[AttemptResult]:
        """Lazily try each image in order; failed scratch dirs are removed."""
        for image in images:
            scratch = Path(work_root) / f"dex_attempt_{image.stem}"
            if scratch.exists():
                shutil.rmtree(scratch)
            try:
                scratch.mkdir(parents=True)
            except OSError as exc:
                raise IOFailure(f"cannot create {scratch}: {exc}") from exc

            self.progress(f"Attempting to find method in: {image.entry}")
            try:
                result = self.attempt(archive, image, scratch)
            except BaseException:
                shutil.rmtree(scratch, ignore_errors=True)
                raise
            if not result.patched:
                shutil.rmtree(scratch, ignore_errors=True)
                self.progress(f"{result.reason.value} in {image.entry}; trying next image")
            yield result

    def run(self, archive: Path, images: Iterable[BytecodeImageRef],
            work_root: Path) -> Optional[AttemptResult]:
        """First Patched result, or None once every image has failed."""
        return next((r for r in self.attempts(archive, images, work_root) if r.patched), None)
