"""
Archive index: enumerate, classify and extract ZIP entries.
The source archive is only ever opened read-only.
"""

import re
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .errors import EntryNotFound, IOFailure

# Prior-signing artifacts under META-INF/ (JAR signing, v1 scheme)
_SIG_EXT_RE = re.compile(r'\.(SF|RSA|DSA|EC)$', re.IGNORECASE)


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    size: int
    compressed_size: int
    compress_type: int
    header_offset: int

    @property
    def stored(self) -> bool:
        return self.compress_type == zipfile.ZIP_STORED


def is_signing_metadata(name: str) -> bool:
    if not name.startswith("META-INF/"):
        return False
    base = name[len("META-INF/"):]
    if "/" in base:
        return False
    return (base.upper() == "MANIFEST.MF"
            or bool(_SIG_EXT_RE.search(base))
            or base.startswith("SIG-"))


def _open(archive: Path) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(archive, "r")
    except (OSError, zipfile.BadZipFile) as exc:
        raise IOFailure(f"cannot open archive {archive}: {exc}") from exc


def entries(archive: Path) -> List[ArchiveEntry]:
    with _open(archive) as z:
        return [ArchiveEntry(zi.filename, zi.file_size, zi.compress_size,
                             zi.compress_type, zi.header_offset)
                for zi in z.infolist()]


def list_entries(archive: Path) -> List[str]:
    """Entry names in central-directory order."""
    with _open(archive) as z:
        return z.namelist()


def extract(archive: Path, entry_name: str, dest_path: Path) -> int:
    """Copy one entry's bytes to dest_path. Returns bytes written."""
    dest_path = Path(dest_path)
    with _open(archive) as z:
        try:
            zi = z.getinfo(entry_name)
        except KeyError:
            raise EntryNotFound(f"entry not found in {Path(archive).name}: {entry_name}") from None
        try:
            with z.open(zi) as src, open(dest_path, "wb") as dst:
                shutil.copyfileobj(src, dst, 1 << 16)
        except (OSError, zipfile.BadZipFile) as exc:
            raise IOFailure(f"cannot extract {entry_name} -> {dest_path}: {exc}") from exc
    return dest_path.stat().st_size
