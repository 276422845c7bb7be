"""
Bytecode image selection.

  classes.dex   → priority 1
  classesN.dex  → priority N   (N > 0)

Images are tried highest priority first; equal priorities (classes.dex vs
classes1.dex) keep archive order.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from . import archive as archive_index
from .errors import NoCandidateImages

BASE_NAME = "classes"
EXTENSION = ".dex"


@dataclass(frozen=True)
class BytecodeImageRef:
    entry: str
    priority: int

    @property
    def stem(self) -> str:
        return Path(self.entry).stem


def _pattern(base: str, ext: str):
    return re.compile(rf'^{re.escape(base)}([0-9]*){re.escape(ext)}$')


def image_priority(name: str, base: str = BASE_NAME, ext: str = EXTENSION) -> Optional[int]:
    m = _pattern(base, ext).match(name)
    if not m:
        return None
    if not m.group(1):
        return 1
    n = int(m.group(1))
    return n if n > 0 else None


def select_images(names: Iterable[str], base: str = BASE_NAME,
                  ext: str = EXTENSION) -> List[BytecodeImageRef]:
    refs = []
    for name in names:
        prio = image_priority(name, base, ext)
        if prio is not None:
            refs.append(BytecodeImageRef(name, prio))
    if not refs:
        raise NoCandidateImages(f"no {base}*{ext} images found in archive")
    # sorted() is stable: ties keep enumeration order
    return sorted(refs, key=lambda r: r.priority, reverse=True)


def select_from_archive(archive: Path) -> List[BytecodeImageRef]:
    return select_images(archive_index.list_entries(archive))
