"""
Textual method patcher for baksmali output.

A method block runs from the exact signature line to the first following
`.end method` line (both compared after trimming).  The whole block, end
marker included, is swapped for the replacement text, which carries its own
`.end method`.  Nested blocks are not considered: a literal `.end method`
line inside a body would end the block early.
"""

import os
import re
from pathlib import Path
from typing import List, Optional, Tuple

from .config import END_MARKER
from .log import info

_EOL_RE = re.compile(r'\r\n|\r|\n')


def locate(tree: Path, class_path: str) -> Optional[Path]:
    """Path of the class's .smali file inside a disassembled tree, or None."""
    rel = class_path.strip()
    if rel.startswith("L") and rel.endswith(";"):
        rel = rel[1:-1]
    if not rel.endswith(".smali"):
        rel = rel.replace(".", "/") + ".smali"
    f = Path(tree) / rel
    return f if f.is_file() else None


def find_method_block(lines: List[str], signature: str,
                      end_marker: str = END_MARKER) -> Optional[Tuple[int, int]]:
    signature = signature.strip()
    start = None
    for i, line in enumerate(lines):
        s = line.strip()
        if start is None:
            if s == signature:
                start = i
        elif s == end_marker:
            return start, i
    return None


def _indent_of(line: str) -> str:
    return line[:len(line) - len(line.lstrip())]


def _split(text: str) -> Tuple[List[str], str, bool]:
    """
    (lines, newline, trailing_newline).  Lines break on \\r\\n, \\r or \\n;
    the file is written back with its first line ending throughout.
    """
    m = _EOL_RE.search(text)
    nl = m.group() if m else "\n"
    lines = _EOL_RE.split(text)
    trailing = len(lines) > 1 and lines[-1] == ""
    if trailing:
        lines.pop()
    return lines, nl, trailing


def splice(lines: List[str], start: int, end: int, replacement: str) -> List[str]:
    ind = _indent_of(lines[start])
    body = [f"{ind}{ln.strip()}" if ln.strip() else ""
            for ln in replacement.splitlines()]
    return lines[:start] + body + lines[end + 1:]


def _atomic_write(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        tmp.write_bytes(data)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def replace(smali_file: Path, signature: str, replacement: str,
            end_marker: str = END_MARKER) -> bool:
    """
    Replace the method opened by `signature` with `replacement`.
    Returns False, leaving the file untouched, when the block is not found.
    """
    smali_file = Path(smali_file)
    text = smali_file.read_bytes().decode("utf-8")
    lines, nl, trailing = _split(text)

    block = find_method_block(lines, signature, end_marker)
    if block is None:
        info(f"    method block not found in {smali_file.name}: {signature.strip()!r}")
        return False
    start, end = block

    new_lines = splice(lines, start, end, replacement)
    out = nl.join(new_lines) + (nl if trailing else "")
    _atomic_write(smali_file, out.encode("utf-8"))
    info(f"    replaced lines {start + 1}-{end + 1} of {smali_file.name} "
         f"({end - start + 1} → {len(new_lines) - len(lines) + end - start + 1} lines)")
    return True
