"""
Archive rebuilder. Writes a fresh ZIP, entry by entry.

  ① every original entry is copied with identical content, except
       - the entry being replaced (re-added last with the new bytes)
       - prior signing metadata (META-INF/MANIFEST.MF, *.SF, *.RSA, *.DSA, *.EC, SIG-*)
  ② resources.arsc and classes*.dex are written STORED
  ③ every STORED entry's data is aligned by padding the local header's
     extra field, so the result can go straight to apksigner:

       [LFH 30B][filename nB][extra ← padding][DATA ← offset % alignment == 0]

     4 bytes by default, 4096 for native libraries (lib/**.so).
"""

import re
import struct
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, List, NamedTuple, Tuple

from .archive import is_signing_metadata
from .errors import IOFailure
from .log import info, ok

_LFH  = b'PK\x03\x04'   # Local File Header
_CFH  = b'PK\x01\x02'   # Central Directory Header
_EOCD = b'PK\x05\x06'   # End of Central Directory

#  LFH  30 bytes: sig(4) ver(2) flag(2) comp(2) time(2) date(2) crc(4) csz(4) usz(4) fnl(2) exl(2)
_FMT_LFH  = '<4sHHHHHIIIHH'
#  CFH  46 bytes: sig(4) vmade(2) vneed(2) flag(2) comp(2) time(2) date(2)
#                 crc(4) csz(4) usz(4) fnl(2) exl(2) cml(2) dsk(2) iat(2) eat(4) off(4)
_FMT_CFH  = '<4sHHHHHHIIIHHHHHII'
# EOCD 22 bytes: sig(4) dsk(2) dsk_cd(2) ent(2) tot(2) cdsz(4) cdoff(4) cml(2)
_FMT_EOCD = '<4sHHHHIIH'

ALIGNMENT      = 4
PAGE_ALIGNMENT = 4096

_FORCE_STORE    = frozenset({'resources.arsc'})
_FORCE_STORE_RE = re.compile(r'^classes[0-9]*\.dex$')
_PAGE_ALIGN_RE  = re.compile(r'^lib/.+\.so$')

_MAX_U32 = 0xFFFFFFFF
_MAX_U16 = 0xFFFF


def must_store(name: str) -> bool:
    return name in _FORCE_STORE or bool(_FORCE_STORE_RE.match(name))


def alignment_for(name: str, alignment: int = ALIGNMENT) -> int:
    return PAGE_ALIGNMENT if _PAGE_ALIGN_RE.match(name) else alignment


def _dos_datetime(dt) -> Tuple[int, int]:
    """ZipInfo.date_time → (dos_time, dos_date)."""
    try:
        y, mo, d, h, mi, s = (int(x) for x in dt)
    except (TypeError, ValueError):
        return (0, 0x21)
    if y < 1980:
        return (0, 0x21)   # 1980-01-01
    return (h * 2048 + mi * 32 + s // 2, (y - 1980) * 512 + mo * 32 + d)


@dataclass
class RebuildStats:
    written: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    aligned: List[str] = field(default_factory=list)
    replaced_existing: bool = False


class _Writer:
    """Sequential ZIP writer over an open binary file."""

    def __init__(self, fp: BinaryIO, alignment: int):
        self.fp = fp
        self.alignment = alignment
        self.cd_entries: List[Tuple[bytes, bytes]] = []   # (cfh_bytes, fname_bytes)

    def add(self, zi: zipfile.ZipInfo, raw: bytes, stats: RebuildStats) -> None:
        name    = zi.filename
        fname_b = name.encode('utf-8')
        flags   = zi.flag_bits & ~0x09          # no encryption, no data descriptor
        if not name.isascii():
            flags |= 0x800

        if must_store(name) or zi.compress_type != zipfile.ZIP_DEFLATED:
            compress, out_data = zipfile.ZIP_STORED, raw
        else:
            c = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
            compress, out_data = zipfile.ZIP_DEFLATED, c.compress(raw) + c.flush()

        if len(raw) > _MAX_U32 or len(out_data) > _MAX_U32:
            raise IOFailure(f"{name}: entries over 4 GiB (zip64) are not supported")

        crc = zlib.crc32(raw) & 0xFFFFFFFF
        entry_offset = self.fp.tell()
        if entry_offset > _MAX_U32:
            raise IOFailure("archive over 4 GiB (zip64) is not supported")

        extra = b''
        if compress == zipfile.ZIP_STORED:
            align = alignment_for(name, self.alignment)
            rem = (entry_offset + 30 + len(fname_b)) % align
            if rem:
                extra = b'\x00' * (align - rem)
                stats.aligned.append(name)

        dt, dd = _dos_datetime(zi.date_time)
        self.fp.write(struct.pack(_FMT_LFH,
            _LFH, 20, flags, compress, dt, dd,
            crc, len(out_data), len(raw), len(fname_b), len(extra)))
        self.fp.write(fname_b)
        self.fp.write(extra)
        self.fp.write(out_data)

        cfh = struct.pack(_FMT_CFH,
            _CFH,
            (3 << 8) | 20,          # version made by: Unix host, v2.0
            20,                     # version needed: 2.0
            flags, compress, dt, dd,
            crc, len(out_data), len(raw),
            len(fname_b), 0, 0,     # fname_len, extra_len(CD), comment_len
            0, 0,                   # disk_start, internal_attr
            zi.external_attr & _MAX_U32,
            entry_offset)
        self.cd_entries.append((cfh, fname_b))
        stats.written.append(name)

    def finish(self) -> None:
        n = len(self.cd_entries)
        if n > _MAX_U16:
            raise IOFailure(f"{n} entries (zip64) are not supported")
        cd_start = self.fp.tell()
        for cfh_b, fname_b in self.cd_entries:
            self.fp.write(cfh_b)
            self.fp.write(fname_b)
        cd_size = self.fp.tell() - cd_start
        self.fp.write(struct.pack(_FMT_EOCD, _EOCD, 0, 0, n, n, cd_size, cd_start, 0))


def rebuild(original: Path, replaced_entry_name: str, replacement_bytes: bytes,
            output: Path, alignment: int = ALIGNMENT) -> RebuildStats:
    """
    Copy `original` to `output` with `replaced_entry_name` swapped for
    `replacement_bytes` and prior signatures stripped.
    """
    stats = RebuildStats()
    replaced_info = None
    try:
        with zipfile.ZipFile(original, 'r') as z, open(output, 'wb') as fp:
            w = _Writer(fp, alignment)
            for zi in z.infolist():
                if zi.filename == replaced_entry_name:
                    replaced_info = zi
                    stats.replaced_existing = True
                    continue
                if is_signing_metadata(zi.filename):
                    stats.dropped.append(zi.filename)
                    continue
                w.add(zi, z.read(zi), stats)

            new_zi = zipfile.ZipInfo(replaced_entry_name,
                                     date_time=(replaced_info.date_time if replaced_info
                                                else time.localtime()[:6]))
            new_zi.compress_type = zipfile.ZIP_STORED
            if replaced_info is not None:
                new_zi.external_attr = replaced_info.external_attr
                new_zi.flag_bits = replaced_info.flag_bits
            w.add(new_zi, bytes(replacement_bytes), stats)
            w.finish()
    except (OSError, zipfile.BadZipFile) as exc:
        raise IOFailure(f"rebuild of {Path(original).name} failed: {exc}") from exc

    info(f"  dropped signing metadata: {', '.join(stats.dropped) or 'none'}")
    ok(f"  ZIP rebuilt: {Path(output).stat().st_size // 1024}K  "
       f"({len(stats.written)} entries, aligned {len(stats.aligned)})")
    return stats


# ═══════════════════════════════════════════════════════════════════════════════
#  AUDIT
# ═══════════════════════════════════════════════════════════════════════════════
class EntryLayout(NamedTuple):
    name: str
    compress_type: int
    data_offset: int
    aligned: bool
    must_store: bool
    signing: bool


def entry_layout(archive: Path, alignment: int = ALIGNMENT) -> Iterator[EntryLayout]:
    """
    Actual data offsets, read from the raw local headers rather than trusting
    zipfile's header_offset arithmetic.
    """
    try:
        with zipfile.ZipFile(archive, 'r') as z, open(archive, 'rb') as fp:
            infos = sorted(z.infolist(), key=lambda x: x.header_offset)
            for zi in infos:
                fp.seek(zi.header_offset + 26)
                fname_len, extra_len = struct.unpack('<HH', fp.read(4))
                data_off = zi.header_offset + 30 + fname_len + extra_len
                yield EntryLayout(zi.filename, zi.compress_type, data_off,
                                  data_off % alignment_for(zi.filename, alignment) == 0,
                                  must_store(zi.filename),
                                  is_signing_metadata(zi.filename))
    except (OSError, zipfile.BadZipFile, struct.error) as exc:
        raise IOFailure(f"cannot read layout of {archive}: {exc}") from exc


def verify_alignment(archive: Path, alignment: int = ALIGNMENT) -> List[str]:
    """Problems with must-store entries (compressed or misaligned); empty when fine."""
    issues = []
    for e in entry_layout(archive, alignment):
        if not e.must_store:
            continue
        if e.compress_type != zipfile.ZIP_STORED:
            issues.append(f"{e.name}: DEFLATE (must be STORE)")
        elif not e.aligned:
            issues.append(f"{e.name}: data@{e.data_offset} not {alignment}-byte aligned")
    return issues
