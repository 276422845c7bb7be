"""
External collaborators, wrapped as subprocess calls.

  Baksmali   classes*.dex  →  smali tree      (disassembler)
  Smali      smali tree    →  classes*.dex    (assembler)
  ApkSigner  unsigned apk  →  signed apk      (signer)

Anything with the same method can stand in for these (see tests/conftest.py).
"""

import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import Settings
from .errors import AssemblyError, DisassemblyError, SigningError
from .log import info
from .signing import SignerEntry, write_signer_files


# ═══════════════════════════════════════════════════════════════════════════════
#  TOOL DISCOVERY
# ═══════════════════════════════════════════════════════════════════════════════

def _version_key(name: str):
    return tuple(int(p) if p.isdigit() else 0 for p in name.replace("-", ".").split("."))


def find_tool(name: str, bin_dir: Optional[Path] = None) -> Optional[str]:
    """PATH → $BIN_DIR → Android SDK build-tools (newest first)."""
    found = shutil.which(name)
    if found:
        return found
    roots: List[Path] = []
    if bin_dir is not None:
        local = Path(bin_dir) / name
        if local.is_file() and os.access(local, os.X_OK):
            return str(local)
        roots.append(Path(bin_dir) / "android-sdk")
    for var in ("ANDROID_HOME", "ANDROID_SDK_ROOT"):
        if os.environ.get(var):
            roots.append(Path(os.environ[var]))
    for sdk in roots:
        build_tools = sdk / "build-tools"
        if not build_tools.is_dir():
            continue
        for ver in sorted(build_tools.iterdir(), key=lambda p: _version_key(p.name), reverse=True):
            p = ver / name
            if p.is_file() and os.access(p, os.X_OK):
                return str(p)
    return None


def check_tools(settings: Settings) -> Dict[str, Optional[str]]:
    return {
        "java":      shutil.which(settings.java),
        "baksmali":  str(settings.baksmali_jar) if Path(settings.baksmali_jar).is_file() else None,
        "smali":     str(settings.smali_jar) if Path(settings.smali_jar).is_file() else None,
        "apksigner": settings.apksigner or find_tool("apksigner", settings.bin_dir),
    }


def _run(cmd: Sequence[str], timeout: int) -> subprocess.CompletedProcess:
    return subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout)


def _tail(r: subprocess.CompletedProcess) -> str:
    out = "\n".join(part for part in (r.stdout, r.stderr) if part).strip()
    return out[-400:] or "No output"


# ═══════════════════════════════════════════════════════════════════════════════
#  BAKSMALI / SMALI
# ═══════════════════════════════════════════════════════════════════════════════
class Baksmali:
    def __init__(self, settings: Settings):
        self.settings = settings

    def disassemble(self, image: Path, out_dir: Path) -> None:
        s = self.settings
        cmd = [s.java, "-jar", str(s.baksmali_jar), "d", "-a", s.api,
               "-j", str(s.jobs), str(image), "-o", str(out_dir)]
        try:
            r = _run(cmd, s.timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise DisassemblyError(f"baksmali could not run: {exc}") from exc
        if r.returncode != 0:
            raise DisassemblyError(f"baksmali failed (rc={r.returncode}):\n{_tail(r)}")
        n_smali = sum(1 for _ in Path(out_dir).rglob("*.smali"))
        info(f"    baksmali: {n_smali} smali files")


class Smali:
    def __init__(self, settings: Settings):
        self.settings = settings

    def assemble(self, source_dir: Path, output: Path) -> Path:
        s = self.settings
        cmd = [s.java, "-jar", str(s.smali_jar), "a", "-a", s.api,
               "-j", str(s.jobs), str(source_dir), "-o", str(output)]
        try:
            r = _run(cmd, s.timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise AssemblyError(f"smali could not run: {exc}") from exc
        if r.returncode != 0 or not Path(output).is_file():
            raise AssemblyError(f"smali failed (rc={r.returncode}):\n{_tail(r)}")
        info(f"    smali output: {Path(output).stat().st_size // 1024}K")
        return Path(output)


# ═══════════════════════════════════════════════════════════════════════════════
#  APKSIGNER
# ═══════════════════════════════════════════════════════════════════════════════
class ApkSigner:
    def __init__(self, settings: Settings):
        self.settings = settings

    def _binary(self) -> str:
        found = self.settings.apksigner or find_tool("apksigner", self.settings.bin_dir)
        if not found:
            raise SigningError("apksigner not found (set APKSIGNER or ANDROID_HOME)")
        return found

    def sign(self, unsigned: Path, output: Path, material: Sequence[SignerEntry],
             min_sdk: int) -> Path:
        if not material:
            raise SigningError("no signer material supplied")
        apksigner = self._binary()
        try:
            keys_dir = Path(tempfile.mkdtemp(prefix="apksurgeon_keys_"))
        except OSError as exc:
            raise SigningError(f"cannot create key directory: {exc}") from exc
        try:
            cmd = [apksigner, "sign", "--min-sdk-version", str(min_sdk)]
            for i, entry in enumerate(material):
                try:
                    key_file, cert_file = write_signer_files(entry, keys_dir, i)
                except (OSError, ValueError, TypeError) as exc:
                    raise SigningError(f"cannot write key material for {entry.name}: {exc}") from exc
                if i:
                    cmd.append("--next-signer")
                cmd += ["--v1-signer-name", entry.name,
                        "--key", str(key_file), "--cert", str(cert_file)]
            cmd += ["--out", str(output), str(unsigned)]
            try:
                r = _run(cmd, self.settings.timeout)
            except (OSError, subprocess.TimeoutExpired) as exc:
                raise SigningError(f"apksigner could not run: {exc}") from exc
            if r.returncode != 0:
                raise SigningError(f"apksigner failed (rc={r.returncode}):\n{_tail(r)}")
        finally:
            shutil.rmtree(keys_dir, ignore_errors=True)
        return Path(output)
