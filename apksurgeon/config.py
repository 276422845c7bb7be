"""
Runtime configuration.

Tool locations and signing defaults come from the environment (optionally a
.env file).  The patch target itself is a PatchSpec handed to the pipeline.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError

# ─── Defaults ─────────────────────────────────────────────────────────────────
_DEFAULT_BIN = Path(__file__).resolve().parent.parent / "bin"
API          = "35"
MIN_SDK      = 21
TOOL_TIMEOUT = 600

END_MARKER = ".end method"

# ─── Built-in patch target ────────────────────────────────────────────────────
DEFAULT_TARGET_CLASS     = "com/applisto/appcloner/classes/DefaultProvider"
DEFAULT_TARGET_SIGNATURE = ".method public onCreate(Landroid/content/Context;)Z"
DEFAULT_REPLACEMENT = """\
.method public onCreate(Landroid/content/Context;)Z
    .registers 3

    if-eqz p1, :cond_e

    sget-boolean v0, Lcom/applisto/appcloner/classes/DefaultProvider;->sCreated:Z

    if-nez v0, :cond_c

    const/4 v0, 0x1

    sput-boolean v0, Lcom/applisto/appcloner/classes/DefaultProvider;->sCreated:Z

    invoke-virtual {p0, p1, p1}, Lcom/applisto/appcloner/classes/DefaultProvider;->onCreate(Landroid/content/Context;Landroid/content/Context;)V

    :cond_c

    const/4 v0, 0x1

    return v0

    :cond_e

    const/4 v0, 0x0

    return v0
.end method"""


@dataclass(frozen=True)
class PatchSpec:
    """One class, one exact method signature line, one replacement block."""
    target_class: str
    target_signature: str
    replacement_body: str

    def __post_init__(self):
        for name in ("target_class", "target_signature", "replacement_body"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"PatchSpec.{name} must be a non-empty string")

    @classmethod
    def from_mapping(cls, data: Mapping) -> "PatchSpec":
        missing = [k for k in ("targetClass", "targetSignature", "replacementBody")
                   if k not in data]
        if missing:
            raise ConfigError(f"patch spec missing field(s): {', '.join(missing)}")
        signature = data["targetSignature"]
        return cls(target_class=data["targetClass"],
                   target_signature=signature.strip() if isinstance(signature, str) else signature,
                   replacement_body=data["replacementBody"])

    @classmethod
    def from_file(cls, path: Path) -> "PatchSpec":
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"cannot read patch spec {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"patch spec {path} must be a JSON object")
        return cls.from_mapping(data)


DEFAULT_PATCH = PatchSpec(DEFAULT_TARGET_CLASS, DEFAULT_TARGET_SIGNATURE, DEFAULT_REPLACEMENT)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


@dataclass
class Settings:
    bin_dir: Path = _DEFAULT_BIN
    baksmali_jar: Optional[Path] = None
    smali_jar: Optional[Path] = None
    java: str = "java"
    apksigner: Optional[str] = None
    api: str = API
    min_sdk: int = MIN_SDK
    jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    timeout: int = TOOL_TIMEOUT
    keystore: Optional[Path] = None
    keystore_pass: Optional[str] = None
    key_alias: Optional[str] = None
    key_pass: Optional[str] = None
    temp_root: Optional[Path] = None

    def __post_init__(self):
        self.bin_dir = Path(self.bin_dir)
        if self.baksmali_jar is None:
            self.baksmali_jar = self.bin_dir / "baksmali.jar"
        if self.smali_jar is None:
            self.smali_jar = self.bin_dir / "smali.jar"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None,
                 environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from os.environ after loading a .env file (if any)."""
        if environ is None:
            load_dotenv(env_file or find_dotenv(usecwd=True))
            environ = os.environ
        env: Dict[str, str] = dict(environ)

        def path(key):
            return Path(env[key]) if env.get(key) else None

        return cls(
            bin_dir       = Path(env.get("BIN_DIR") or _DEFAULT_BIN),
            baksmali_jar  = path("BAKSMALI_JAR"),
            smali_jar     = path("SMALI_JAR"),
            java          = env.get("JAVA") or "java",
            apksigner     = env.get("APKSIGNER") or None,
            api           = env.get("DEX_API") or API,
            min_sdk       = _int(env, "MIN_SDK", MIN_SDK),
            jobs          = _int(env, "JOBS", os.cpu_count() or 1),
            timeout       = _int(env, "TOOL_TIMEOUT", TOOL_TIMEOUT),
            keystore      = path("KEYSTORE"),
            keystore_pass = env.get("KEYSTORE_PASS"),
            key_alias     = env.get("KEY_ALIAS"),
            key_pass      = env.get("KEY_PASS"),
            temp_root     = path("APKSURGEON_TMP"),
        )
