"""
Shared fixtures.

Real baksmali/smali/apksigner are replaced by fakes: a "dex" image here is a
JSON object {relative smali path: file text}, which the fake disassembler
writes out as a tree and the fake assembler packs back up.
"""

import datetime
import json
import shutil
import zipfile
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from apksurgeon.config import PatchSpec
from apksurgeon.errors import AssemblyError, DisassemblyError, SigningError
from apksurgeon.signing import SignerEntry

CLASS = "com/example/app/Target"
SIGNATURE = ".method public isEnabled()Z"

TARGET_SMALI = """\
.class public Lcom/example/app/Target;
.super Ljava/lang/Object;
.source "Target.java"


# direct methods
.method public constructor <init>()V
    .registers 1

    invoke-direct {p0}, Ljava/lang/Object;-><init>()V

    return-void
.end method


# virtual methods
.method public isEnabled()Z
    .registers 2

    const/4 v0, 0x0

    return v0
.end method

.method public other()V
    .registers 1

    return-void
.end method
"""

REPLACEMENT = """\
.method public isEnabled()Z
    .registers 2

    const/4 v0, 0x1

    return v0
.end method"""

OTHER_SMALI = """\
.class public Lcom/example/app/Other;
.super Ljava/lang/Object;

.method public static run()V
    .registers 0
    return-void
.end method
"""


def make_dex(classes: dict) -> bytes:
    return json.dumps(classes, sort_keys=True).encode()


def read_dex(data: bytes) -> dict:
    return json.loads(data.decode())


def make_apk(path: Path, entries) -> Path:
    """entries: iterable of (name, bytes[, compress_type])"""
    with zipfile.ZipFile(path, "w") as z:
        for item in entries:
            name, data = item[0], item[1]
            compress = item[2] if len(item) > 2 else zipfile.ZIP_DEFLATED
            z.writestr(zipfile.ZipInfo(name, date_time=(2020, 1, 2, 3, 4, 6)), data,
                       compress_type=compress)
    return path


class FakeDisassembler:
    def __init__(self):
        self.calls = []

    def disassemble(self, image: Path, out_dir: Path) -> None:
        self.calls.append(Path(image).name)
        try:
            classes = read_dex(Path(image).read_bytes())
        except ValueError as exc:
            raise DisassemblyError(f"bad dex: {exc}") from exc
        for rel, text in classes.items():
            f = Path(out_dir) / rel
            f.parent.mkdir(parents=True, exist_ok=True)
            f.write_text(text, encoding="utf-8")


class FakeAssembler:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def assemble(self, source_dir: Path, output: Path) -> Path:
        self.calls.append(Path(source_dir))
        if self.fail:
            raise AssemblyError("syntax error at line 1")
        classes = {f.relative_to(source_dir).as_posix(): f.read_text(encoding="utf-8")
                   for f in sorted(Path(source_dir).rglob("*.smali"))}
        Path(output).write_bytes(make_dex(classes))
        return Path(output)


class FakeSigner:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def sign(self, unsigned: Path, output: Path, material, min_sdk: int) -> Path:
        self.calls.append((Path(unsigned), Path(output), list(material), min_sdk))
        if self.fail:
            raise SigningError("keystore was tampered with")
        shutil.copyfile(unsigned, output)
        return Path(output)


@pytest.fixture
def spec():
    return PatchSpec(CLASS, SIGNATURE, REPLACEMENT)


@pytest.fixture
def disassembler():
    return FakeDisassembler()


@pytest.fixture
def assembler():
    return FakeAssembler()


@pytest.fixture
def signer():
    return FakeSigner()


def self_signed(cn: str = "apksurgeon test"):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    now = datetime.datetime(2024, 1, 1)
    cert = (x509.CertificateBuilder()
            .subject_name(name).issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=3650))
            .sign(key, hashes.SHA256()))
    return key, cert


@pytest.fixture(scope="session")
def key_and_cert():
    return self_signed()


@pytest.fixture
def material(key_and_cert):
    key, cert = key_and_cert
    return [SignerEntry("CERT", key, (cert,))]
