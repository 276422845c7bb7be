"""
Signing material: (identity, private key, certificate chain) entries.

The pipeline never looks inside these; they are loaded here, handed through
unchanged and only serialised by the signer adapter.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .errors import ConfigError

DEFAULT_SIGNER_NAME = "CERT"


@dataclass(frozen=True)
class SignerEntry:
    name: str
    private_key: object
    certificates: Tuple[x509.Certificate, ...]

    def __post_init__(self):
        if not self.certificates:
            raise ConfigError(f"signer {self.name!r} has no certificate")


SignerMaterial = List[SignerEntry]


def _pw(password: Optional[str]) -> Optional[bytes]:
    return password.encode() if password else None


def load_pkcs12(path: Path, password: Optional[str], alias: Optional[str] = None,
                name: str = DEFAULT_SIGNER_NAME) -> SignerEntry:
    """Load the key entry of a PKCS#12 keystore (e.g. a debug.keystore)."""
    try:
        bundle = pkcs12.load_pkcs12(Path(path).read_bytes(), _pw(password))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot load keystore {path}: {exc}") from exc
    if bundle.key is None or bundle.cert is None:
        raise ConfigError(f"keystore {path} holds no private key entry")
    if alias:
        friendly = bundle.cert.friendly_name
        if friendly is not None and friendly.decode("utf-8", "replace") != alias:
            raise ConfigError(f"alias {alias!r} not found in keystore {path} "
                              f"(has {friendly.decode('utf-8', 'replace')!r})")
    chain = (bundle.cert.certificate,) + tuple(c.certificate for c in bundle.additional_certs)
    return SignerEntry(name, bundle.key, chain)


def load_pem(key_path: Path, cert_path: Path, password: Optional[str] = None,
             name: str = DEFAULT_SIGNER_NAME) -> SignerEntry:
    """Load a PEM/DER private key and a PEM certificate chain."""
    try:
        raw_key = Path(key_path).read_bytes()
        if b"-----BEGIN" in raw_key:
            key = serialization.load_pem_private_key(raw_key, _pw(password))
        else:
            key = serialization.load_der_private_key(raw_key, _pw(password))
        chain = tuple(x509.load_pem_x509_certificates(Path(cert_path).read_bytes()))
    except (OSError, ValueError, TypeError) as exc:
        raise ConfigError(f"cannot load signing key/cert: {exc}") from exc
    return SignerEntry(name, key, chain)


def write_signer_files(entry: SignerEntry, dest: Path, index: int = 0) -> Tuple[Path, Path]:
    """Write a PKCS#8 DER key + PEM chain pair as apksigner expects."""
    dest = Path(dest)
    key_file  = dest / f"signer{index}.pk8"
    cert_file = dest / f"signer{index}.x509.pem"
    key_file.write_bytes(entry.private_key.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption()))
    key_file.chmod(0o600)
    cert_file.write_bytes(b"".join(
        c.public_bytes(serialization.Encoding.PEM) for c in entry.certificates))
    return key_file, cert_file
