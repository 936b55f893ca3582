from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ...observability.logging import get_logger


log = get_logger("local_certificates")

_VALIDITY_DAYS = 365
# Regenerate slightly before expiry so a flow never starts on a dying cert.
_RENEW_BEFORE = timedelta(days=1)


@dataclass(frozen=True, slots=True)
class CertificatePair:
    cert_path: Path
    key_path: Path
    not_valid_after: datetime


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class LocalCertificateProvider:
    """
    Self-signed localhost certificate for the OAuth callback listener.

    Generated once into the config dir and reused across runs until it is
    about to expire.
    """

    def __init__(self, cert_path: Path, key_path: Path):
        self._cert_path = Path(cert_path)
        self._key_path = Path(key_path)

    def ensure(self) -> CertificatePair:
        existing = self._load_existing()
        if existing is not None:
            return existing
        return self._generate()

    def _load_existing(self) -> CertificatePair | None:
        if not (self._cert_path.exists() and self._key_path.exists()):
            return None
        try:
            cert = x509.load_pem_x509_certificate(self._cert_path.read_bytes())
            serialization.load_pem_private_key(self._key_path.read_bytes(), password=None)
        except (OSError, ValueError, TypeError) as e:
            log.warning("local_certificate_unreadable", cert_path=str(self._cert_path), error=str(e))
            return None
        expires = cert.not_valid_after_utc
        if expires - _RENEW_BEFORE <= _now_utc():
            log.info("local_certificate_expired", not_valid_after=expires.isoformat())
            return None
        return CertificatePair(self._cert_path, self._key_path, expires)

    def _generate(self) -> CertificatePair:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
        now = _now_utc()
        expires = now + timedelta(days=_VALIDITY_DAYS)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(expires)
            .add_extension(
                x509.SubjectAlternativeName(
                    [
                        x509.DNSName("localhost"),
                        x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                    ]
                ),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )

        self._cert_path.parent.mkdir(parents=True, exist_ok=True)
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        fd = os.open(str(self._key_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(key_pem)
        self._cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))

        log.info("local_certificate_generated", cert_path=str(self._cert_path), not_valid_after=expires.isoformat())
        return CertificatePair(self._cert_path, self._key_path, expires)
