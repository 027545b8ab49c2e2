"""
Node identity certificates.

A node identifies itself with a self-signed X.509 certificate issued once at
setup and stored as two PEM files:

- the certificate, one ``CERTIFICATE`` block;
- the private key, an ``EC PRIVATE KEY`` (SEC1) or ``RSA PRIVATE KEY``
  (PKCS#1) block, readable by the owner only.

Identity comparison and renewal decisions elsewhere depend on the exact
fields set by ``issue_certificate()``: the common name, the single DNS name
equal to it, the day-aligned validity window and the server/client auth
extended key usages. Change them with care.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Union

from cryptography import x509
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

log = logging.getLogger(__name__)

ORGANIZATION = "Destroyer P2P"
ORGANIZATIONAL_UNIT = "Automatically Generated"

PrivateKey = Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]


class IdentityError(Exception):
    """Raised when a node identity cannot be issued or loaded.

    ``stage`` names the step that failed: ``generate key``, ``create cert``,
    ``save cert``, ``save key`` or ``load key pair``. Files written before
    the failing step are left in place; issuing again overwrites them.
    """

    def __init__(self, stage: str, cause: object):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


class KeyKind(Enum):
    """Supported identity key algorithms."""
    EC_P384 = "ec384"
    RSA_3072 = "rsa3072"

    def generate(self) -> PrivateKey:
        if self is KeyKind.EC_P384:
            return ec.generate_private_key(ec.SECP384R1())
        return rsa.generate_private_key(public_exponent=65537, key_size=3072)

    @property
    def pem_type(self) -> str:
        """PEM block type written for this kind of key."""
        return _PEM_TYPES[self]

    def pem_block(self, private_key: PrivateKey) -> bytes:
        """Encode ``private_key`` as the PEM block stored in the key file.

        The traditional OpenSSL format is SEC1 for EC keys and PKCS#1 for
        RSA keys.
        """
        if not isinstance(private_key, _KEY_CLASSES[self]):
            raise ValueError(f"{type(private_key).__name__} is not a {self.value} key")
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )


_PEM_TYPES = {
    KeyKind.EC_P384: "EC PRIVATE KEY",
    KeyKind.RSA_3072: "RSA PRIVATE KEY",
}

_KEY_CLASSES = {
    KeyKind.EC_P384: ec.EllipticCurvePrivateKey,
    KeyKind.RSA_3072: rsa.RSAPrivateKey,
}


@dataclass(frozen=True)
class CertificateIdentity:
    """A certificate and its private key, as loaded from their PEM files."""
    certificate: x509.Certificate
    private_key: PrivateKey
    cert_path: str
    key_path: str

    @property
    def common_name(self) -> str:
        attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return attrs[0].value if attrs else ""

    @property
    def dns_names(self) -> List[str]:
        try:
            san = self.certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return []
        return san.value.get_values_for_type(x509.DNSName)

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint of the DER certificate, hex encoded."""
        return self.certificate.fingerprint(hashes.SHA256()).hex()

    def expires_within(self, days: int, now: Optional[datetime] = None) -> bool:
        """True if the certificate is no longer valid ``days`` days from ``now``."""
        if now is None:
            now = datetime.now(timezone.utc)
        return self.not_after <= now + timedelta(days=days)


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def issue_certificate(cert_path: str, key_path: str, common_name: str, lifetime_days: int,
                      key_kind: KeyKind = KeyKind.EC_P384) -> CertificateIdentity:
    """Generate a new self-signed identity and write it to disk.

    The validity window starts at midnight UTC of the current day so that
    certificates issued on the same day share it.

    Args:
        cert_path: Certificate PEM file, created or truncated
        key_path: Private key PEM file, created or truncated with mode 0600
        common_name: Subject common name, also the only DNS name
        lifetime_days: Days between NotBefore and NotAfter
        key_kind: Key algorithm (EC P-384 unless stated otherwise)

    Returns:
        CertificateIdentity: The pair as reloaded from ``cert_path``/``key_path``

    Raises:
        IdentityError: If any stage fails. Already written files are not removed.
    """
    log.info(f"Issuing {key_kind.value} certificate for {common_name!r} valid for {lifetime_days} days")

    try:
        private_key = key_kind.generate()
    except Exception as e:
        raise IdentityError("generate key", e) from e

    not_before = _start_of_day(datetime.now(timezone.utc))
    not_after = not_before + timedelta(days=lifetime_days)

    # NOTE: load_or_issue() decides on reissue from the common name and the
    # validity window. Update it if attributes here change meaning.
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, ORGANIZATIONAL_UNIT),
    ])

    try:
        cert = x509.CertificateBuilder().subject_name(
            name
        ).issuer_name(
            name
        ).public_key(
            private_key.public_key()
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            not_before
        ).not_valid_after(
            not_after
        ).add_extension(
            x509.SubjectAlternativeName([x509.DNSName(common_name)]),
            critical=False
        ).add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False
            ),
            critical=True
        ).add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False
        ).add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True
        ).sign(private_key, hashes.SHA256())
    except Exception as e:
        raise IdentityError("create cert", e) from e

    try:
        with open(cert_path, "wb") as cert_out:
            cert_out.write(cert.public_bytes(serialization.Encoding.PEM))
    except OSError as e:
        raise IdentityError("save cert", e) from e

    try:
        key_pem = key_kind.pem_block(private_key)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as key_out:
            key_out.write(key_pem)
    except (OSError, ValueError) as e:
        raise IdentityError("save key", e) from e

    identity = load_key_pair(cert_path, key_path)
    log.info(f"Certificate for {common_name!r} written to {cert_path} (fingerprint {identity.fingerprint})")
    return identity


def load_key_pair(cert_path: str, key_path: str) -> CertificateIdentity:
    """Load and cross-check a certificate and private key from PEM files.

    Raises:
        IdentityError: (stage ``load key pair``) if a file is missing or
            unparsable, or the key does not belong to the certificate.
    """
    try:
        with open(cert_path, "rb") as f:
            cert = x509.load_pem_x509_certificate(f.read())
        with open(key_path, "rb") as f:
            private_key = serialization.load_pem_private_key(f.read(), password=None)
    except (OSError, ValueError, TypeError) as e:
        raise IdentityError("load key pair", e) from e

    if not isinstance(private_key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
        raise IdentityError("load key pair", f"unsupported key type {type(private_key).__name__}")

    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_public = cert.public_key().public_bytes(serialization.Encoding.DER, spki)
    key_public = private_key.public_key().public_bytes(serialization.Encoding.DER, spki)
    if cert_public != key_public:
        raise IdentityError("load key pair", "private key does not match certificate public key")

    return CertificateIdentity(certificate=cert, private_key=private_key,
                               cert_path=cert_path, key_path=key_path)


def load_or_issue(cert_path: str, key_path: str, common_name: str, lifetime_days: int,
                  renew_within_days: int = 30,
                  key_kind: KeyKind = KeyKind.EC_P384) -> CertificateIdentity:
    """Return the stored identity, issuing a new one when it is unusable.

    A new certificate is issued when the files are missing or unreadable,
    when the stored common name differs from ``common_name``, or when the
    certificate expires within ``renew_within_days``.
    """
    try:
        identity = load_key_pair(cert_path, key_path)
    except IdentityError as e:
        log.info(f"No usable identity at {cert_path} ({e}), issuing a new certificate")
        return issue_certificate(cert_path, key_path, common_name, lifetime_days, key_kind)

    if identity.common_name != common_name:
        log.warning(f"Stored certificate is for {identity.common_name!r}, not {common_name!r}; reissuing")
        return issue_certificate(cert_path, key_path, common_name, lifetime_days, key_kind)

    if identity.expires_within(renew_within_days):
        log.info(f"Certificate expires {identity.not_after.isoformat()}, within {renew_within_days} days; renewing")
        return issue_certificate(cert_path, key_path, common_name, lifetime_days, key_kind)

    log.debug(f"Loaded existing identity {identity.fingerprint} from {cert_path}")
    return identity
