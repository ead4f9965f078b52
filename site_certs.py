# site_certs.py
# -*- coding: utf-8 -*-
"""
Local Certificate Authority for HTTPS development serving.

- Persistent root CA (EC P-256) under the install directory (default ~/.localdev/ca/)
- Best-effort installation of the root into the system trust store on creation
- Per-session leaf certificate for localhost and the host's IP addresses, never written to disk
"""
import os
import ssl
import secrets
import logging
import tempfile
import ipaddress
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from cryptography import x509
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

CA_COMMON_NAME = "site-anywhere Root CA"
CA_ORGANIZATION = "site-anywhere static file server"
CA_CERT_FILENAME = "rootCA.pem"
CA_KEY_FILENAME = "rootCA.key"

CA_VALIDITY = timedelta(days=3650)
LEAF_VALIDITY = timedelta(days=365)

LOOPBACK_ADDRESSES = ("127.0.0.1", "::1")

_logger = logging.getLogger("site_anywhere.certs")


class CertificateCodecError(ValueError):
    """Raised when PEM material cannot be decoded."""


class CertificateAuthorityError(RuntimeError):
    """Raised when a root CA can neither be loaded nor created and persisted."""


def default_install_dir() -> Path:
    override = os.environ.get("SITE_ANYWHERE_CA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".localdev" / "ca"


# --- KeyCertCodec ---

def encode_certificate(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def decode_certificate(data: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise CertificateCodecError(f"invalid certificate PEM: {e}") from e


def encode_private_key(key: ec.EllipticCurvePrivateKey) -> bytes:
    # SEC1 "EC PRIVATE KEY" block
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def decode_private_key(data: bytes) -> ec.EllipticCurvePrivateKey:
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as e:
        raise CertificateCodecError(f"invalid private key PEM: {e}") from e
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise CertificateCodecError("private key is not an elliptic-curve key")
    return key


def _random_serial() -> int:
    # positive, non-zero, at most 128 bits
    return secrets.randbelow((1 << 128) - 1) + 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _same_public_key(cert: x509.Certificate, key: ec.EllipticCurvePrivateKey) -> bool:
    fmt = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return cert.public_key().public_bytes(*fmt) == key.public_key().public_bytes(*fmt)


class RootCertificateAuthority:
    """The loaded or freshly created root: certificate, key and where they live."""

    def __init__(self, certificate: x509.Certificate, private_key: ec.EllipticCurvePrivateKey,
                 cert_path: Path, key_path: Path):
        self.certificate = certificate
        self.private_key = private_key
        self.cert_path = cert_path
        self.key_path = key_path

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def subject(self) -> x509.Name:
        return self.certificate.subject


class CertificateAuthority:
    """
    Load-or-create owner of the root CA in one install directory.

    `installer` is anything with an ``install(cert_path)`` method (see site_trust.TrustStoreInstaller);
    it is only called after a new root has been created. `clock` returns the current aware UTC time.
    """

    def __init__(self, install_dir: Optional[Path] = None, installer=None,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.install_dir = Path(install_dir) if install_dir is not None else default_install_dir()
        self.installer = installer
        self.logger = logger or _logger
        self.clock = clock

    @property
    def cert_path(self) -> Path:
        return self.install_dir / CA_CERT_FILENAME

    @property
    def key_path(self) -> Path:
        return self.install_dir / CA_KEY_FILENAME

    def resolve(self) -> RootCertificateAuthority:
        existing = self.load()
        if existing is not None:
            self.logger.debug("LocalCA: existing CA found at %s", self.cert_path)
            return existing

        ca, created = self._create()
        if created:
            self._try_install(ca)
        return ca

    def load(self) -> Optional[RootCertificateAuthority]:
        """Returns the persisted root, or None if it is missing, unreadable, mismatched or expired."""
        try:
            cert_pem = self.cert_path.read_bytes()
            key_pem = self.key_path.read_bytes()
        except OSError:
            return None

        try:
            cert = decode_certificate(cert_pem)
            key = decode_private_key(key_pem)
        except CertificateCodecError as e:
            self.logger.warning("LocalCA: stored CA could not be decoded (%s); generating a new one.", e)
            return None

        if not _same_public_key(cert, key):
            self.logger.warning("LocalCA: stored CA key does not match its certificate; generating a new one.")
            return None

        if self.clock() >= cert.not_valid_after_utc:
            self.logger.warning("LocalCA: stored CA expired on %s; generating a new one.",
                                cert.not_valid_after_utc.isoformat())
            return None

        return RootCertificateAuthority(cert, key, self.cert_path, self.key_path)

    def _create(self):
        self.logger.info("LocalCA: Generating root CA...")
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, CA_ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, CA_COMMON_NAME),
        ])
        now = self.clock()
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(_random_serial())
            .not_valid_before(now)
            .not_valid_after(now + CA_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .sign(key, hashes.SHA256())
        )

        try:
            self.install_dir.mkdir(parents=True, exist_ok=True)
            # another process may have finished its first run while we were generating
            raced = self.load()
            if raced is not None:
                self.logger.info("LocalCA: a root CA appeared at %s meanwhile; using it.", self.cert_path)
                return raced, False
            _write_atomic(self.key_path, encode_private_key(key), 0o600)
            _write_atomic(self.cert_path, encode_certificate(cert), 0o644)
        except OSError as e:
            raise CertificateAuthorityError(f"cannot persist root CA to {self.install_dir}: {e}") from e

        self.logger.info("LocalCA: Root CA created at %s", self.cert_path)
        return RootCertificateAuthority(cert, key, self.cert_path, self.key_path), True

    def _try_install(self, ca: RootCertificateAuthority):
        if self.installer is None:
            return
        try:
            self.installer.install(ca.cert_path)
        except Exception as e:
            self.logger.warning(
                "LocalCA: Cannot auto-install CA into trust store: %s\n"
                "  You can manually trust the CA cert at %s\n"
                "  Or remove it later with: site-anywhere --uninstall-ca",
                e, ca.cert_path)
        else:
            self.logger.info("LocalCA: CA installed into system trust store (%s).", ca.cert_path)


def _write_atomic(path: Path, data: bytes, mode: int):
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


# --- ServerCertificateIssuer ---

class ServerCertificate:
    def __init__(self, cert_pem: bytes, key_pem: bytes, subject_addresses: List[str],
                 not_before: datetime, not_after: datetime):
        self.cert_pem = cert_pem
        self.key_pem = key_pem
        self.subject_addresses = subject_addresses
        self.not_before = not_before
        self.not_after = not_after


def _san_addresses(ip_addresses: Iterable[str], logger: logging.Logger):
    seen = set()
    result = []
    for raw in list(ip_addresses) + list(LOOPBACK_ADDRESSES):
        try:
            ip = ipaddress.ip_address(str(raw).strip())
        except ValueError:
            logger.debug("LocalCA: skipping invalid IP literal %r", raw)
            continue
        if ip in seen:
            continue
        seen.add(ip)
        result.append(ip)
    return result


def issue_server_certificate(ca: RootCertificateAuthority, ip_addresses: Iterable[str],
                             logger: Optional[logging.Logger] = None,
                             clock: Callable[[], datetime] = _utcnow) -> ServerCertificate:
    """
    Signs a one-year leaf certificate for "localhost" and the given addresses with the root CA.
    127.0.0.1 and ::1 are always included; malformed addresses are dropped.
    """
    logger = logger or _logger
    leaf_key = ec.generate_private_key(ec.SECP256R1())
    addresses = _san_addresses(ip_addresses, logger)

    now = clock()
    not_after = now + LEAF_VALIDITY
    san_list = [x509.DNSName("localhost")] + [x509.IPAddress(ip) for ip in addresses]
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, CA_ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, "localhost"),
        ]))
        .issuer_name(ca.certificate.subject)
        .public_key(leaf_key.public_key())
        .serial_number(_random_serial())
        .not_valid_before(now)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName(san_list), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(leaf_key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca.private_key.public_key()),
            critical=False,
        )
        .sign(private_key=ca.private_key, algorithm=hashes.SHA256())
    )
    logger.info("LocalCA: Issued leaf certificate for localhost and %d address(es).", len(addresses))

    return ServerCertificate(
        cert_pem=encode_certificate(cert),
        key_pem=encode_private_key(leaf_key),
        subject_addresses=["localhost"] + [str(ip) for ip in addresses],
        not_before=now,
        not_after=not_after,
    )


def build_tls_context(server_cert: ServerCertificate) -> ssl.SSLContext:
    """Server-side SSLContext holding the leaf pair; the files used to load it are removed on return."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    with tempfile.TemporaryDirectory(prefix="site-anywhere-") as tmp:
        cert_file = os.path.join(tmp, "leaf.pem")
        key_file = os.path.join(tmp, "leaf.key")
        for path, data in ((cert_file, server_cert.cert_pem), (key_file, server_cert.key_pem)):
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    return context
