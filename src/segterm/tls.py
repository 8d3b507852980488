"""TLS for the command surface: self-signed certificates and pinning."""

import datetime
import hashlib
import ipaddress
import ssl
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def format_fingerprint(der: bytes) -> str:
    """SHA-256 of a DER certificate as colon-separated hex."""
    return hashlib.sha256(der).digest().hex(":")


def _subject_alt_names(hostname: str) -> list[x509.GeneralName]:
    names: list[x509.GeneralName] = [
        x509.DNSName("localhost"),
        x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")),
    ]
    try:
        addr = ipaddress.ip_address(hostname)
    except ValueError:
        if hostname != "localhost":
            names.append(x509.DNSName(hostname))
    else:
        if addr != ipaddress.IPv4Address("127.0.0.1"):
            names.append(x509.IPAddress(addr))
    return names


def _write_file(path: Path, data: bytes, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    path.chmod(mode)


def generate_self_signed_cert(
    cert_path: Path,
    key_path: Path,
    hostname: str = "localhost",
    days_valid: int = 365,
) -> str:
    """Generate an ECDSA P-256 key and a self-signed certificate for it.

    The key is written owner-readable only. Returns the certificate's
    SHA-256 fingerprint for client pinning.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, hostname),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "segterm"),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days_valid))
        .add_extension(x509.SubjectAlternativeName(_subject_alt_names(hostname)), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .sign(private_key, hashes.SHA256())
    )

    _write_file(
        key_path,
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        0o600,
    )
    _write_file(cert_path, cert.public_bytes(serialization.Encoding.PEM), 0o644)
    return format_fingerprint(cert.public_bytes(serialization.Encoding.DER))


def get_cert_fingerprint(cert_path: Path) -> str:
    """Get the SHA-256 fingerprint of an existing PEM certificate."""
    cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
    return format_fingerprint(cert.public_bytes(serialization.Encoding.DER))


def create_server_ssl_context(cert_path: Path, key_path: Path) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_3
    ctx.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    return ctx


def create_client_ssl_context(ca_cert_path: Path | None = None) -> ssl.SSLContext:
    """Create an SSL context for the client.

    With a CA certificate the chain is verified normally. Without one,
    verification is left to fingerprint pinning after the handshake
    (see ``verify_peer_fingerprint``).
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_3
    if ca_cert_path and ca_cert_path.exists():
        ctx.load_verify_locations(cafile=str(ca_cert_path))
    else:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


def verify_peer_fingerprint(ssl_object: ssl.SSLObject | None, expected: str) -> str:
    """Compare the peer certificate with a pinned fingerprint.

    Returns the actual fingerprint. Raises ssl.SSLError on mismatch.
    """
    der = ssl_object.getpeercert(binary_form=True) if ssl_object else None
    if not der:
        raise ssl.SSLError("Server presented no certificate")
    actual = format_fingerprint(der)
    if actual.lower() != expected.lower():
        raise ssl.SSLError(
            f"Certificate fingerprint mismatch: expected {expected}, got {actual}"
        )
    return actual
