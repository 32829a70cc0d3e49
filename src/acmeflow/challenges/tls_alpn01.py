"""TLS-ALPN-01 challenge helpers (RFC 8737)."""

import hashlib
from datetime import UTC, datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID, ObjectIdentifier

from acmeflow.crypto import PrivateKey, generate_ecdsa_key

ALPN_PROTOCOL = "acme-tls/1"
ACME_IDENTIFIER_OID = ObjectIdentifier("1.3.6.1.5.5.7.1.31")


def acme_identifier_digest(key_authorization: str) -> bytes:
    """SHA-256 of the key authorization, carried in the acmeIdentifier extension."""
    return hashlib.sha256(key_authorization.encode("ascii")).digest()


def acme_identifier_extension_value(key_authorization: str) -> bytes:
    """DER OCTET STRING wrapping the 32-byte digest."""
    digest = acme_identifier_digest(key_authorization)
    return bytes([0x04, len(digest)]) + digest


def create_validation_certificate(
    domain: str,
    key_authorization: str,
    key: PrivateKey | None = None,
) -> tuple[x509.Certificate, PrivateKey]:
    """Create the self-signed certificate to present on the ``acme-tls/1`` handshake.

    Args:
        domain: The identifier being validated.
        key_authorization: Key authorization for the challenge.
        key: Certificate key; a P-256 key is generated when omitted.

    Returns:
        The certificate and its private key.
    """
    key = key or generate_ecdsa_key("P-256")
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=7))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .add_extension(
            x509.UnrecognizedExtension(
                ACME_IDENTIFIER_OID, acme_identifier_extension_value(key_authorization)
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    return certificate, key
