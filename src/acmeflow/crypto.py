"""Cryptographic backend for ACME protocol operations.

The protocol engine only talks to :class:`AccountKey`. The default backend,
:class:`CryptographyKey`, is built on the ``cryptography`` package; any other
implementation of the same five operations can be substituted.
"""

import base64
import hashlib
import hmac
import json
import re
from abc import ABC, abstractmethod

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

# Type alias for private keys
PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey

_CURVES = {
    "P-256": (ec.SECP256R1, "ES256", hashes.SHA256, 32),
    "P-384": (ec.SECP384R1, "ES384", hashes.SHA384, 48),
}
_CURVE_NAMES = {"secp256r1": "P-256", "secp384r1": "P-384"}

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----\r?\n.+?\r?\n-----END CERTIFICATE-----\r?\n?",
    re.DOTALL,
)


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Args:
        key_size: Key size in bits (2048 or 4096 recommended).

    Returns:
        RSA private key.
    """
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def generate_ecdsa_key(curve: str = "P-256") -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA private key.

    Args:
        curve: Curve name ("P-256" or "P-384").

    Returns:
        ECDSA private key.

    Raises:
        ValueError: If curve is not supported.
    """
    if curve not in _CURVES:
        raise ValueError(f"Unsupported curve: {curve}. Supported: {list(_CURVES)}")

    return ec.generate_private_key(_CURVES[curve][0]())


def load_private_key_pem(pem_data: str, password: bytes | None = None) -> PrivateKey:
    """Load a private key from PEM-encoded data.

    Args:
        pem_data: PEM-encoded private key string.
        password: Optional password for encrypted keys.

    Returns:
        RSA or ECDSA private key.

    Raises:
        ValueError: If PEM data is invalid or password is incorrect.
    """
    try:
        key = serialization.load_pem_private_key(
            pem_data.encode("utf-8"),
            password=password,
        )
    except ValueError as e:
        error_msg = str(e).lower()
        if "password" in error_msg or "decrypt" in error_msg or "asn.1" in error_msg:
            raise ValueError("Invalid password or encrypted key requires password") from e
        raise ValueError(f"Invalid PEM data: {e}") from e
    except TypeError as e:
        # Encrypted key loaded without a password
        raise ValueError("Invalid password or encrypted key requires password") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"Unsupported key type: {type(key).__name__}")

    return key


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key as unencrypted PKCS#8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def create_csr(
    key: PrivateKey,
    domains: list[str],
) -> x509.CertificateSigningRequest:
    """Create a Certificate Signing Request (CSR).

    Args:
        key: Private key to sign the CSR.
        domains: List of domain names to include in the CSR.

    Returns:
        Certificate Signing Request.

    Raises:
        ValueError: If domains list is empty.
    """
    if not domains:
        raise ValueError("At least one domain is required")

    # First domain becomes the Common Name
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    san = x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains])

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(san, critical=False)
    )
    return builder.sign(key, hashes.SHA256())


def csr_to_der(csr: x509.CertificateSigningRequest) -> bytes:
    """DER-encode a CSR for the finalize request."""
    return csr.public_bytes(serialization.Encoding.DER)


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(data: str) -> bytes:
    """Base64url decode, restoring any stripped padding."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def pem_to_der(pem: str) -> bytes:
    """Convert PEM-encoded certificate to DER format.

    Args:
        pem: PEM-encoded certificate string.

    Returns:
        DER-encoded certificate bytes.
    """
    cert = x509.load_pem_x509_certificate(pem.encode())
    return cert.public_bytes(serialization.Encoding.DER)


def split_pem_chain(pem_chain: str) -> list[str]:
    """Split a PEM chain into individual certificates, preserving order.

    Every block is parsed to make sure it really is a certificate.

    Raises:
        ValueError: If a block is not a valid certificate.
    """
    certificates = []
    for match in _PEM_CERT_RE.finditer(pem_chain):
        block = match.group(0).replace("\r\n", "\n")
        if not block.endswith("\n"):
            block += "\n"
        x509.load_pem_x509_certificate(block.encode())
        certificates.append(block)
    return certificates


def _int_to_base64url(n: int, length: int) -> str:
    """Convert an integer to base64url encoding with fixed length."""
    return base64url_encode(n.to_bytes(length, byteorder="big"))


def get_jwk(key: PrivateKey) -> dict:
    """Get the JWK (JSON Web Key) representation of a public key.

    Args:
        key: Private key to extract public JWK from.

    Returns:
        JWK dictionary.
    """
    if isinstance(key, rsa.RSAPrivateKey):
        public_numbers = key.public_key().public_numbers()
        n_length = (public_numbers.n.bit_length() + 7) // 8
        e_length = (public_numbers.e.bit_length() + 7) // 8
        return {
            "kty": "RSA",
            "n": _int_to_base64url(public_numbers.n, n_length),
            "e": _int_to_base64url(public_numbers.e, e_length),
        }

    public_key = key.public_key()
    public_numbers = public_key.public_numbers()
    crv = _CURVE_NAMES.get(public_key.curve.name)
    if crv is None:
        raise ValueError(f"Unsupported curve: {public_key.curve.name}")
    coord_size = _CURVES[crv][3]

    return {
        "kty": "EC",
        "crv": crv,
        "x": _int_to_base64url(public_numbers.x, coord_size),
        "y": _int_to_base64url(public_numbers.y, coord_size),
    }


def jwk_thumbprint(jwk: dict) -> str:
    """Compute the RFC 7638 thumbprint of a public JWK."""
    if jwk["kty"] == "RSA":
        canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
    else:
        canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}

    # Required members only, sorted, no whitespace
    json_bytes = json.dumps(canonical, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64url_encode(hashlib.sha256(json_bytes).digest())


def key_thumbprint(key: PrivateKey) -> str:
    """Compute the JWK thumbprint of a key (RFC 7638).

    Args:
        key: Private key to compute thumbprint for.

    Returns:
        Base64url-encoded SHA-256 thumbprint.
    """
    return jwk_thumbprint(get_jwk(key))


def _algorithm_for(key: PrivateKey) -> str:
    if isinstance(key, rsa.RSAPrivateKey):
        return "RS256"
    crv = _CURVE_NAMES.get(key.curve.name)
    if crv is None:
        raise ValueError(f"Unsupported curve: {key.curve.name}")
    return _CURVES[crv][1]


def _raw_sign(key: PrivateKey, data: bytes) -> bytes:
    """Sign bytes, producing the JWS signature encoding for the key type."""
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    crv = _CURVE_NAMES.get(key.curve.name)
    if crv is None:
        raise ValueError(f"Unsupported curve: {key.curve.name}")
    _, _, hash_cls, coord_size = _CURVES[crv]
    der_signature = key.sign(data, ec.ECDSA(hash_cls()))
    r, s = decode_dss_signature(der_signature)

    # JWS wants fixed-size r||s, not DER
    return r.to_bytes(coord_size, byteorder="big") + s.to_bytes(coord_size, byteorder="big")


def encode_json(value: dict) -> str:
    """Compact JSON, base64url encoded."""
    return base64url_encode(json.dumps(value, separators=(",", ":")).encode("utf-8"))


def sign_jws(
    key: "AccountKey | PrivateKey",
    payload: dict | str,
    url: str,
    nonce: str | None = None,
    kid: str | None = None,
) -> dict[str, str]:
    """Sign a payload as a JWS (JSON Web Signature) for ACME.

    Args:
        key: Account key (or raw private key) to sign with.
        payload: Payload to sign (dict for JSON, empty string for POST-as-GET).
        url: URL of the ACME endpoint.
        nonce: Replay nonce (omitted for the inner JWS of a key change).
        kid: Account URL (if registered). If None, includes JWK.

    Returns:
        JWS in flattened JSON serialization (protected, payload, signature).
    """
    account_key = as_account_key(key)
    protected: dict[str, str | dict] = {"alg": account_key.algorithm, "url": url}
    if nonce is not None:
        protected["nonce"] = nonce
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = account_key.jwk()

    protected_b64 = encode_json(protected)
    payload_b64 = "" if payload == "" else encode_json(payload)  # type: ignore[arg-type]
    signature = account_key.sign(f"{protected_b64}.{payload_b64}".encode())

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(signature),
    }


def sign_hs256(mac_key: bytes, protected: dict, payload: dict) -> dict[str, str]:
    """Produce a flattened HS256 JWS, as used for external account binding."""
    protected_b64 = encode_json(protected)
    payload_b64 = encode_json(payload)
    digest = hmac.new(mac_key, f"{protected_b64}.{payload_b64}".encode(), hashlib.sha256).digest()
    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(digest),
    }


class AccountKey(ABC):
    """Abstract interface for the account key pair.

    Implementations wrap whatever cryptographic backend holds the private key.
    """

    @property
    @abstractmethod
    def algorithm(self) -> str:
        """JWS algorithm name ("ES256", "ES384" or "RS256")."""
        ...

    @abstractmethod
    def jwk(self) -> dict:
        """Public key as a JWK dictionary."""
        ...

    @abstractmethod
    def sign(self, data: bytes) -> bytes:
        """Sign bytes with the private key, in JWS signature encoding."""
        ...

    @abstractmethod
    def public_der(self) -> bytes:
        """Public key as DER SubjectPublicKeyInfo."""
        ...

    def thumbprint(self) -> str:
        """RFC 7638 thumbprint of the public key."""
        return jwk_thumbprint(self.jwk())


class CryptographyKey(AccountKey):
    """Account key backed by the ``cryptography`` package.

    Args:
        key: An RSA or ECDSA (P-256, P-384) private key.
    """

    def __init__(self, key: PrivateKey):
        if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise ValueError(f"Unsupported key type: {type(key).__name__}")
        self._algorithm = _algorithm_for(key)
        self.private_key = key

    @classmethod
    def generate(cls, kind: str = "P-256") -> "CryptographyKey":
        """Generate a fresh key: "P-256", "P-384" or "RSA"."""
        if kind == "RSA":
            return cls(generate_rsa_key())
        return cls(generate_ecdsa_key(kind))

    @classmethod
    def from_pem(cls, pem_data: str, password: bytes | None = None) -> "CryptographyKey":
        return cls(load_private_key_pem(pem_data, password))

    def to_pem(self) -> str:
        return private_key_to_pem(self.private_key)

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def jwk(self) -> dict:
        return get_jwk(self.private_key)

    def sign(self, data: bytes) -> bytes:
        return _raw_sign(self.private_key, data)

    def public_der(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def as_account_key(key: "AccountKey | PrivateKey") -> AccountKey:
    """Accept either a backend-neutral key or a raw ``cryptography`` key."""
    if isinstance(key, AccountKey):
        return key
    return CryptographyKey(key)
