"""Pydantic models for ACME protocol resources."""

from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any

from cryptography import x509
from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# ACME Protocol Enums (RFC 8555)
# =============================================================================


class RevocationReason(IntEnum):
    """Certificate revocation reasons (RFC 5280 Section 5.3.1)."""

    UNSPECIFIED = 0
    KEY_COMPROMISE = 1
    CA_COMPROMISE = 2
    AFFILIATION_CHANGED = 3
    SUPERSEDED = 4
    CESSATION_OF_OPERATION = 5
    CERTIFICATE_HOLD = 6


class AcmeErrorType(StrEnum):
    """ACME error types (RFC 8555 Section 6.7)."""

    ACCOUNT_DOES_NOT_EXIST = "urn:ietf:params:acme:error:accountDoesNotExist"
    ALREADY_REVOKED = "urn:ietf:params:acme:error:alreadyRevoked"
    BAD_CSR = "urn:ietf:params:acme:error:badCSR"
    BAD_NONCE = "urn:ietf:params:acme:error:badNonce"
    BAD_PUBLIC_KEY = "urn:ietf:params:acme:error:badPublicKey"
    BAD_REVOCATION_REASON = "urn:ietf:params:acme:error:badRevocationReason"
    BAD_SIGNATURE_ALGORITHM = "urn:ietf:params:acme:error:badSignatureAlgorithm"
    CAA = "urn:ietf:params:acme:error:caa"
    COMPOUND = "urn:ietf:params:acme:error:compound"
    CONNECTION = "urn:ietf:params:acme:error:connection"
    DNS = "urn:ietf:params:acme:error:dns"
    EXTERNAL_ACCOUNT_REQUIRED = "urn:ietf:params:acme:error:externalAccountRequired"
    INCORRECT_RESPONSE = "urn:ietf:params:acme:error:incorrectResponse"
    INVALID_CONTACT = "urn:ietf:params:acme:error:invalidContact"
    MALFORMED = "urn:ietf:params:acme:error:malformed"
    ORDER_NOT_READY = "urn:ietf:params:acme:error:orderNotReady"
    RATE_LIMITED = "urn:ietf:params:acme:error:rateLimited"
    REJECTED_IDENTIFIER = "urn:ietf:params:acme:error:rejectedIdentifier"
    SERVER_INTERNAL = "urn:ietf:params:acme:error:serverInternal"
    TLS = "urn:ietf:params:acme:error:tls"
    UNAUTHORIZED = "urn:ietf:params:acme:error:unauthorized"
    UNSUPPORTED_CONTACT = "urn:ietf:params:acme:error:unsupportedContact"
    UNSUPPORTED_IDENTIFIER = "urn:ietf:params:acme:error:unsupportedIdentifier"
    USER_ACTION_REQUIRED = "urn:ietf:params:acme:error:userActionRequired"


class ChallengeStatus(StrEnum):
    """Challenge statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(StrEnum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class OrderStatus(StrEnum):
    """Order statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AccountStatus(StrEnum):
    """Account statuses (RFC 8555 Section 7.1.6)."""

    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class ChallengeType(StrEnum):
    """Challenge types (RFC 8555 Section 8, RFC 8737)."""

    HTTP_01 = "http-01"
    DNS_01 = "dns-01"
    TLS_ALPN_01 = "tls-alpn-01"


class IdentifierType(StrEnum):
    """Identifier types (RFC 8555 Section 9.7.7, RFC 8738)."""

    DNS = "dns"
    IP = "ip"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.VALID, OrderStatus.INVALID})
TERMINAL_CHALLENGE_STATUSES = frozenset({ChallengeStatus.VALID, ChallengeStatus.INVALID})


# =============================================================================
# Problem documents
# =============================================================================


class Identifier(BaseModel):
    """ACME identifier (RFC 8555 Section 7.1.3)."""

    type: str = IdentifierType.DNS
    value: str

    @classmethod
    def dns(cls, value: str) -> "Identifier":
        return cls(type=IdentifierType.DNS, value=value)


class Problem(BaseModel):
    """Problem document returned by the CA (RFC 7807, RFC 8555 Section 6.7)."""

    type: str = "about:blank"
    detail: str | None = None
    title: str | None = None
    status: int | None = None
    identifier: Identifier | None = None
    subproblems: list["Problem"] | None = None

    model_config = ConfigDict(extra="allow")

    def __str__(self) -> str:
        text = f"{self.type}: {self.detail or self.title or 'no detail'}"
        if self.identifier is not None:
            text = f"{text} ({self.identifier.value})"
        return text


# =============================================================================
# Resources
# =============================================================================


class DirectoryMeta(BaseModel):
    """Optional metadata advertised by the directory."""

    terms_of_service: str | None = Field(default=None, alias="termsOfService")
    website: str | None = None
    caa_identities: list[str] | None = Field(default=None, alias="caaIdentities")
    external_account_required: bool = Field(default=False, alias="externalAccountRequired")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Directory(BaseModel):
    """ACME directory resource (RFC 8555 Section 7.1.1).

    Every endpoint is optional here; whether one is required is decided by the
    operation that needs it.
    """

    new_nonce: str | None = Field(default=None, alias="newNonce")
    new_account: str | None = Field(default=None, alias="newAccount")
    new_order: str | None = Field(default=None, alias="newOrder")
    new_authz: str | None = Field(default=None, alias="newAuthz")
    revoke_cert: str | None = Field(default=None, alias="revokeCert")
    key_change: str | None = Field(default=None, alias="keyChange")
    renewal_info: str | None = Field(default=None, alias="renewalInfo")
    meta: DirectoryMeta = Field(default_factory=DirectoryMeta)

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    def lookup(self, name: str) -> str | None:
        """Find an endpoint URL by wire name ("newOrder") or field name ("new_order")."""
        for field_name, info in type(self).model_fields.items():
            if field_name == "meta":
                continue
            if name in (field_name, info.alias):
                return getattr(self, field_name)
        extra = self.model_extra or {}
        value = extra.get(name)
        return value if isinstance(value, str) else None

    @property
    def terms_of_service(self) -> str | None:
        return self.meta.terms_of_service


class Account(BaseModel):
    """ACME account resource (RFC 8555 Section 7.1.2)."""

    url: str | None = Field(default=None, exclude=True)
    status: AccountStatus
    contact: list[str] | None = None
    orders: str | None = None
    terms_of_service_agreed: bool | None = Field(default=None, alias="termsOfServiceAgreed")

    model_config = ConfigDict(populate_by_name=True)


class Challenge(BaseModel):
    """ACME challenge resource (RFC 8555 Section 7.5.1)."""

    type: str
    url: str
    status: ChallengeStatus
    token: str | None = None
    validated: datetime | None = None
    error: Problem | None = None
    # Parent authorization, from the Link rel="up" header
    authorization_url: str | None = Field(default=None, exclude=True)

    model_config = ConfigDict(extra="allow")


class Authorization(BaseModel):
    """ACME authorization resource (RFC 8555 Section 7.1.4)."""

    url: str | None = Field(default=None, exclude=True)
    status: AuthorizationStatus
    identifier: Identifier
    challenges: list[Challenge] = Field(default_factory=list)
    expires: datetime | None = None
    wildcard: bool | None = None

    def challenge(self, challenge_type: str) -> Challenge | None:
        """Return the offered challenge of the given type, if any."""
        for challenge in self.challenges:
            if challenge.type == challenge_type:
                return challenge
        return None

    @property
    def offered_types(self) -> list[str]:
        return [challenge.type for challenge in self.challenges]

    def failure(self) -> Problem | None:
        """Return the problem recorded on the first failed challenge."""
        for challenge in self.challenges:
            if challenge.error is not None:
                return challenge.error
        return None


class Order(BaseModel):
    """ACME order resource (RFC 8555 Section 7.1.3)."""

    url: str | None = Field(default=None, exclude=True)
    status: OrderStatus
    identifiers: list[Identifier]
    authorizations: list[str] = Field(default_factory=list)
    finalize: str
    expires: datetime | None = None
    not_before: datetime | None = Field(default=None, alias="notBefore")
    not_after: datetime | None = Field(default=None, alias="notAfter")
    certificate: str | None = None
    error: Problem | None = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def domains(self) -> list[str]:
        return [identifier.value for identifier in self.identifiers]


class CertificateChain(BaseModel):
    """A downloaded certificate chain, leaf first."""

    certificates: list[str] = Field(min_length=1)
    url: str | None = None
    alternates: list[str] = Field(default_factory=list)
    # Issuer certificate URLs, from Link rel="up"
    up: list[str] = Field(default_factory=list)

    @property
    def leaf(self) -> str:
        return self.certificates[0]

    @property
    def pem(self) -> str:
        return "".join(self.certificates)

    def leaf_certificate(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.leaf.encode())

    @property
    def expires_at(self) -> datetime:
        return self.leaf_certificate().not_valid_after_utc

    def valid_days_left(self, now: datetime | None = None) -> int:
        """Whole days until the leaf certificate expires (negative once expired)."""
        now = now or datetime.now(UTC)
        return (self.expires_at - now).days


class AuthorizationInfo(BaseModel):
    """Authorization details for deactivation support."""

    url: str
    domain: str
    expires_at: datetime


class CertificateResult(BaseModel):
    """Result of certificate issuance."""

    chain: CertificateChain
    private_key_pem: str | None
    domains: list[str]
    authorizations: list[AuthorizationInfo]

    @property
    def certificate_pem(self) -> str:
        return self.chain.pem

    @property
    def expires_at(self) -> datetime:
        return self.chain.expires_at
