"""Unit tests for ACME resource models."""

from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID
from pydantic import ValidationError

from acmeflow.crypto import generate_ecdsa_key
from acmeflow.models import (
    Account,
    Authorization,
    AuthorizationInfo,
    CertificateChain,
    CertificateResult,
    Challenge,
    Directory,
    Identifier,
    Order,
    Problem,
)


def _self_signed_pem(common_name: str, days: int) -> str:
    key = generate_ecdsa_key()
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode()


class TestDirectoryModel:
    """Tests for Directory model."""

    def test_directory_from_json(self):
        """Parse directory from JSON response."""
        data = {
            "newNonce": "https://example.com/acme/new-nonce",
            "newAccount": "https://example.com/acme/new-acct",
            "newOrder": "https://example.com/acme/new-order",
            "revokeCert": "https://example.com/acme/revoke-cert",
            "keyChange": "https://example.com/acme/key-change",
        }
        directory = Directory.model_validate(data)

        assert directory.new_nonce == "https://example.com/acme/new-nonce"
        assert directory.new_account == "https://example.com/acme/new-acct"
        assert directory.new_order == "https://example.com/acme/new-order"
        assert directory.revoke_cert == "https://example.com/acme/revoke-cert"
        assert directory.key_change == "https://example.com/acme/key-change"

    def test_directory_with_meta(self):
        """Parse directory with optional meta field."""
        data = {
            "newNonce": "https://example.com/acme/new-nonce",
            "meta": {
                "termsOfService": "https://example.com/tos",
                "website": "https://example.com",
                "externalAccountRequired": True,
            },
        }
        directory = Directory.model_validate(data)

        assert directory.terms_of_service == "https://example.com/tos"
        assert directory.meta.website == "https://example.com"
        assert directory.meta.external_account_required is True

    def test_lookup_by_wire_or_field_name(self):
        directory = Directory.model_validate({"newOrder": "https://example.com/new-order"})

        assert directory.lookup("newOrder") == "https://example.com/new-order"
        assert directory.lookup("new_order") == "https://example.com/new-order"
        assert directory.lookup("newAccount") is None

    def test_lookup_keeps_unknown_endpoints(self):
        data = {"renewalInfo": "https://e/ari", "custom": "https://e/c"}
        directory = Directory.model_validate(data)

        assert directory.lookup("renewalInfo") == "https://e/ari"
        assert directory.lookup("custom") == "https://e/c"

    def test_lookup_ignores_non_string_extras(self):
        directory = Directory.model_validate({"flags": {"a": 1}})
        assert directory.lookup("flags") is None

    def test_directory_is_immutable(self):
        directory = Directory.model_validate({"newOrder": "https://e/o"})
        with pytest.raises(ValidationError):
            directory.new_order = "https://e/other"


class TestAccountModel:
    """Tests for Account model."""

    def test_account_from_json(self):
        """Parse account from JSON response."""
        data = {
            "status": "valid",
            "contact": ["mailto:admin@example.com"],
            "orders": "https://example.com/acme/orders/123",
            "termsOfServiceAgreed": True,
        }
        account = Account.model_validate(data)

        assert account.status == "valid"
        assert account.contact == ["mailto:admin@example.com"]
        assert account.terms_of_service_agreed is True
        assert account.url is None

    def test_account_url_not_serialized(self):
        account = Account(status="valid", url="https://e/acct/1")
        assert "url" not in account.model_dump()


class TestOrderModel:
    """Tests for Order model."""

    def test_order_from_json(self):
        """Parse order from JSON response."""
        data = {
            "status": "pending",
            "expires": "2024-01-01T00:00:00Z",
            "identifiers": [
                {"type": "dns", "value": "example.com"},
                {"type": "dns", "value": "*.example.com"},
            ],
            "authorizations": [
                "https://example.com/acme/authz/1",
                "https://example.com/acme/authz/2",
            ],
            "finalize": "https://example.com/acme/order/123/finalize",
            "notBefore": "2024-01-01T00:00:00Z",
        }
        order = Order.model_validate(data)

        assert order.status == "pending"
        assert order.domains == ["example.com", "*.example.com"]
        assert len(order.authorizations) == 2
        assert order.not_before == datetime(2024, 1, 1, tzinfo=UTC)
        assert order.certificate is None

    def test_order_with_error(self):
        data = {
            "status": "invalid",
            "identifiers": [{"type": "dns", "value": "example.com"}],
            "finalize": "https://example.com/acme/order/123/finalize",
            "error": {"type": "urn:ietf:params:acme:error:unauthorized", "detail": "nope"},
        }
        order = Order.model_validate(data)

        assert order.error is not None
        assert order.error.detail == "nope"

    def test_unknown_status_is_rejected(self):
        with pytest.raises(ValidationError):
            Order.model_validate(
                {"status": "bogus", "identifiers": [], "finalize": "https://e/f"}
            )


class TestChallengeModel:
    """Tests for Challenge model."""

    def test_challenge_valid_status(self):
        """Parse challenge with valid status."""
        data = {
            "type": "http-01",
            "url": "https://example.com/acme/chall/123",
            "status": "valid",
            "token": "abc123",
            "validated": "2024-01-01T12:00:00Z",
        }
        challenge = Challenge.model_validate(data)

        assert challenge.status == "valid"
        assert challenge.validated is not None

    def test_challenge_with_error(self):
        """Parse challenge with error."""
        data = {
            "type": "dns-01",
            "url": "https://example.com/acme/chall/123",
            "status": "invalid",
            "token": "abc123",
            "error": {
                "type": "urn:ietf:params:acme:error:dns",
                "detail": "DNS lookup failed",
            },
        }
        challenge = Challenge.model_validate(data)

        assert challenge.status == "invalid"
        assert challenge.error is not None
        assert challenge.error.type == "urn:ietf:params:acme:error:dns"

    def test_authorization_url_is_not_serialized(self):
        challenge = Challenge(
            type="http-01",
            url="https://e/c",
            status="pending",
            authorization_url="https://e/authz",
        )
        assert "authorization_url" not in challenge.model_dump()

    def test_unknown_challenge_type_is_kept(self):
        challenge = Challenge.model_validate(
            {"type": "dns-account-01", "url": "https://e/c", "status": "pending", "token": "t"}
        )
        assert challenge.type == "dns-account-01"


class TestAuthorizationModel:
    """Tests for Authorization model."""

    @pytest.fixture
    def authz(self) -> Authorization:
        return Authorization.model_validate(
            {
                "status": "pending",
                "identifier": {"type": "dns", "value": "example.com"},
                "wildcard": True,
                "challenges": [
                    {
                        "type": "dns-01",
                        "url": "https://example.com/acme/chall/dns",
                        "status": "pending",
                        "token": "dns-token",
                    },
                    {
                        "type": "http-01",
                        "url": "https://example.com/acme/chall/http",
                        "status": "invalid",
                        "token": "http-token",
                        "error": {"type": "urn:ietf:params:acme:error:connection"},
                    },
                ],
            }
        )

    def test_authorization_from_json(self, authz):
        assert authz.status == "pending"
        assert authz.identifier.value == "example.com"
        assert authz.wildcard is True
        assert authz.offered_types == ["dns-01", "http-01"]

    def test_challenge_lookup(self, authz):
        assert authz.challenge("http-01").token == "http-token"
        assert authz.challenge("tls-alpn-01") is None

    def test_failure_reports_challenge_error(self, authz):
        assert authz.failure().type == "urn:ietf:params:acme:error:connection"


class TestProblemModel:
    def test_str_includes_identifier(self):
        problem = Problem(
            type="urn:ietf:params:acme:error:dns",
            detail="NXDOMAIN",
            identifier=Identifier.dns("example.com"),
        )
        assert str(problem) == "urn:ietf:params:acme:error:dns: NXDOMAIN (example.com)"

    def test_nested_subproblems(self):
        problem = Problem.model_validate(
            {
                "type": "urn:ietf:params:acme:error:compound",
                "subproblems": [
                    {
                        "type": "urn:ietf:params:acme:error:caa",
                        "identifier": {"type": "dns", "value": "a.example.com"},
                    }
                ],
            }
        )
        assert problem.subproblems[0].identifier.value == "a.example.com"

    def test_defaults_to_about_blank(self):
        assert Problem().type == "about:blank"


class TestCertificateChain:
    def test_leaf_first_and_expiry(self):
        leaf = _self_signed_pem("example.org", days=30)
        issuer = _self_signed_pem("issuer", days=365)
        chain = CertificateChain(certificates=[leaf, issuer])

        assert chain.leaf == leaf
        assert chain.pem == leaf + issuer
        assert chain.leaf_certificate().subject.rfc4514_string() == "CN=example.org"
        assert chain.valid_days_left() in (29, 30)

    def test_valid_days_left_negative_after_expiry(self):
        chain = CertificateChain(certificates=[_self_signed_pem("example.org", days=10)])
        later = datetime.now(UTC) + timedelta(days=20)
        assert chain.valid_days_left(now=later) < 0

    def test_empty_chain_rejected(self):
        with pytest.raises(ValidationError):
            CertificateChain(certificates=[])


class TestCertificateResultModel:
    """Tests for CertificateResult model."""

    def test_certificate_result(self):
        leaf = _self_signed_pem("example.com", days=90)
        authz_info = AuthorizationInfo(
            url="https://acme.example/authz/789",
            domain="example.com",
            expires_at=datetime(2026, 2, 15, tzinfo=UTC),
        )
        result = CertificateResult(
            chain=CertificateChain(certificates=[leaf]),
            private_key_pem=None,
            domains=["example.com"],
            authorizations=[authz_info],
        )

        assert result.certificate_pem == leaf
        assert result.expires_at == result.chain.leaf_certificate().not_valid_after_utc
        assert result.private_key_pem is None
        assert result.authorizations[0].url == "https://acme.example/authz/789"
