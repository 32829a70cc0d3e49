"""End-to-end tests for AcmeClient against the in-memory CA."""

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from fake_ca import BASE_URL, DIRECTORY_URL, FakeProvisioner

from acmeflow import AcmeClient, __version__
from acmeflow.crypto import (
    CryptographyKey,
    create_csr,
    generate_ecdsa_key,
    load_private_key_pem,
    private_key_to_pem,
)
from acmeflow.exceptions import RegistrationRejected
from acmeflow.models import ChallengeType, OrderStatus
from acmeflow.transport.httpx_transport import HttpxTransport


def _san(certificate: x509.Certificate) -> list[str]:
    extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    return extension.value.get_values_for_type(x509.DNSName)


class TestObtainCertificate:
    async def test_obtain_with_http01(self, registered_client, provisioner, log_capture):
        result = await registered_client.obtain_certificate(["example.org"], provisioner)

        assert len(result.chain.certificates) >= 2
        leaf = result.chain.leaf_certificate()
        assert leaf.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "example.org"
        assert _san(leaf) == ["example.org"]
        assert result.domains == ["example.org"]
        assert result.expires_at == leaf.not_valid_after_utc

        # The generated key matches the certificate
        assert result.private_key_pem is not None
        key = load_private_key_pem(result.private_key_pem)
        assert key.public_key().public_numbers() == leaf.public_key().public_numbers()

        (authorization,) = result.authorizations
        assert authorization.domain == "example.org"

        record = log_capture.find("Certificate obtained")
        assert record.domain == "example.org"
        assert record.elapsed_ms >= 0
        assert provisioner.cleaned == provisioner.provisioned

    async def test_obtain_with_dns01_and_own_csr(self, registered_client, server):
        provisioner = FakeProvisioner(server)
        domains = ["example.org", "*.example.org"]
        csr = create_csr(generate_ecdsa_key(), domains)

        result = await registered_client.obtain_certificate(
            domains, provisioner, csr=csr, challenge_types=[ChallengeType.DNS_01]
        )

        assert result.private_key_pem is None
        assert sorted(_san(result.chain.leaf_certificate())) == sorted(domains)
        assert [r.dns_record_name for r in provisioner.provisioned] == [
            "_acme-challenge.example.org",
            "_acme-challenge.example.org",
        ]

    async def test_obtain_twice_reuses_account(self, registered_client, server, provisioner):
        await registered_client.obtain_certificate(["a.example.org"], provisioner)
        await registered_client.obtain_certificate(["b.example.org"], provisioner)

        assert len(server.accounts) == 1
        assert len(server.certificates) == 4
        assert [o.status for o in server.orders.values()] == ["valid", "valid"]

    async def test_requires_registered_account(self, client, provisioner):
        with pytest.raises(ValueError, match="Account not registered"):
            await client.obtain_certificate(["example.org"], provisioner)


class TestStepByStep:
    async def test_manual_flow(self, registered_client, server):
        order = await registered_client.create_order(["example.org"])
        (authz,) = await registered_client.fetch_authorizations(order)
        challenge = registered_client.get_challenge(authz)
        server.published[challenge.token] = registered_client.orders.key_authorization(challenge)

        await registered_client.notify_challenge_ready(challenge)
        order = await registered_client.orders.refresh_order(order)
        assert order.status == OrderStatus.READY

        order = await registered_client.finalize_order(
            order, create_csr(generate_ecdsa_key(), ["example.org"])
        )
        chain = await registered_client.download_certificate(order)
        await registered_client.revoke_certificate(chain.leaf)

        assert len(server.revoked) == 1


class TestClientLifecycle:
    async def test_injected_transport_is_not_closed(self, server, account_key):
        async with AcmeClient(DIRECTORY_URL, account_key, transport=server) as client:
            assert client.directory.new_order == f"{BASE_URL}/new-order"

        assert not server.closed

    async def test_directory_before_connect(self, server, account_key):
        client = AcmeClient(DIRECTORY_URL, account_key, transport=server)
        with pytest.raises(ValueError, match="Directory not fetched"):
            client.directory
        await client.connect()
        assert client.directory.new_nonce is not None

    async def test_default_transport(self, account_key):
        client = AcmeClient(DIRECTORY_URL, account_key, ca_cert=False, timeout=5)
        assert isinstance(client.transport, HttpxTransport)
        await client.aclose()

    async def test_from_key_pem(self, server):
        key = generate_ecdsa_key("P-384")
        client = AcmeClient.from_key_pem(DIRECTORY_URL, private_key_to_pem(key), transport=server)

        assert isinstance(client.account_key, CryptographyKey)
        assert client.account_key.algorithm == "ES384"
        await client.register_account(email="admin@example.org")
        assert client.account_url in server.accounts

    async def test_load_account(self, server, registered_client):
        existing_pem = registered_client.account_key.to_pem()
        client = AcmeClient(DIRECTORY_URL, generate_ecdsa_key(), transport=server)

        account = await client.load_account(existing_pem)

        assert account.url == registered_client.account_url
        assert client.account_url == registered_client.account_url
        assert client.account_key.thumbprint() == registered_client.account_key.thumbprint()

    async def test_load_unknown_account_keeps_current_one(self, server, registered_client):
        original_key = registered_client.account_key

        with pytest.raises(RegistrationRejected):
            await registered_client.load_account(private_key_to_pem(generate_ecdsa_key()))

        assert registered_client.account_key is original_key
        assert (await registered_client.lookup_account()).url == registered_client.account_url

    async def test_independent_clients(self, server):
        first = AcmeClient(DIRECTORY_URL, generate_ecdsa_key(), transport=server)
        second = AcmeClient(DIRECTORY_URL, generate_ecdsa_key(), transport=server)

        await first.register_account()
        await second.register_account()

        assert first.account_url != second.account_url
        assert first.nonces is not second.nonces


def test_version():
    assert __version__
