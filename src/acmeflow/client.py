"""ACME client for certificate management."""

import asyncio
from collections.abc import Sequence

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from acmeflow._logging import Timer, domain_context, get_domain_extra, get_logger
from acmeflow.account import AccountManager, ExternalAccountBinding
from acmeflow.challenges.base import Provisioner
from acmeflow.crypto import (
    AccountKey,
    CryptographyKey,
    PrivateKey,
    as_account_key,
    create_csr,
    csr_to_der,
    private_key_to_pem,
)
from acmeflow.directory import DirectoryResolver
from acmeflow.models import (
    Account,
    Authorization,
    AuthorizationInfo,
    CertificateChain,
    CertificateResult,
    Challenge,
    ChallengeType,
    Directory,
    Identifier,
    Order,
    RevocationReason,
)
from acmeflow.nonce import NonceCache
from acmeflow.order import OrderEngine
from acmeflow.polling import BackoffPolicy, Poller
from acmeflow.session import AcmeSession
from acmeflow.signer import Signer
from acmeflow.transport.base import Transport
from acmeflow.transport.httpx_transport import DEFAULT_USER_AGENT, HttpxTransport

logger = get_logger(__name__)


class AcmeClient:
    """Asynchronous ACME client for automated TLS certificate issuance.

    This client implements RFC 8555 (ACME) for obtaining certificates
    from an ACME-compliant certificate authority. Each instance owns its
    directory cache, nonce cache and account state; several clients for
    different accounts or CAs can run side by side in one process.

    Args:
        directory_url: URL of the ACME directory endpoint.
        account_key: Private key for the ACME account.
        transport: HTTP transport. An httpx-based one is created when omitted.
        ca_cert: Path to CA certificate file, False to disable verification,
                 or None/True for default verification.
        timeout: HTTP timeout in seconds for the default transport.
        user_agent: User-Agent for the default transport.
        polling: Backoff policy for challenge and order polling.
    """

    def __init__(
        self,
        directory_url: str,
        account_key: AccountKey | PrivateKey,
        transport: Transport | None = None,
        ca_cert: str | bool | None = None,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        polling: BackoffPolicy | None = None,
    ):
        self.directory_url = directory_url
        self._owns_transport = transport is None
        self.transport = transport or HttpxTransport(
            ca_cert=ca_cert, timeout=timeout, user_agent=user_agent
        )

        self.resolver = DirectoryResolver(self.transport, directory_url)
        self.nonces = NonceCache()
        self.session = AcmeSession(
            self.transport, self.resolver, Signer(as_account_key(account_key)), self.nonces
        )
        self.accounts = AccountManager(self.session)
        self.orders = OrderEngine(self.session, Poller(polling))

    @classmethod
    def from_key_pem(
        cls, directory_url: str, pem: str, password: bytes | None = None, **kwargs
    ) -> "AcmeClient":
        """Create a client for an existing account key stored as PEM."""
        return cls(directory_url, CryptographyKey.from_pem(pem, password), **kwargs)

    async def aclose(self) -> None:
        """Close the transport if this client created it."""
        if self._owns_transport:
            await self.transport.aclose()

    async def __aenter__(self) -> "AcmeClient":
        await self.connect()
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def connect(self) -> Directory:
        """Fetch the ACME directory (cached after first fetch)."""
        return await self.resolver.fetch()

    @property
    def directory(self) -> Directory:
        """The fetched directory. Raises ValueError before connect()."""
        return self.resolver.directory

    @property
    def account_key(self) -> AccountKey:
        return self.session.signer.key

    @property
    def account_url(self) -> str | None:
        """Get the account URL (set after registration)."""
        return self.accounts.account_url

    # -- account --------------------------------------------------------------

    async def register_account(
        self,
        email: str | None = None,
        contacts: Sequence[str] | None = None,
        terms_agreed: bool = True,
        external_account_binding: ExternalAccountBinding | None = None,
    ) -> Account:
        """Register a new account or find an existing one.

        If an account already exists for the key, it will be returned.
        Otherwise, a new account is created.

        Args:
            email: Contact email address (optional), added as a mailto: URI.
            contacts: Additional contact URIs.
            terms_agreed: Agree to the CA's terms of service.
            external_account_binding: EAB credentials for CAs that require them.

        Returns:
            The Account resource.
        """
        await self.connect()
        contact_list = list(contacts or [])
        if email:
            contact_list.insert(0, f"mailto:{email}")
        return await self.accounts.register(
            contact_list, terms_agreed, external_account_binding=external_account_binding
        )

    async def lookup_account(self) -> Account:
        """Find the account for this key without creating one."""
        await self.connect()
        return await self.accounts.lookup()

    async def load_account(self, key_pem: str, password: bytes | None = None) -> Account:
        """Switch to an account key stored as PEM and look its account up.

        The previous key and account stay in place if the lookup fails.

        Raises:
            RegistrationRejected: If the CA has no account for the key.
        """
        await self.connect()
        previous = self.session.signer, self.session.kid
        self.session.signer = Signer(CryptographyKey.from_pem(key_pem, password))
        self.session.kid = None
        try:
            return await self.accounts.lookup()
        except Exception:
            self.session.signer, self.session.kid = previous
            raise

    async def update_contacts(self, contacts: Sequence[str]) -> Account:
        await self.connect()
        return await self.accounts.update_contacts(list(contacts))

    async def deactivate_account(self) -> Account:
        """Deactivate the current account. This is irreversible."""
        await self.connect()
        return await self.accounts.deactivate()

    async def rollover_key(self, new_key: AccountKey | PrivateKey) -> None:
        """Switch the account to a new key."""
        await self.connect()
        await self.accounts.rollover_key(new_key)

    # -- orders ---------------------------------------------------------------

    async def create_order(self, domains: Sequence[str | Identifier]) -> Order:
        """Create a new certificate order.

        Args:
            domains: Domain names (or typed identifiers) for the certificate.

        Returns:
            The Order resource.
        """
        await self.connect()
        return await self.orders.new_order(domains)

    async def fetch_authorizations(self, order: Order) -> list[Authorization]:
        return await self.orders.fetch_authorizations(order)

    def get_challenge(
        self, authorization: Authorization, challenge_type: str = ChallengeType.HTTP_01
    ) -> Challenge:
        """Get a specific challenge from an authorization.

        Raises:
            ValueError: If the challenge type is not offered.
        """
        return self.orders.select_challenge(authorization, [challenge_type])

    async def authorize(
        self,
        order: Order,
        provisioner: Provisioner,
        challenge_types: Sequence[str] = (ChallengeType.HTTP_01,),
        cancel: asyncio.Event | None = None,
    ) -> list[Authorization]:
        return await self.orders.authorize(order, provisioner, challenge_types, cancel=cancel)

    async def notify_challenge_ready(
        self, challenge: Challenge, cancel: asyncio.Event | None = None
    ) -> Challenge:
        return await self.orders.notify_challenge_ready(challenge, cancel=cancel)

    async def deactivate_authorization(self, authz_url: str) -> Authorization:
        return await self.orders.deactivate_authorization(authz_url)

    async def finalize_order(
        self,
        order: Order,
        csr: x509.CertificateSigningRequest | bytes,
        cancel: asyncio.Event | None = None,
    ) -> Order:
        """Finalize an order by submitting the CSR and wait for issuance.

        Args:
            order: The order to finalize.
            csr: The CSR, as a ``cryptography`` object or DER bytes.

        Returns:
            The valid Order resource.
        """
        csr_der = csr if isinstance(csr, bytes) else csr_to_der(csr)
        return await self.orders.finalize(order, csr_der, cancel=cancel)

    async def download_certificate(self, order: Order) -> CertificateChain:
        """Download the certificate chain for a finalized order, leaf first."""
        return await self.orders.download_certificate(order)

    async def revoke_certificate(
        self,
        certificate_pem: str,
        reason: RevocationReason | int | None = None,
    ) -> None:
        await self.connect()
        await self.orders.revoke_certificate(certificate_pem, reason)

    async def obtain_certificate(
        self,
        domains: list[str],
        provisioner: Provisioner,
        csr: x509.CertificateSigningRequest | None = None,
        challenge_types: Sequence[str] = (ChallengeType.HTTP_01,),
        cancel: asyncio.Event | None = None,
    ) -> CertificateResult:
        """Obtain a certificate for the given domains.

        This is the main high-level method that:
        1. Creates an order
        2. Completes all authorizations through ``provisioner``
        3. Finalizes the order with a CSR
        4. Downloads the certificate chain

        Args:
            domains: List of domain names for the certificate.
            provisioner: Publishes challenge responses.
            csr: Optional CSR. If not provided, one is generated with a new key.
            challenge_types: Challenge types in order of preference.
            cancel: Optional event that aborts any polling wait.

        Returns:
            CertificateResult with the chain, private key PEM (if generated)
            and authorization details.
        """
        private_key_pem: str | None = None
        if csr is None:
            cert_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            csr = create_csr(cert_key, domains)
            private_key_pem = private_key_to_pem(cert_key)

        with domain_context(domains):
            with Timer() as timer:
                order = await self.create_order(domains)
                authorizations = await self.orders.authorize(
                    order, provisioner, challenge_types, cancel=cancel
                )
                order = await self.orders.finalize(order, csr_to_der(csr), cancel=cancel)
                chain = await self.orders.download_certificate(order)

            logger.info(
                "Certificate obtained",
                extra={
                    "order_url": order.url,
                    "elapsed_ms": timer.elapsed_ms,
                    "expires_at": chain.expires_at.isoformat(),
                    **get_domain_extra(),
                },
            )

        authz_info_list = [
            AuthorizationInfo(
                url=authz.url,
                domain=authz.identifier.value,
                expires_at=authz.expires,
            )
            for authz in authorizations
            if authz.url and authz.expires
        ]

        return CertificateResult(
            chain=chain,
            private_key_pem=private_key_pem,
            domains=domains,
            authorizations=authz_info_list,
        )
