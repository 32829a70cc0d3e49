"""Order, authorization and challenge state machine (RFC 8555 Section 7.4 and 7.5).

Status changes are decided by the CA. The engine only ever learns about them
by reading the resources back; it never infers an authorization or order
status from a challenge outcome.
"""

import asyncio
from collections.abc import Sequence
from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from acmeflow._logging import Timer, domain_context, get_domain_extra, get_logger
from acmeflow.challenges.base import Provisioner, ProvisioningRequest
from acmeflow.challenges.dns01 import compute_key_authorization
from acmeflow.crypto import (
    PrivateKey,
    base64url_encode,
    create_csr,
    csr_to_der,
    pem_to_der,
    split_pem_chain,
)
from acmeflow.exceptions import (
    AuthorizationError,
    ChallengeFailed,
    OrderFailed,
    ProblemError,
    ProtocolError,
)
from acmeflow.models import (
    TERMINAL_CHALLENGE_STATUSES,
    TERMINAL_ORDER_STATUSES,
    AcmeErrorType,
    Authorization,
    AuthorizationStatus,
    CertificateChain,
    Challenge,
    ChallengeStatus,
    ChallengeType,
    Identifier,
    Order,
    OrderStatus,
    Problem,
    RevocationReason,
)
from acmeflow.polling import Poller, PollResult
from acmeflow.session import AcmeSession, json_body
from acmeflow.transport.base import TransportResponse

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"

# Order statuses reached once the CA has finished looking at the authorizations
_ORDER_PAST_PENDING = frozenset(
    {OrderStatus.READY, OrderStatus.PROCESSING, OrderStatus.VALID, OrderStatus.INVALID}
)
_AUTHZ_PAST_PENDING = frozenset(set(AuthorizationStatus) - {AuthorizationStatus.PENDING})


def _parse(model: type[M], data: dict, url: str | None = None) -> M:
    try:
        resource = model.model_validate(data)
    except ValidationError as err:
        raise ProtocolError(f"Malformed {model.__name__.lower()} resource: {err}") from err
    if url is not None:
        resource = resource.model_copy(update={"url": url})
    return resource


def _identifiers(values: Sequence[str | Identifier]) -> list[Identifier]:
    return [value if isinstance(value, Identifier) else Identifier.dns(value) for value in values]


class OrderEngine:
    """Drives certificate orders from creation to download.

    Args:
        session: Signed request session of a registered account.
        poller: Polling controller shared by challenge and order waits.
    """

    def __init__(self, session: AcmeSession, poller: Poller | None = None):
        self.session = session
        self.poller = poller or Poller()

    # -- orders ---------------------------------------------------------------

    async def new_order(
        self,
        identifiers: Sequence[str | Identifier],
        not_before: datetime | None = None,
        not_after: datetime | None = None,
    ) -> Order:
        """Create a new certificate order.

        Args:
            identifiers: Domain names (or typed identifiers) for the certificate.
            not_before: Requested start of validity.
            not_after: Requested end of validity.

        Returns:
            The Order resource, with its URL set.

        Raises:
            UnknownEndpoint: If the directory has no newOrder endpoint.
            ValueError: If no identifiers are given.
        """
        if not identifiers:
            raise ValueError("At least one identifier is required")
        url = self.session.directory.endpoint("newOrder")

        payload: dict = {
            "identifiers": [
                identifier.model_dump(mode="json") for identifier in _identifiers(identifiers)
            ]
        }
        if not_before is not None:
            payload["notBefore"] = not_before.isoformat()
        if not_after is not None:
            payload["notAfter"] = not_after.isoformat()

        response = await self.session.post(url, payload)
        order_url = response.location
        if not order_url:
            raise ProtocolError("newOrder response has no Location header")

        order = _parse(Order, json_body(response), order_url)
        with domain_context(order.domains):
            logger.info(
                "Order created",
                extra={
                    "order_url": order_url,
                    "status": order.status,
                    "authorizations": len(order.authorizations),
                    **get_domain_extra(),
                },
            )
        return order

    async def _fetch_order(self, url: str) -> PollResult[Order]:
        response = await self.session.post_as_get(url)
        order = _parse(Order, json_body(response), url)
        return PollResult(order, order.status, response.retry_after)

    async def refresh_order(self, order: Order) -> Order:
        """Re-read the order from the CA (POST-as-GET)."""
        return (await self._fetch_order(self._order_url(order))).value

    @staticmethod
    def _order_url(order: Order) -> str:
        if not order.url:
            raise ValueError("Order has no URL; it was not created through new_order()")
        return order.url

    @staticmethod
    def _order_failure(order: Order) -> OrderFailed:
        problem = order.error or Problem(
            type=AcmeErrorType.SERVER_INTERNAL, detail=f"Order {order.url} is invalid"
        )
        return OrderFailed(problem)

    async def wait_until_ready(
        self, order: Order, cancel: asyncio.Event | None = None
    ) -> Order:
        """Poll the order until the CA has moved it out of ``pending``.

        Raises:
            OrderFailed: If the order became invalid.
            PollTimeout: If it stays pending past the polling budget.
        """
        url = self._order_url(order)
        order = await self.poller.poll(
            lambda: self._fetch_order(url),
            _ORDER_PAST_PENDING,
            description=f"order {url}",
            cancel=cancel,
        )
        if order.status == OrderStatus.INVALID:
            raise self._order_failure(order)
        return order

    # -- authorizations -------------------------------------------------------

    async def _fetch_authorization(self, url: str) -> PollResult[Authorization]:
        response = await self.session.post_as_get(url)
        authorization = _parse(Authorization, json_body(response), url)
        return PollResult(authorization, authorization.status, response.retry_after)

    async def fetch_authorization(self, url: str) -> Authorization:
        """Fetch one authorization (POST-as-GET)."""
        return (await self._fetch_authorization(url)).value

    async def fetch_authorizations(self, order: Order) -> list[Authorization]:
        """Fetch all authorizations for an order.

        Args:
            order: The order to fetch authorizations for.

        Returns:
            List of Authorization resources, in the order's order.
        """
        return [await self.fetch_authorization(url) for url in order.authorizations]

    async def deactivate_authorization(self, authz_url: str) -> Authorization:
        """Deactivate an authorization (RFC 8555 Section 7.5.2).

        Use this when giving up a domain so that no further certificates
        can be issued on the strength of the existing authorization.
        """
        response = await self.session.post(authz_url, {"status": AuthorizationStatus.DEACTIVATED})
        logger.info("Authorization deactivated", extra={"authorization_url": authz_url})
        return _parse(Authorization, json_body(response), authz_url)

    # -- challenges -----------------------------------------------------------

    @staticmethod
    def select_challenge(
        authorization: Authorization, challenge_types: Sequence[str]
    ) -> Challenge:
        """Pick the first offered challenge in preference order.

        Raises:
            ValueError: If none of the preferred types is offered.
        """
        for challenge_type in challenge_types:
            challenge = authorization.challenge(challenge_type)
            if challenge is not None:
                return challenge
        raise ValueError(
            f"None of {list(challenge_types)} offered for {authorization.identifier.value}; "
            f"CA offers {authorization.offered_types}"
        )

    def key_authorization(self, challenge: Challenge) -> str:
        """Compute the key authorization for a challenge (RFC 8555 Section 8.1).

        Only the caller's provisioning step uses this value; it is never sent
        to the CA.
        """
        if not challenge.token:
            raise ProtocolError(f"Challenge {challenge.url} has no token")
        return compute_key_authorization(challenge.token, self.session.signer.thumbprint())

    def provisioning_request(
        self, challenge: Challenge, authorization: Authorization
    ) -> ProvisioningRequest:
        """Bundle what the caller needs to provision ``challenge``."""
        return ProvisioningRequest(
            challenge_type=challenge.type,
            token=challenge.token or "",
            key_authorization=self.key_authorization(challenge),
            identifier=authorization.identifier,
            challenge_url=challenge.url,
            authorization_url=authorization.url,
        )

    @staticmethod
    def _parse_challenge(response: TransportResponse) -> Challenge:
        challenge = _parse(Challenge, json_body(response))
        up = response.links("up")
        if up:
            challenge = challenge.model_copy(update={"authorization_url": up[0]})
        return challenge

    async def _fetch_challenge(self, url: str) -> PollResult[Challenge]:
        response = await self.session.post_as_get(url)
        challenge = self._parse_challenge(response)
        return PollResult(challenge, challenge.status, response.retry_after)

    async def notify_challenge_ready(
        self, challenge: Challenge, cancel: asyncio.Event | None = None
    ) -> Challenge:
        """Tell the CA the challenge response is in place and wait for the verdict.

        Posts an empty object to the challenge URL, then polls the challenge
        until it is ``valid`` or ``invalid``. A challenge that is already
        processing is only polled; one that is already valid is returned.

        Returns:
            The valid Challenge.

        Raises:
            ChallengeFailed: If the CA marks the challenge invalid.
            PollTimeout: If the CA does not decide within the polling budget.
            Cancelled: If ``cancel`` is set while waiting.
        """
        url = challenge.url
        initial: PollResult[Challenge] = PollResult(challenge, challenge.status)
        if challenge.status == ChallengeStatus.PENDING:
            response = await self.session.post(url, {})
            posted = self._parse_challenge(response)
            initial = PollResult(posted, posted.status, response.retry_after)
            logger.debug("Challenge response submitted", extra={"challenge_url": url})

        with Timer() as timer:
            challenge = await self.poller.poll(
                lambda: self._fetch_challenge(url),
                TERMINAL_CHALLENGE_STATUSES,
                description=f"challenge {url}",
                cancel=cancel,
                initial=initial,
            )

        if challenge.status == ChallengeStatus.INVALID:
            problem = challenge.error or Problem(
                type=AcmeErrorType.UNAUTHORIZED, detail="Challenge validation failed"
            )
            logger.error(
                "Challenge failed",
                extra={"challenge_url": url, "type": problem.type, **get_domain_extra()},
            )
            raise ChallengeFailed(problem)

        logger.info(
            "Challenge validated",
            extra={
                "challenge_url": url,
                "challenge_type": challenge.type,
                "elapsed_ms": timer.elapsed_ms,
                **get_domain_extra(),
            },
        )
        return challenge

    async def _cleanup(self, provisioner: Provisioner, request: ProvisioningRequest) -> None:
        try:
            await provisioner.cleanup(request)
        except Exception:
            logger.warning(
                "Challenge cleanup failed",
                extra={"challenge_url": request.challenge_url, "domain": request.domain},
                exc_info=True,
            )

    async def authorize(
        self,
        order: Order,
        provisioner: Provisioner,
        challenge_types: Sequence[str] = (ChallengeType.HTTP_01,),
        cancel: asyncio.Event | None = None,
    ) -> list[Authorization]:
        """Satisfy every authorization of an order.

        Authorizations that are already valid are skipped. For the others the
        first offered challenge in ``challenge_types`` is provisioned through
        ``provisioner``, signalled ready, and polled to a verdict. A failed
        challenge is final: no other challenge type is tried.

        Returns:
            The authorizations as last read from the CA.

        Raises:
            AuthorizationError: If an authorization is not pending or valid,
                or does not become valid after its challenge succeeded.
            ChallengeFailed: If a challenge is marked invalid.
            ValueError: If no preferred challenge type is offered.
        """
        authorizations = []
        with domain_context(order.domains):
            for authorization in await self.fetch_authorizations(order):
                if authorization.status == AuthorizationStatus.VALID:
                    logger.debug(
                        "Authorization already valid",
                        extra={"authorization_url": authorization.url},
                    )
                    authorizations.append(authorization)
                    continue
                if authorization.status != AuthorizationStatus.PENDING:
                    raise self._authorization_failure(authorization)

                challenge = self.select_challenge(authorization, challenge_types)
                request = self.provisioning_request(challenge, authorization)
                await provisioner.provision(request)
                try:
                    await self.notify_challenge_ready(challenge, cancel=cancel)
                finally:
                    await self._cleanup(provisioner, request)

                authorizations.append(await self._wait_for_authorization(authorization, cancel))
        return authorizations

    async def _wait_for_authorization(
        self, authorization: Authorization, cancel: asyncio.Event | None
    ) -> Authorization:
        url = authorization.url or ""
        authorization = await self.poller.poll(
            lambda: self._fetch_authorization(url),
            _AUTHZ_PAST_PENDING,
            description=f"authorization {url}",
            cancel=cancel,
        )
        if authorization.status != AuthorizationStatus.VALID:
            raise self._authorization_failure(authorization)
        return authorization

    @staticmethod
    def _authorization_failure(authorization: Authorization) -> AuthorizationError:
        problem = authorization.failure() or Problem(
            type=AcmeErrorType.UNAUTHORIZED,
            detail=f"Authorization for {authorization.identifier.value} "
            f"is {authorization.status}",
            identifier=authorization.identifier,
        )
        return AuthorizationError(problem)

    # -- finalization ---------------------------------------------------------

    async def finalize(
        self,
        order: Order,
        csr_der: bytes,
        cancel: asyncio.Event | None = None,
    ) -> Order:
        """Submit the CSR and wait for the certificate to be issued.

        The finalize request is sent at most once per call: an order the CA
        already reports as processing or valid is only polled.

        Args:
            order: Order whose authorizations have all been satisfied.
            csr_der: DER-encoded certificate signing request.
            cancel: Optional event that aborts polling.

        Returns:
            The valid Order, with its certificate URL.

        Raises:
            OrderFailed: If the CA rejects the CSR or the order becomes invalid.
            PollTimeout: If issuance does not finish within the polling budget.
        """
        url = self._order_url(order)
        with domain_context(order.domains):
            if order.status == OrderStatus.PENDING:
                order = await self.wait_until_ready(order, cancel=cancel)
            if order.status == OrderStatus.INVALID:
                raise self._order_failure(order)

            initial: PollResult[Order] = PollResult(order, order.status)
            if order.status == OrderStatus.READY:
                try:
                    response = await self.session.post(
                        order.finalize, {"csr": base64url_encode(csr_der)}
                    )
                except ProblemError as err:
                    logger.error(
                        "Finalize rejected", extra={"order_url": url, "type": err.type}
                    )
                    raise OrderFailed.wrap(err) from err
                finalized = _parse(Order, json_body(response), url)
                initial = PollResult(finalized, finalized.status, response.retry_after)
                logger.info("Order finalized", extra={"order_url": url, **get_domain_extra()})

            order = await self.poller.poll(
                lambda: self._fetch_order(url),
                TERMINAL_ORDER_STATUSES,
                description=f"order {url}",
                cancel=cancel,
                initial=initial,
            )
            if order.status == OrderStatus.INVALID:
                raise self._order_failure(order)
            if not order.certificate:
                raise ProtocolError(f"Order {url} is valid but has no certificate URL")

            logger.info(
                "Certificate issued",
                extra={
                    "order_url": url,
                    "certificate_url": order.certificate,
                    **get_domain_extra(),
                },
            )
        return order

    async def finalize_with_key(
        self,
        order: Order,
        private_key: PrivateKey,
        cancel: asyncio.Event | None = None,
    ) -> Order:
        """Build a CSR for the order's identifiers from ``private_key`` and finalize."""
        csr = create_csr(private_key, order.domains)
        return await self.finalize(order, csr_to_der(csr), cancel=cancel)

    # -- certificates ---------------------------------------------------------

    async def download_chain(self, url: str) -> CertificateChain:
        """Download a PEM certificate chain from ``url``.

        Raises:
            ProtocolError: If the body holds no valid certificate.
        """
        response = await self.session.post_as_get(url, accept=PEM_CHAIN_CONTENT_TYPE)
        try:
            certificates = split_pem_chain(response.text)
        except ValueError as err:
            raise ProtocolError(f"Invalid certificate in chain from {url}: {err}") from err
        if not certificates:
            raise ProtocolError(f"No certificate in response from {url}")

        chain = CertificateChain(
            certificates=certificates,
            url=url,
            alternates=response.links("alternate"),
            up=response.links("up"),
        )
        logger.info(
            "Certificate downloaded",
            extra={"certificate_url": url, "chain_length": len(certificates)},
        )
        return chain

    async def download_certificate(self, order: Order) -> CertificateChain:
        """Download the certificate chain of a valid order, leaf first.

        Raises:
            ValueError: If the order has no certificate URL.
        """
        if not order.certificate:
            raise ValueError("Order has no certificate URL")
        return await self.download_chain(order.certificate)

    async def revoke_certificate(
        self,
        certificate_pem: str,
        reason: RevocationReason | int | None = None,
    ) -> None:
        """Revoke a certificate (RFC 8555 Section 7.6).

        Args:
            certificate_pem: The PEM-encoded certificate to revoke.
            reason: Optional revocation reason code (RFC 5280 Section 5.3.1).
        """
        url = self.session.directory.endpoint("revokeCert")
        try:
            der_bytes = pem_to_der(certificate_pem)
        except ValueError as err:
            raise ValueError(f"Invalid certificate PEM: {err}") from err

        payload: dict[str, str | int] = {"certificate": base64url_encode(der_bytes)}
        if reason is not None:
            payload["reason"] = int(reason)

        await self.session.post(url, payload)
        logger.info("Certificate revoked", extra={"reason": payload.get("reason")})
