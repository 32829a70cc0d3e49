"""Signed request pipeline: nonce handling, signing, sending and badNonce recovery."""

import asyncio
import json

from acmeflow._logging import get_logger
from acmeflow.directory import DirectoryResolver
from acmeflow.exceptions import BadNonceError, NoNonceAvailable, ProblemError, ProtocolError
from acmeflow.nonce import NonceCache
from acmeflow.signer import Signer
from acmeflow.transport.base import Transport, TransportResponse

logger = get_logger(__name__)

JOSE_CONTENT_TYPE = "application/jose+json"

# A badNonce rejection is retried this many times, never more
BAD_NONCE_RETRIES = 1


class AcmeSession:
    """Per-account signed request channel.

    Every signed request runs take-nonce, sign, send, store-new-nonce as one
    critical section under an ``asyncio.Lock``, so tasks sharing an account
    never race for the single cached nonce.

    Args:
        transport: HTTP transport.
        directory: Resolver for the ``newNonce`` endpoint.
        signer: Signer holding the account key.
        nonces: Nonce cache; a fresh one is created when omitted.
    """

    def __init__(
        self,
        transport: Transport,
        directory: DirectoryResolver,
        signer: Signer,
        nonces: NonceCache | None = None,
    ):
        self.transport = transport
        self.directory = directory
        self.signer = signer
        self.nonces = nonces if nonces is not None else NonceCache()
        self.kid: str | None = None
        self._lock = asyncio.Lock()

    async def fetch_nonce(self) -> str:
        """Get a fresh nonce from the ``newNonce`` endpoint (RFC 8555 Section 7.2)."""
        url = self.directory.endpoint("newNonce")
        response = await self.transport.send("HEAD", url)
        if response.is_error:
            raise ProblemError.from_http(response)
        nonce = response.replay_nonce
        if not nonce:
            raise ProtocolError(f"newNonce response from {url} has no Replay-Nonce header")
        logger.debug("Fetched fresh nonce", extra={"url": url})
        return nonce

    async def _take_nonce(self) -> str:
        try:
            return self.nonces.take()
        except NoNonceAvailable:
            return await self.fetch_nonce()

    async def post(
        self,
        url: str,
        payload: dict | str,
        use_kid: bool = True,
        accept: str | None = None,
    ) -> TransportResponse:
        """Make a JWS-signed POST request to the ACME server.

        Args:
            url: The endpoint URL.
            payload: The request payload (dict for JSON, "" for POST-as-GET).
            use_kid: If True, use kid (account URL) in JWS header.
                     If False, use jwk (for new account registration).
            accept: Optional Accept header (certificate downloads).

        Returns:
            The successful response.

        Raises:
            ValueError: If ``use_kid`` is set but no account URL is known.
            ProblemError: If the ACME server returns an error.
            SigningError: If the key cannot sign.
            TransportError: If the request could not be sent.
        """
        if use_kid and not self.kid:
            raise ValueError("Account not registered. Call register_account() first.")

        headers = {"Content-Type": JOSE_CONTENT_TYPE}
        if accept:
            headers["Accept"] = accept

        retries = 0
        async with self._lock:
            while True:
                nonce = await self._take_nonce()
                envelope = self.signer.sign(
                    url,
                    payload,
                    nonce=nonce,
                    kid=self.kid if use_kid else None,
                )
                response = await self.transport.send(
                    "POST",
                    url,
                    headers=headers,
                    body=json.dumps(envelope).encode("utf-8"),
                )
                # The CA sends a fresh nonce on errors too, badNonce included
                self.nonces.put(response.replay_nonce)

                if not response.is_error:
                    return response

                error = ProblemError.from_http(response)
                if isinstance(error, BadNonceError) and retries < BAD_NONCE_RETRIES:
                    retries += 1
                    logger.warning(
                        "Nonce rejected, retrying with a fresh one",
                        extra={"url": url, "retry": retries},
                    )
                    continue
                logger.debug(
                    "ACME request failed",
                    extra={"url": url, "status_code": response.status_code, "type": error.type},
                )
                raise error

    async def post_as_get(self, url: str, accept: str | None = None) -> TransportResponse:
        """Fetch a resource with an empty signed payload (RFC 8555 Section 6.3)."""
        return await self.post(url, "", accept=accept)


def json_body(response: TransportResponse) -> dict:
    """Decode a resource body, which must be a JSON object.

    Raises:
        ProtocolError: If the body is not a JSON object.
    """
    try:
        data = response.json()
    except ValueError as err:
        raise ProtocolError(f"Expected a JSON body, got {response.content_type!r}") from err
    if not isinstance(data, dict):
        raise ProtocolError("Expected a JSON object in response body")
    return data
