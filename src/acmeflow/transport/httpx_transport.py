"""Transport implementation on top of httpx."""

from collections.abc import Mapping

import httpx

from acmeflow._logging import get_logger
from acmeflow._version import __version__
from acmeflow.exceptions import TransportError
from acmeflow.transport.base import Transport, TransportResponse

logger = get_logger(__name__)

DEFAULT_USER_AGENT = f"acmeflow/{__version__}"


class HttpxTransport(Transport):
    """Transport backed by an ``httpx.AsyncClient``.

    Args:
        ca_cert: Path to CA certificate file, False to disable verification,
                 or None/True for default verification.
        timeout: Request timeout in seconds.
        user_agent: User-Agent header sent with every request.
        client: Pre-built client to use instead of creating one. The transport
                does not close a client it did not create.
    """

    def __init__(
        self,
        ca_cert: str | bool | None = None,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        client: httpx.AsyncClient | None = None,
    ):
        self._owns_client = client is None
        if client is None:
            verify = True if ca_cert is None else ca_cert
            client = httpx.AsyncClient(
                verify=verify,
                timeout=timeout,
                headers={"User-Agent": user_agent},
            )
        self._http = client

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> TransportResponse:
        try:
            response = await self._http.request(
                method,
                url,
                headers=dict(headers or {}),
                content=body,
            )
        except httpx.HTTPError as err:
            logger.error(
                "HTTP request failed",
                extra={"method": method, "url": url, "error": str(err)},
            )
            raise TransportError(f"{method} {url} failed: {err}") from err

        logger.debug(
            "HTTP response",
            extra={"method": method, "url": url, "status_code": response.status_code},
        )
        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers.items()),
            content=response.content,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
