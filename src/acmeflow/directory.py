"""Directory discovery and endpoint resolution."""

from pydantic import ValidationError

from acmeflow._logging import get_logger
from acmeflow.exceptions import ProblemError, ProtocolError, UnknownEndpoint
from acmeflow.models import Directory
from acmeflow.transport.base import Transport

logger = get_logger(__name__)

LETS_ENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
LETS_ENCRYPT_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"


class DirectoryResolver:
    """Fetches the CA directory once and answers endpoint lookups from the cache.

    Args:
        transport: Transport used for the (unsigned) directory GET.
        url: Directory URL.
    """

    def __init__(self, transport: Transport, url: str):
        self._transport = transport
        self.url = url
        self._directory: Directory | None = None

    @property
    def directory(self) -> Directory:
        """The cached directory.

        Raises:
            ValueError: If the directory has not been fetched yet.
        """
        if self._directory is None:
            raise ValueError("Directory not fetched. Call fetch() first.")
        return self._directory

    @property
    def is_fetched(self) -> bool:
        return self._directory is not None

    async def fetch(self, url: str | None = None) -> Directory:
        """Fetch and cache the directory document.

        Returns the cached document when one exists; call :meth:`invalidate`
        to force a new fetch.

        Raises:
            TransportError: If the CA cannot be reached.
            ProblemError: If the CA answers with an error status.
            ProtocolError: If the body is not a directory object.
        """
        if url is not None and url != self.url:
            self.url = url
            self._directory = None
        if self._directory is not None:
            return self._directory

        response = await self._transport.send("GET", self.url)
        if response.is_error:
            raise ProblemError.from_http(response)

        try:
            data = response.json()
        except ValueError as err:
            raise ProtocolError(f"Directory at {self.url} is not JSON") from err
        if not isinstance(data, dict):
            raise ProtocolError(f"Directory at {self.url} is not a JSON object")
        try:
            self._directory = Directory.model_validate(data)
        except ValidationError as err:
            raise ProtocolError(f"Malformed directory at {self.url}: {err}") from err

        logger.info(
            "Directory fetched",
            extra={
                "url": self.url,
                "external_account_required": self._directory.meta.external_account_required,
            },
        )
        return self._directory

    def invalidate(self) -> None:
        """Drop the cached directory; the next fetch() goes to the network."""
        self._directory = None

    def endpoint(self, name: str) -> str:
        """Return the URL for a named operation.

        Args:
            name: Wire name ("newOrder") or Python name ("new_order").

        Raises:
            ValueError: If the directory has not been fetched yet.
            UnknownEndpoint: If the directory does not advertise ``name``.
        """
        url = self.directory.lookup(name)
        if not url:
            raise UnknownEndpoint(name)
        return url
