"""Abstract base class for HTTP transports."""

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from acmeflow.polling import parse_retry_after

_LINK_RE = re.compile(r'<([^>]*)>\s*((?:;\s*[^;,]+)*)')
_LINK_PARAM_RE = re.compile(r';\s*([^=\s;]+)\s*=\s*"?([^";,]*)"?')


def parse_link_header(value: str | None) -> list[tuple[str, str]]:
    """Parse an RFC 8288 Link header into (url, rel) pairs."""
    if not value:
        return []
    links = []
    for match in _LINK_RE.finditer(value):
        url, params = match.group(1), match.group(2)
        for name, param_value in _LINK_PARAM_RE.findall(params):
            if name.lower() == "rel":
                for rel in param_value.split():
                    links.append((url, rel))
    return links


@dataclass(frozen=True)
class TransportResponse:
    """Transport-neutral view of an HTTP response.

    Header names are stored lower-cased. Repeated headers are joined with
    ", " as HTTP allows.
    """

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    content: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "headers", {name.lower(): value for name, value in self.headers.items()}
        )

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)

    @property
    def content_type(self) -> str:
        return (self.header("Content-Type") or "").split(";")[0].strip().lower()

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    @property
    def replay_nonce(self) -> str | None:
        return self.header("Replay-Nonce")

    @property
    def location(self) -> str | None:
        return self.header("Location")

    @property
    def retry_after(self) -> int | None:
        return parse_retry_after(self.header("Retry-After"))

    def links(self, rel: str) -> list[str]:
        """URLs of all Link headers with the given relation."""
        return [url for url, link_rel in parse_link_header(self.header("Link")) if link_rel == rel]


class Transport(ABC):
    """Abstract interface for the HTTP stack underneath the protocol engine.

    Implementations perform one HTTP exchange per call and report network or
    TLS failures as :class:`~acmeflow.exceptions.TransportError`. HTTP error
    statuses are not failures at this level; they are returned as responses.
    """

    @abstractmethod
    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> TransportResponse:
        """Perform an HTTP request.

        Args:
            method: HTTP method ("GET", "HEAD" or "POST").
            url: Absolute request URL.
            headers: Request headers.
            body: Request body, if any.

        Returns:
            The response.

        Raises:
            TransportError: If no response could be obtained.
        """
        ...

    async def aclose(self) -> None:
        """Release any resources held by the transport."""
        return None
