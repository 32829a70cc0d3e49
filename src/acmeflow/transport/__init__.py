"""HTTP transports for talking to an ACME server."""

from acmeflow.transport.base import Transport, TransportResponse
from acmeflow.transport.httpx_transport import HttpxTransport

__all__ = ["HttpxTransport", "Transport", "TransportResponse"]
