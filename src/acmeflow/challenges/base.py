"""Provisioning boundary between the order engine and the caller."""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from acmeflow.challenges.dns01 import compute_dns_txt_value, dns_record_name
from acmeflow.challenges.http01 import http_resource_path
from acmeflow.challenges.tls_alpn01 import acme_identifier_digest
from acmeflow.models import Identifier


class ProvisioningRequest(BaseModel):
    """Everything the caller needs to answer one challenge.

    The engine computes the key authorization; the caller publishes whatever
    the challenge type asks for and then reports readiness.
    """

    challenge_type: str
    token: str
    key_authorization: str
    identifier: Identifier
    challenge_url: str
    authorization_url: str | None = None

    model_config = {"frozen": True}

    @property
    def domain(self) -> str:
        return self.identifier.value

    @property
    def http_path(self) -> str:
        """http-01: path to serve on port 80."""
        return http_resource_path(self.token)

    @property
    def http_body(self) -> str:
        """http-01: response body, the key authorization itself."""
        return self.key_authorization

    @property
    def dns_record_name(self) -> str:
        """dns-01: name of the TXT record."""
        return dns_record_name(self.domain)

    @property
    def dns_txt_value(self) -> str:
        """dns-01: TXT record value."""
        return compute_dns_txt_value(self.key_authorization)

    @property
    def tls_alpn_digest(self) -> bytes:
        """tls-alpn-01: digest for the acmeIdentifier certificate extension."""
        return acme_identifier_digest(self.key_authorization)


class Provisioner(ABC):
    """Abstract interface for challenge provisioning.

    Implementations place the HTTP resource, publish the DNS record or serve
    the TLS-ALPN certificate. Returning from :meth:`provision` is the signal
    that the CA may start validating.
    """

    @abstractmethod
    async def provision(self, request: ProvisioningRequest) -> None:
        """Make the challenge response available to the CA.

        Args:
            request: Challenge details and key authorization.
        """
        ...

    async def cleanup(self, request: ProvisioningRequest) -> None:
        """Remove whatever :meth:`provision` created. Optional.

        Args:
            request: The same request passed to provision().
        """
        return None
