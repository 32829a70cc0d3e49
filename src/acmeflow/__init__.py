"""acmeflow - asynchronous ACME client engine for automated TLS certificate issuance."""

from acmeflow._version import __version__
from acmeflow.challenges.base import Provisioner, ProvisioningRequest
from acmeflow.client import AcmeClient
from acmeflow.directory import LETS_ENCRYPT_DIRECTORY, LETS_ENCRYPT_STAGING_DIRECTORY
from acmeflow.polling import BackoffPolicy

__all__ = [
    "LETS_ENCRYPT_DIRECTORY",
    "LETS_ENCRYPT_STAGING_DIRECTORY",
    "AcmeClient",
    "BackoffPolicy",
    "Provisioner",
    "ProvisioningRequest",
    "__version__",
]
