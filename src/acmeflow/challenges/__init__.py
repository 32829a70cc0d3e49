"""ACME challenge helpers and the provisioning interface."""

from acmeflow.challenges.base import Provisioner, ProvisioningRequest
from acmeflow.challenges.dns01 import compute_dns_txt_value, compute_key_authorization
from acmeflow.challenges.tls_alpn01 import create_validation_certificate

__all__ = [
    "Provisioner",
    "ProvisioningRequest",
    "compute_dns_txt_value",
    "compute_key_authorization",
    "create_validation_certificate",
]
