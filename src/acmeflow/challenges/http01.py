"""HTTP-01 challenge helpers (RFC 8555 Section 8.3)."""

WELL_KNOWN_PATH = "/.well-known/acme-challenge/"


def http_resource_path(token: str) -> str:
    """Path the CA will GET on port 80 of the identifier."""
    return f"{WELL_KNOWN_PATH}{token}"


def http_resource_url(domain: str, token: str) -> str:
    return f"http://{domain}{http_resource_path(token)}"
