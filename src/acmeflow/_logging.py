"""Logging utilities for the acmeflow library."""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

# Library is silent unless the application configures logging
_root = logging.getLogger("acmeflow")
_root.addHandler(logging.NullHandler())

# Identifiers of the order being driven by the current task
_current_domains: ContextVar[list[str] | None] = ContextVar("current_domains", default=None)


@contextmanager
def domain_context(domains: list[str] | None) -> Iterator[None]:
    """Attach ``domains`` to log records emitted inside the block.

    The previous value is restored on exit, also when the block raises.
    """
    token = _current_domains.set(list(domains) if domains is not None else None)
    try:
        yield
    finally:
        _current_domains.reset(token)


def get_domain_extra() -> dict[str, list[str] | str]:
    """Get domain info for log extra fields.

    Returns:
        Dict with 'domain' (single) or 'domains' (multiple), or empty dict.
    """
    domains = _current_domains.get()
    if domains is None:
        return {}
    if len(domains) == 1:
        return {"domain": domains[0]}
    return {"domains": domains}


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the acmeflow namespace.

    Args:
        name: The module name (typically __name__).

    Returns:
        A logger instance for the module.
    """
    return logging.getLogger(name)


class Timer:
    """Context manager for timing operations.

    Usage:
        with Timer() as t:
            await engine.finalize(order, csr_der)
        logger.info("Order finalized", extra={"elapsed_ms": t.elapsed_ms})
    """

    def __init__(self) -> None:
        self.elapsed_ms: float = 0
        self._start: float = 0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000
