"""Pytest fixtures for the acmeflow test suite."""

import logging
import logging.handlers
from collections.abc import AsyncGenerator, Generator

import pytest
from fake_ca import DIRECTORY_URL, FakeAcmeServer, FakeProvisioner

from acmeflow import AcmeClient, BackoffPolicy
from acmeflow.crypto import generate_ecdsa_key

# Fast polling so tests never sit in real backoff sleeps
FAST_POLLING = BackoffPolicy(initial_delay=0.01, multiplier=1.0, max_delay=0.01, max_attempts=20)


@pytest.fixture
def server() -> FakeAcmeServer:
    """A fresh in-memory ACME server."""
    return FakeAcmeServer()


@pytest.fixture
def account_key():
    return generate_ecdsa_key()


@pytest.fixture
async def client(server: FakeAcmeServer, account_key) -> AsyncGenerator[AcmeClient]:
    """A connected client talking to the fake server."""
    async with AcmeClient(
        DIRECTORY_URL, account_key, transport=server, polling=FAST_POLLING
    ) as acme:
        yield acme


@pytest.fixture
async def registered_client(client: AcmeClient) -> AcmeClient:
    """A client with a registered account."""
    await client.register_account(email="admin@example.org")
    return client


@pytest.fixture
def provisioner(server: FakeAcmeServer) -> FakeProvisioner:
    """Provisioner that publishes key authorizations to the fake server."""
    return FakeProvisioner(server)


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name.

        Args:
            level: Filter by log level (e.g., logging.INFO).
            name: Filter by logger name prefix (e.g., "acmeflow.order").

        Returns:
            List of matching log records.
        """
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def find(self, message: str) -> logging.LogRecord:
        """Return the first record with the given message."""
        for record in self.records:
            if record.getMessage() == message:
                return record
        raise AssertionError(f"No log record {message!r} in {self.get_messages()}")

    def clear(self) -> None:
        """Clear all captured log records."""
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Generator[LogCapture]:
    """Capture logs from the acmeflow library during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Certificate issued" in log_capture.get_messages(logging.INFO)
    """
    handler = logging.handlers.MemoryHandler(capacity=10000)
    handler.setLevel(logging.DEBUG)

    acmeflow_logger = logging.getLogger("acmeflow")
    original_level = acmeflow_logger.level
    acmeflow_logger.setLevel(logging.DEBUG)
    acmeflow_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        acmeflow_logger.removeHandler(handler)
        acmeflow_logger.setLevel(original_level)
        handler.close()
