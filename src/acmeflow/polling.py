"""Polling with exponential backoff for asynchronous CA processing."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Collection
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Generic, NamedTuple, TypeVar

from pydantic import BaseModel, Field, model_validator

from acmeflow._logging import get_logger
from acmeflow.exceptions import Cancelled, PollTimeout

logger = get_logger(__name__)

T = TypeVar("T")


def parse_retry_after(value: str | None) -> int | None:
    """Parse Retry-After header (seconds or HTTP-date).

    Args:
        value: Retry-After header value.

    Returns:
        Seconds to wait, or None if not parseable.
    """
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return max(0, int((dt - datetime.now(UTC)).total_seconds()))


class BackoffPolicy(BaseModel):
    """Retry policy shared by challenge and order polling.

    The delay before attempt ``n + 1`` is ``initial_delay * multiplier ** n``,
    capped at ``max_delay``. Polling gives up after ``max_attempts`` polls or
    ``timeout`` seconds, whichever comes first.
    """

    initial_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    max_attempts: int = Field(default=30, ge=1)
    timeout: float | None = Field(default=300.0, gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_delays(self) -> "BackoffPolicy":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must not be smaller than initial_delay")
        return self

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given zero-based attempt."""
        try:
            delay = self.initial_delay * self.multiplier**attempt
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)


class PollResult(NamedTuple, Generic[T]):
    """One observation of a polled resource."""

    value: T
    status: str
    retry_after: int | None = None


class Poller:
    """Drives a poll function until it reports a terminal status.

    Args:
        policy: Backoff and budget configuration.
        clock: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or BackoffPolicy()
        self._clock = clock

    async def poll(
        self,
        fetch: Callable[[], Awaitable[PollResult[T]]],
        terminal: Collection[str],
        description: str = "resource",
        cancel: asyncio.Event | None = None,
        initial: PollResult[T] | None = None,
    ) -> T:
        """Poll until ``fetch`` returns a status in ``terminal``.

        A server-provided ``retry_after`` replaces the computed backoff for
        that iteration. Waits are clamped to the remaining time budget.

        Args:
            fetch: Coroutine function returning the latest observation.
            terminal: Statuses that end polling.
            description: Used in log records and error messages.
            cancel: Optional event; setting it aborts the current wait.
            initial: Observation already in hand (e.g. the body of the request
                that started processing); it counts as the first attempt.

        Returns:
            The value of the first terminal observation.

        Raises:
            PollTimeout: If the attempt or time budget is exhausted.
            Cancelled: If ``cancel`` is set.
        """
        policy = self.policy
        deadline = None if policy.timeout is None else self._clock() + policy.timeout
        status: str | None = None

        for attempt in range(policy.max_attempts):
            self._check_cancelled(cancel, description)
            if attempt == 0 and initial is not None:
                result = initial
            else:
                result = await fetch()
            status = str(result.status)
            if status in terminal:
                logger.debug(
                    "Polling finished",
                    extra={"resource": description, "status": status, "attempts": attempt + 1},
                )
                return result.value

            if attempt + 1 == policy.max_attempts:
                break

            if result.retry_after is not None:
                delay = float(result.retry_after)
            else:
                delay = policy.delay_for(attempt)
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                delay = min(delay, remaining)

            logger.debug(
                "Resource not final, waiting",
                extra={"resource": description, "status": status, "delay": delay},
            )
            await self._wait(delay, cancel, description)

        logger.warning(
            "Polling budget exhausted",
            extra={"resource": description, "status": status},
        )
        raise PollTimeout(description, attempt + 1, status)

    @staticmethod
    def _check_cancelled(cancel: asyncio.Event | None, description: str) -> None:
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"Polling {description} was cancelled")

    async def _wait(self, delay: float, cancel: asyncio.Event | None, description: str) -> None:
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except TimeoutError:
            return
        raise Cancelled(f"Polling {description} was cancelled")

