"""Bounded retry with capped exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from datavault.exceptions import StorageUnavailableError

if TYPE_CHECKING:
    from datavault.settings import TransferConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Errors worth another attempt.  Caller errors are never retried.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    StorageUnavailableError,
    ConnectionError,
    TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry an async operation a fixed number of times.

    The delay starts at ``initial_delay``, doubles after every failed
    attempt and never exceeds ``max_delay``.  The loop is explicitly
    bounded by ``max_attempts``; once spent, the last error is re-raised.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    retry_on: tuple[type[Exception], ...] = TRANSIENT_ERRORS
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    @classmethod
    def from_config(cls, config: TransferConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay_seconds,
            max_delay=config.max_delay_seconds,
        )

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry (``max_attempts - 1`` values)."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay = min(delay * 2, self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], *, context: str = "") -> T:
        """Await ``operation()`` until it succeeds or attempts run out."""
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except self.retry_on as exc:
                delay = next(delays, None)
                if delay is None:
                    logger.warning(
                        "%s failed after %d attempt(s): %s", context or "operation", attempt, exc
                    )
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    context or "operation",
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                await self.sleep(delay)
