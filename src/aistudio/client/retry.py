"""Retry policy for generation submissions.

Only transient failures are retried:

- ``503`` (:class:`~aistudio.core.errors.ModelOverloaded`) and any other
  5xx response,
- transport errors (connection refused, reset, timeouts).

Every 4xx is terminal.  :class:`~aistudio.core.errors.Aborted` is never
retried.  After the last attempt the last error is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from aistudio.core.errors import Aborted, StudioError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How many attempts to make and how long to wait between them.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay in seconds after the first failure.  Doubles after
            every further failure.
        max_delay: Optional ceiling for a single delay.
    """

    max_attempts: int = 3
    base_delay: float = 0.4
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after *attempt* (1-based) failed."""
        delay = self.base_delay * 2 ** (attempt - 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def is_retryable(self, error: BaseException) -> bool:
        """Return ``True`` for failures worth another attempt."""
        if isinstance(error, Aborted):
            return False
        if isinstance(error, StudioError):
            return error.status_code >= 500
        return isinstance(error, httpx.TransportError)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: Callable[[int], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *operation* until it succeeds, fails terminally or runs out of attempts.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt count, backoff and classification.
        on_retry: Called with the 1-based number of the attempt that just
            failed, before the backoff sleep.
        sleep: Awaitable used for backoff.  The controller passes one that
            raises :class:`Aborted` when the user cancels.

    Returns:
        The first successful result.

    Raises:
        Exception: The last attempt's error, unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Aborted:
            raise
        except Exception as error:
            if attempt >= policy.max_attempts or not policy.is_retryable(error):
                raise

            delay = policy.delay_for(attempt)
            logger.info(f"Attempt {attempt} failed ({type(error).__name__}), retrying in {delay:.2f}s")
            if on_retry is not None:
                on_retry(attempt)
            await sleep(delay)
