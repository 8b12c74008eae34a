"""Bounded retry with linear backoff for outbound calls.

Every external call in the engine (block explorer, announcements, payment
worker hand-off) goes through :func:`retry_async` so attempts, per-attempt
timeouts and backoff are configured in one place.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class TransientError(RuntimeError):
    """Failure worth another attempt (bad status, oversized or malformed body)."""


class RetryExhaustedError(RuntimeError):
    """Raised once every attempt has failed."""

    def __init__(self, label: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget for one logical operation."""

    max_attempts: int = 3
    base_delay: float = 1.0
    timeout: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Return the pause after the given (1-based) failed attempt."""
        return self.base_delay * attempt


RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientError,
    httpx.HTTPError,
    TimeoutError,
    OSError,
)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "operation",
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Each attempt is bounded by ``policy.timeout``. Errors outside ``retry_on``
    propagate immediately.

    Raises:
        RetryExhaustedError: carrying the last error once all attempts failed.
    """
    attempts = max(1, policy.max_attempts)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout)
        except retry_on as exc:
            last_error = exc
            logger.warning(
                "%s attempt %d/%d failed: %s", label, attempt, attempts, exc or type(exc).__name__
            )

        if attempt < attempts:
            await sleep(policy.delay_for(attempt))

    raise RetryExhaustedError(label, attempts, last_error)
