"""Retry combinator shared by chain calls and job-level retries."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * factor ** (attempt - 1)`` seconds after each failure."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-based)."""

        return self.base_delay * (self.factor ** (attempt - 1))

    @classmethod
    def from_millis(cls, max_attempts: int, base_ms: int, factor: float = 2.0) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay=base_ms / 1000.0, factor=factor)


@dataclass(frozen=True)
class Attempt(Generic[T]):
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


async def retry_async(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
    sleep: Sleep = asyncio.sleep,
) -> Attempt[T]:
    """Run ``call`` until it succeeds or the policy is exhausted.

    Failures never escape: the last exception is returned inside the
    :class:`Attempt` so callers always get a defined "could not determine"
    branch. ``asyncio.CancelledError`` is not caught.
    """

    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await call()
            if attempt > 1:
                logger.info("%s succeeded on attempt %d", label, attempt)
            return Attempt(value=value, attempts=attempt)
        except Exception as exc:  # noqa: BLE001 - resolved into the Attempt
            last_error = exc
            logger.warning("Attempt %d/%d failed for %s: %s", attempt, policy.max_attempts, label, exc)
            if should_retry is not None and not should_retry(exc):
                logger.error("%s failed with a non-retryable error", label)
                return Attempt(error=exc, attempts=attempt)
            if attempt == policy.max_attempts:
                break
            if on_retry is not None:
                on_retry(exc, attempt)
            await sleep(policy.delay_for(attempt))

    logger.error("%s exhausted %d attempts", label, policy.max_attempts)
    return Attempt(error=last_error, attempts=policy.max_attempts)
