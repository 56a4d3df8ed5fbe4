from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from pydantic import ValidationError

from ..errors import FailureKind, FatalError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

TRANSIENT_SIGNATURES = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "timeout",
    "timed out",
    "network",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
    "service unavailable",
    "econnreset",
    "etimedout",
    "429",
    "503",
)


def compute_backoff(
    attempt: int, base: float = 1.0, ceiling: float = 10.0, jitter: float = 0.25
) -> float:
    """Compute exponential backoff with proportional jitter.

    ``attempt`` is 1-based: the first retry waits roughly ``base`` seconds,
    each following one twice as long, never more than ``ceiling`` before
    jitter is applied.
    """
    delay = min(base * (2 ** max(attempt - 1, 0)), ceiling)
    if jitter:
        delay *= 1 + random.uniform(-jitter, jitter)
    return max(delay, 0.0)


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    failure_kind: Optional[FailureKind] = None


class RetryPolicy:
    """Classify errors and compute backoff for failed steps."""

    def __init__(
        self, base_seconds: float = 1.0, max_seconds: float = 10.0, jitter: float = 0.25
    ) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.jitter = jitter

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, FatalError):
            return False
        if isinstance(error, TransientError):
            return True
        if isinstance(
            error, (ValidationError, ValueError, TypeError, KeyError, AttributeError)
        ):
            return False
        if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            return True
        if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
            return True
        status = _status_of(error)
        if status is not None:
            return status in RETRYABLE_STATUS_CODES
        message = str(error).lower()
        return any(signature in message for signature in TRANSIENT_SIGNATURES)

    def should_retry(self, error: BaseException, attempt: int, max_retries: int) -> bool:
        """Return whether failure number ``attempt`` may be retried."""
        return self.is_retryable(error) and attempt <= max_retries

    def backoff_delay(self, attempt: int) -> float:
        return compute_backoff(attempt, self.base_seconds, self.max_seconds, self.jitter)

    def evaluate(self, error: BaseException, attempt: int, max_retries: int) -> RetryDecision:
        if not self.is_retryable(error):
            return RetryDecision(retry=False, failure_kind=FailureKind.FATAL)
        if attempt > max_retries:
            return RetryDecision(retry=False, failure_kind=FailureKind.EXHAUSTED)
        return RetryDecision(retry=True, delay=self.backoff_delay(attempt))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    max_retries: int = 3,
) -> T:
    """Await ``fn`` in-process, retrying transient failures with backoff."""
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            attempt += 1
            if not policy.should_retry(exc, attempt, max_retries):
                raise
            delay = policy.backoff_delay(attempt)
            logger.warning(
                f"Retrying after {type(exc).__name__} (attempt {attempt}/{max_retries}) in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
