from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import httpx

from core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        delay = min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        jitter = delay * self.jitter_factor * (rng() - 0.5) * 2
        return max(0.0, delay + jitter)


NO_RETRY = RetryPolicy(max_retries=0)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return False


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying transient failures with exponential backoff."""
    last_error: Optional[BaseException] = None
    for attempt in range(policy.max_retries + 1):
        try:
            result = operation()
        except Exception as exc:
            last_error = exc
            if not is_retryable(exc):
                raise
            if attempt == policy.max_retries:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                description,
                attempt + 1,
                policy.max_retries + 1,
                delay,
                exc,
            )
            sleep(delay)
        else:
            if attempt:
                logger.info("%s succeeded after %s retries", description, attempt)
            return result

    logger.error("%s failed after %s attempts: %s", description, policy.max_retries + 1, last_error)
    if isinstance(last_error, ExternalServiceError):
        raise last_error
    raise ExternalServiceError(
        f"{description} failed after {policy.max_retries + 1} attempts: {last_error}",
        retryable=True,
    ) from last_error
