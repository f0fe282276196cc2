# orchestration/retry_policy.py
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass

from config import settings
from core.errors import ErrorKind, ModelCallError, QualityRejectedError


@dataclass
class RetryPolicy:
    """Bounded retries with exponential backoff and jitter."""

    max_retries: int = settings.MAX_GENERATION_RETRIES
    base_delay: float = settings.RETRY_DELAY_SECONDS
    max_delay: float = settings.MAX_RETRY_DELAY_SECONDS

    def should_retry(self, error: Exception, retries_used: int) -> bool:
        if retries_used >= self.max_retries:
            return False
        if isinstance(error, QualityRejectedError):
            return True
        if isinstance(error, ModelCallError):
            return error.retryable
        return False

    def delay_for(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (2**attempt))
        jitter = random.uniform(0, delay / 2)
        return min(self.max_delay, delay + jitter)

    async def backoff(self, attempt: int) -> None:
        """Sleep for an exponentially increasing delay with jitter."""
        await asyncio.sleep(self.delay_for(attempt))


def error_kind_of(error: Exception) -> ErrorKind:
    if isinstance(error, (ModelCallError, QualityRejectedError)):
        return error.kind
    return ErrorKind.UNKNOWN
