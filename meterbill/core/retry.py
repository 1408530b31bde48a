"""
Retry Policy — shared retry/backoff for transient failures
==========================================================

One policy object used by every caller that retries:
    - Wallet ledger compare-and-swap (ConcurrentModification, immediate)
    - Payment processor requests that never left the client (connect errors)

Classification:
    transient  → retried until max_attempts, then re-raised
    permanent  → re-raised immediately

By default an exception is transient when it carries ``retryable = True``
(see MeterBillError). Callers may pass their own predicate.

Backoff: min(max_delay, base_delay * 2^attempt) + random(0, attempt * jitter)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(exc: BaseException) -> bool:
    """Default classification: trust the error's ``retryable`` flag."""
    return bool(getattr(exc, "retryable", False))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.0
    max_delay_s: float = 300.0
    jitter_s: float = 0.0
    is_transient: Callable[[BaseException], bool] = is_retryable_error

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retry number *attempt* (1-based)."""
        if self.base_delay_s <= 0:
            return 0.0
        base = min(self.max_delay_s, self.base_delay_s * (2 ** attempt))
        jitter = random.uniform(0, attempt * self.jitter_s) if self.jitter_s else 0.0
        return base + jitter

    def _should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and self.is_transient(exc)

    def run(self, fn: Callable[[], T], description: str = "operation") -> T:
        """Call *fn* until it succeeds, fails permanently, or attempts run out."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as exc:
                if not self._should_retry(exc, attempt):
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.3fs",
                    description, attempt, self.max_attempts, exc, delay,
                )
                if delay:
                    time.sleep(delay)

    async def run_async(
        self, fn: Callable[[], Awaitable[T]], description: str = "operation"
    ) -> T:
        """Async variant of :meth:`run`."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as exc:
                if not self._should_retry(exc, attempt):
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.3fs",
                    description, attempt, self.max_attempts, exc, delay,
                )
                if delay:
                    await asyncio.sleep(delay)
