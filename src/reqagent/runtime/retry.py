"""Per-attempt retry with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from reqagent.errors import is_retryable

if TYPE_CHECKING:
    from reqagent.runtime.metrics import MetricsCollector

log = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retries an async operation on retryable errors.

    Attempts are ``1 + max_retries``. Non-retryable errors are raised
    immediately; the final error is always re-raised, never swallowed.
    """

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._metrics = metrics
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        jitter = random.uniform(0, self.base_delay)
        return min(self.base_delay * (2**attempt) + jitter, self.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        provider: str = "",
    ) -> T:
        total_attempts = 1 + self.max_retries

        for attempt in range(total_attempts):
            start = time.monotonic()
            try:
                return await operation()
            except Exception as exc:
                elapsed_ms = (time.monotonic() - start) * 1000
                if not is_retryable(exc):
                    log.warning(
                        "retry.non_retryable operation=%s provider=%s error=%s",
                        operation_name,
                        provider,
                        exc,
                    )
                    raise
                if attempt >= self.max_retries:
                    log.error(
                        "retry.exhausted operation=%s provider=%s attempts=%d "
                        "error=%s duration_ms=%.1f",
                        operation_name,
                        provider,
                        total_attempts,
                        exc,
                        elapsed_ms,
                    )
                    raise
                delay = self.delay_for(attempt)
                log.warning(
                    "retry.attempt_failed operation=%s provider=%s attempt=%d/%d "
                    "error=%s delay=%.2fs",
                    operation_name,
                    provider,
                    attempt + 1,
                    total_attempts,
                    exc,
                    delay,
                )
                if self._metrics is not None:
                    self._metrics.counter("llm_retries_total").inc()
                await self._sleep(delay)

        # range() always runs at least once and every path returns or raises.
        raise AssertionError("unreachable")
