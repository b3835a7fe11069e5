"""Provider health tracking and the background probe loop.

Each provider moves through ``unknown -> healthy <-> unhealthy``. Call
outcomes and probe outcomes feed the same record; nothing is persisted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING

from reqagent.errors import classify_error
from reqagent.models.provider import HealthStatus, ProviderHealth, ProviderId

if TYPE_CHECKING:
    from reqagent.runtime.metrics import MetricsCollector
    from reqagent.runtime.providers.backends import LLMBackend

log = logging.getLogger(__name__)

_SUCCESS_RATE_DECAY = 0.9


class ProviderHealthMonitor:
    def __init__(
        self,
        backends: Mapping[ProviderId, LLMBackend],
        failure_threshold: int = 5,
        probe_timeout: float = 10.0,
        interval: float = 300.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._backends = backends
        self.failure_threshold = failure_threshold
        self.probe_timeout = probe_timeout
        self.interval = interval
        self._metrics = metrics
        self._health: dict[ProviderId, ProviderHealth] = {
            p: ProviderHealth(provider=p) for p in backends
        }
        self._check_lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def start(self) -> None:
        """Run an initial check, then probe in the background every interval."""
        if self._poll_task is not None:
            log.debug("health.start_skipped reason=already_running")
            return
        await self.check_all()
        self._poll_task = asyncio.create_task(self._poll_loop())
        log.info(
            "health.started providers=%d interval=%.0fs timeout=%.1fs",
            len(self._configured()),
            self.interval,
            self.probe_timeout,
        )

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        log.info("health.stopped")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check_all()
            except Exception:
                log.exception("health.poll_failed")

    # ── Queries ────────────────────────────────────────────────────────

    def get(self, provider: ProviderId) -> ProviderHealth:
        if provider not in self._health:
            self._health[provider] = ProviderHealth(provider=provider)
        return self._health[provider]

    def snapshot(self) -> dict[ProviderId, ProviderHealth]:
        return {p: h.model_copy() for p, h in self._health.items()}

    def is_healthy(self, provider: ProviderId) -> bool:
        return self.get(provider).is_usable

    # ── Recording ──────────────────────────────────────────────────────

    def record_success(self, provider: ProviderId, response_time_ms: float) -> ProviderHealth:
        health = self.get(provider)
        previous = health.status
        if health.samples == 0:
            health.average_response_time_ms = response_time_ms
        else:
            health.average_response_time_ms = (
                health.average_response_time_ms + response_time_ms
            ) / 2
        health.samples += 1
        health.success_rate = health.success_rate * _SUCCESS_RATE_DECAY + (
            1 - _SUCCESS_RATE_DECAY
        )
        health.consecutive_failures = 0
        health.status = HealthStatus.HEALTHY
        health.last_checked = datetime.now()
        if previous != HealthStatus.HEALTHY:
            log.info(
                "health.transition provider=%s from=%s to=healthy",
                provider,
                previous,
            )
        return health

    def record_failure(self, provider: ProviderId, error: BaseException | str) -> ProviderHealth:
        health = self.get(provider)
        previous = health.status
        health.consecutive_failures += 1
        health.success_rate = health.success_rate * _SUCCESS_RATE_DECAY
        health.last_error = str(error)
        health.last_checked = datetime.now()
        if health.consecutive_failures >= self.failure_threshold:
            health.status = HealthStatus.UNHEALTHY
            if previous != HealthStatus.UNHEALTHY:
                log.warning(
                    "health.transition provider=%s from=%s to=unhealthy failures=%d",
                    provider,
                    previous,
                    health.consecutive_failures,
                )
        return health

    # ── Probing ────────────────────────────────────────────────────────

    def _configured(self) -> list[ProviderId]:
        return [p for p, b in self._backends.items() if b.is_configured()]

    async def check_provider(self, provider: ProviderId) -> ProviderHealth:
        """Probe one provider with a hard timeout and record the outcome."""
        backend = self._backends[provider]
        start = time.monotonic()
        try:
            await asyncio.wait_for(backend.probe(self.probe_timeout), self.probe_timeout)
        except Exception as exc:
            err = classify_error(exc)
            if self._metrics is not None:
                self._metrics.counter("health_check_failures_total").inc()
            log.warning(
                "health.probe_failed provider=%s code=%s error=%s",
                provider,
                err.code,
                err.message,
            )
            return self.record_failure(provider, err)
        elapsed_ms = (time.monotonic() - start) * 1000
        if self._metrics is not None:
            self._metrics.histogram("health_probe_latency_ms").observe(elapsed_ms)
        log.debug("health.probe_ok provider=%s duration_ms=%.1f", provider, elapsed_ms)
        return self.record_success(provider, elapsed_ms)

    async def check_all(self) -> dict[ProviderId, ProviderHealth]:
        """Probe every configured provider concurrently.

        A run that starts while another is in flight is skipped and the
        current snapshot returned.
        """
        if self._check_lock.locked():
            log.debug("health.check_skipped reason=already_running")
            return self.snapshot()

        async with self._check_lock:
            providers = self._configured()
            results = await asyncio.gather(
                *(self.check_provider(p) for p in providers),
                return_exceptions=True,
            )
            for provider, result in zip(providers, results):
                if isinstance(result, BaseException):
                    log.error("health.check_error provider=%s error=%s", provider, result)

            healthy = sum(1 for p in providers if self._health[p].is_usable)
            if self._metrics is not None:
                self._metrics.counter("health_checks_total").inc()
                self._metrics.gauge("configured_providers").set(len(providers))
                self._metrics.gauge("healthy_providers").set(healthy)
            log.info(
                "health.checked providers=%d healthy=%d",
                len(providers),
                healthy,
            )
        return self.snapshot()
