"""Provider selection with sticky routing and ordered fallback.

The manager keeps one active provider. It stays on that provider while it
is healthy, walks the configured order when it is not, and records every
switch in a bounded history for observability.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError

from reqagent.config import FallbackConfig
from reqagent.errors import (
    ConfigValidationError,
    NoProvidersAvailableError,
    ProviderNotConfiguredError,
)
from reqagent.models.provider import FallbackEvent, ProviderHealth, ProviderId
from reqagent.runtime.logging_config import ctx_provider

if TYPE_CHECKING:
    from reqagent.runtime.health import ProviderHealthMonitor
    from reqagent.runtime.metrics import MetricsCollector
    from reqagent.runtime.providers.backends import LLMBackend
    from reqagent.runtime.retry import RetryPolicy

log = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderFallbackManager:
    def __init__(
        self,
        backends: Mapping[ProviderId, LLMBackend],
        health: ProviderHealthMonitor,
        retry: RetryPolicy,
        config: FallbackConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._backends = backends
        self._health = health
        self._retry = retry
        self._metrics = metrics
        self.config = config or FallbackConfig()
        self._history: deque[FallbackEvent] = deque(maxlen=self.config.history_size)
        self._current: ProviderId | None = self.config.primary_provider
        self._health.failure_threshold = self.config.max_consecutive_failures

    # ── Queries ────────────────────────────────────────────────────────

    @property
    def current_provider(self) -> ProviderId | None:
        return self._current

    @property
    def fallback_order(self) -> list[ProviderId]:
        return list(self.config.fallback_order)

    def is_provider_configured(self, provider: ProviderId) -> bool:
        backend = self._backends.get(provider)
        return backend is not None and backend.is_configured()

    def is_provider_healthy(self, provider: ProviderId) -> bool:
        if not self._health.is_healthy(provider):
            return False
        if not self.config.performance_gating:
            return True
        health = self._health.get(provider)
        if health.samples == 0:
            return True
        return (
            health.average_response_time_ms <= self.config.max_response_time_ms
            and health.success_rate >= self.config.min_success_rate
        )

    def _is_viable(self, provider: ProviderId) -> bool:
        return self.is_provider_configured(provider) and self.is_provider_healthy(provider)

    def get_provider_health(self) -> dict[ProviderId, ProviderHealth]:
        return self._health.snapshot()

    def get_fallback_history(self) -> list[FallbackEvent]:
        return list(self._history)

    # ── Selection ──────────────────────────────────────────────────────

    def get_best_provider(self) -> ProviderId | None:
        """Sticky current provider, else first viable, else first configured."""
        if self._current is not None and self._is_viable(self._current):
            return self._current

        for provider in self.config.fallback_order:
            if self._is_viable(provider):
                self._switch_to(provider, "best available provider")
                return provider

        for provider in self.config.fallback_order:
            if self.is_provider_configured(provider):
                log.warning(
                    "fallback.last_resort provider=%s reason=no_healthy_providers",
                    provider,
                )
                self._switch_to(provider, "last resort, no healthy providers")
                return provider

        log.error("fallback.no_configured_providers order=%s", ",".join(self.config.fallback_order))
        return None

    def _find_next_provider(self, failed: ProviderId) -> ProviderId | None:
        order = self.config.fallback_order
        if not order:
            return None
        start = order.index(failed) if failed in order else -1
        for step in range(1, len(order) + 1):
            candidate = order[(start + step) % len(order)]
            if candidate != failed and self._is_viable(candidate):
                return candidate
        return None

    def handle_provider_failure(
        self,
        provider: ProviderId,
        error: BaseException | str,
    ) -> ProviderId | None:
        """Record a failure and move to the next viable provider, if any."""
        self._health.record_failure(provider, error)
        if not self.config.enabled:
            return None

        next_provider = self._find_next_provider(provider)
        if next_provider is None:
            log.warning("fallback.no_alternative failed=%s error=%s", provider, error)
            self._record(provider, provider, f"no alternative after failure: {error}", False)
            return None

        self._switch_to(next_provider, f"failure of {provider}: {error}", from_provider=provider)
        return next_provider

    def force_provider_switch(self, provider: ProviderId) -> None:
        if not self.is_provider_configured(provider):
            raise ProviderNotConfiguredError(
                f"cannot switch to unconfigured provider {provider}",
                context={"provider": provider.value},
            )
        self._switch_to(provider, "manual switch")

    # ── Execution ──────────────────────────────────────────────────────

    async def execute_with_fallback(
        self,
        operation: Callable[[LLMBackend], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """Run ``operation`` against providers in order; first success wins.

        Each viable provider gets one retry-wrapped attempt. Raises
        NoProvidersAvailableError when every candidate was skipped or failed.
        """
        if self.config.enabled:
            candidates = list(self.config.fallback_order)
            check_viability = True
        else:
            best = self.get_best_provider()
            candidates = [best] if best is not None else []
            check_viability = False

        attempted: list[str] = []
        last_error: Exception | None = None

        for provider in candidates:
            if check_viability and not self._is_viable(provider):
                log.debug(
                    "fallback.skip provider=%s configured=%s healthy=%s",
                    provider,
                    self.is_provider_configured(provider),
                    self.is_provider_healthy(provider),
                )
                continue

            backend = self._backends[provider]
            attempted.append(provider.value)
            token = ctx_provider.set(provider.value)
            start = time.monotonic()
            try:
                result = await self._retry.execute(
                    lambda b=backend: operation(b),
                    operation_name,
                    provider.value,
                )
            except Exception as exc:
                last_error = exc
                self._health.record_failure(provider, exc)
                if self._metrics is not None:
                    self._metrics.counter("llm_errors_total").inc()
                log.warning(
                    "fallback.provider_failed operation=%s provider=%s error=%s",
                    operation_name,
                    provider,
                    exc,
                )
                continue
            finally:
                ctx_provider.reset(token)

            elapsed_ms = (time.monotonic() - start) * 1000
            self._health.record_success(provider, elapsed_ms)
            if self._metrics is not None:
                self._metrics.counter("llm_calls_total").inc()
                self._metrics.histogram("llm_latency_ms").observe(elapsed_ms)
            if provider != self._current:
                self._switch_to(provider, f"{operation_name} succeeded on {provider}")
            log.debug(
                "fallback.success operation=%s provider=%s duration_ms=%.1f",
                operation_name,
                provider,
                elapsed_ms,
            )
            return result

        if self._metrics is not None:
            self._metrics.counter("provider_exhausted_total").inc()
        if last_error is None:
            message = f"No configured provider available for {operation_name}"
        else:
            message = f"All providers failed for {operation_name}. Last error: {last_error}"
        log.error(
            "fallback.exhausted operation=%s attempted=%s last_error=%s",
            operation_name,
            ",".join(attempted) or "none",
            last_error,
        )
        raise NoProvidersAvailableError(
            message,
            context={
                "operation": operation_name,
                "attempted": attempted,
                "last_error": str(last_error) if last_error else None,
            },
        ) from last_error

    # ── Configuration ──────────────────────────────────────────────────

    def update_config(self, **changes: Any) -> FallbackConfig:
        try:
            updated = FallbackConfig.model_validate({**self.config.model_dump(), **changes})
        except ValidationError as exc:
            raise ConfigValidationError(str(exc), context={"changes": list(changes)}) from exc

        if updated.history_size != self.config.history_size:
            self._history = deque(self._history, maxlen=updated.history_size)
        self._health.failure_threshold = updated.max_consecutive_failures
        self.config = updated
        log.info("fallback.config_updated keys=%s", ",".join(sorted(changes)))
        return updated

    # ── Internals ──────────────────────────────────────────────────────

    def _switch_to(
        self,
        provider: ProviderId,
        reason: str,
        *,
        from_provider: ProviderId | None = None,
    ) -> None:
        previous = from_provider if from_provider is not None else self._current
        if previous == provider and self._current == provider:
            return
        self._current = provider
        self._record(previous, provider, reason, True)
        if self._metrics is not None:
            self._metrics.counter("provider_switches_total").inc()
        log.info("fallback.switch to=%s reason=%s", provider, reason)
        if self.config.log_provider_switches:
            log.info("Provider switch: %s -> %s (%s)", previous or "none", provider, reason)

    def _record(
        self,
        from_provider: ProviderId | None,
        to_provider: ProviderId,
        reason: str,
        success: bool,
    ) -> None:
        self._history.append(
            FallbackEvent(
                from_provider=from_provider,
                to_provider=to_provider,
                reason=reason,
                success=success,
            )
        )
