"""Tests for provider selection and ordered fallback."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import pytest

from reqagent.errors import (
    ConfigValidationError,
    NoProvidersAvailableError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
)
from reqagent.models.provider import ProviderId
from reqagent.runtime.logging_config import ctx_provider
from reqagent.runtime.retry import RetryPolicy

A, B, C, D = (
    ProviderId.GOOGLE_AI,
    ProviderId.GITHUB_AI,
    ProviderId.AZURE_OPENAI_KEY,
    ProviderId.OLLAMA,
)


async def _complete(backend):
    return await backend.complete([{"role": "user", "content": "hi"}])


def _trip(manager, provider):
    for _ in range(manager.config.max_consecutive_failures):
        manager._health.record_failure(provider, "boom")


# ── Selection ─────────────────────────────────────────────────────────────


class TestGetBestProvider:
    def test_first_viable_in_order(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A, configured=False), fake_backend(B), fake_backend(C)])
        assert mgr.get_best_provider() == B
        assert mgr.current_provider == B

    def test_sticky_while_healthy(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B)])
        mgr.force_provider_switch(B)
        assert mgr.get_best_provider() == B

    def test_primary_provider_is_initial_choice(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B)], primary_provider=B)
        assert mgr.get_best_provider() == B

    def test_never_returns_unhealthy_when_alternative_exists(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B)], max_consecutive_failures=3)
        _trip(mgr, A)
        assert mgr.is_provider_healthy(A) is False
        assert mgr.get_best_provider() == B

    def test_last_resort_when_all_unhealthy(self, make_manager, fake_backend, caplog):
        mgr = make_manager([fake_backend(A, configured=False), fake_backend(B), fake_backend(C)])
        _trip(mgr, B)
        _trip(mgr, C)
        with caplog.at_level(logging.WARNING, logger="reqagent.runtime.fallback"):
            assert mgr.get_best_provider() == B
        assert "fallback.last_resort" in caplog.text

    def test_none_when_nothing_configured(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A, configured=False), fake_backend(B, configured=False)])
        assert mgr.get_best_provider() is None

    def test_below_threshold_stays_healthy(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A)], max_consecutive_failures=5)
        for _ in range(4):
            mgr._health.record_failure(A, "boom")
        assert mgr.is_provider_healthy(A) is True


class TestHandleProviderFailure:
    def test_switches_to_next(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B), fake_backend(C)])
        assert mgr.handle_provider_failure(A, RuntimeError("down")) == B
        assert mgr.current_provider == B
        assert mgr.get_provider_health()[A].consecutive_failures == 1

    def test_wraps_around(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B), fake_backend(C)])
        assert mgr.handle_provider_failure(C, "down") == A

    def test_skips_unhealthy_candidates(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B), fake_backend(C)])
        _trip(mgr, B)
        assert mgr.handle_provider_failure(A, "down") == C

    def test_none_without_alternative(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B, configured=False)])
        assert mgr.handle_provider_failure(A, "down") is None
        history = mgr.get_fallback_history()
        assert history[-1].success is False

    def test_threshold_marks_unhealthy(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B)], max_consecutive_failures=2)
        mgr.handle_provider_failure(A, "one")
        assert mgr.is_provider_healthy(A) is True
        mgr.handle_provider_failure(A, "two")
        assert mgr.is_provider_healthy(A) is False

    def test_disabled_fallback_does_not_switch(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B)], enabled=False, primary_provider=A)
        assert mgr.handle_provider_failure(A, "down") is None
        assert mgr.current_provider == A


# ── Execution ─────────────────────────────────────────────────────────────


class TestExecuteWithFallback:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("first_success", [0, 1, 2, 3])
    async def test_stops_at_first_success(self, make_manager, fake_backend, first_success):
        backends = [
            fake_backend(p, error=None if i >= first_success else RuntimeError(f"fail {i}"))
            for i, p in enumerate([A, B, C, D])
        ]
        mgr = make_manager(backends)

        result = await mgr.execute_with_fallback(_complete, "test-op")

        winner = backends[first_success]
        assert result == f"text from {winner.provider_id.value}"
        assert sum(b.calls for b in backends) == first_success + 1
        for i, backend in enumerate(backends):
            assert backend.calls == (1 if i <= first_success else 0)
        assert mgr.current_provider == winner.provider_id

    @pytest.mark.asyncio
    async def test_skips_unconfigured_and_unhealthy(self, make_manager, fake_backend):
        a = fake_backend(A, configured=False)
        b = fake_backend(B)
        c = fake_backend(C)
        mgr = make_manager([a, b, c])
        _trip(mgr, B)

        result = await mgr.execute_with_fallback(_complete, "test-op")

        assert result == "text from azure-openai-key"
        assert (a.calls, b.calls, c.calls) == (0, 0, 1)

    @pytest.mark.asyncio
    async def test_exhaustion_raises_with_last_error(self, make_manager, fake_backend, metrics):
        last = RuntimeError("ollama exploded")
        mgr = make_manager([
            fake_backend(A, error=RuntimeError("google down")),
            fake_backend(D, error=last),
        ])

        with pytest.raises(NoProvidersAvailableError) as info:
            await mgr.execute_with_fallback(_complete, "generate:charter")

        err = info.value
        assert "All providers failed for generate:charter" in err.message
        assert "ollama exploded" in err.message
        assert err.__cause__ is last
        assert err.context["attempted"] == ["google-ai", "ollama"]
        assert metrics.counter("provider_exhausted_total").value == 1

    @pytest.mark.asyncio
    async def test_no_viable_candidate_raises(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A, configured=False)])
        with pytest.raises(NoProvidersAvailableError) as info:
            await mgr.execute_with_fallback(_complete, "op")
        assert info.value.__cause__ is None
        assert info.value.context["attempted"] == []

    @pytest.mark.asyncio
    async def test_failures_are_recorded(self, make_manager, fake_backend, metrics):
        a = fake_backend(A, error=RuntimeError("nope"))
        mgr = make_manager([a, fake_backend(B)])
        await mgr.execute_with_fallback(_complete, "op")

        health = mgr.get_provider_health()
        assert health[A].consecutive_failures == 1
        assert health[A].last_error == "nope"
        assert health[B].samples == 1
        assert metrics.counter("llm_errors_total").value == 1
        assert metrics.counter("llm_calls_total").value == 1

    @pytest.mark.asyncio
    async def test_retry_wraps_each_attempt(self, make_manager, fake_backend):
        a = fake_backend(A)
        attempts = {"n": 0}

        async def flaky(backend):
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise ProviderTimeoutError("slow")
            return await _complete(backend)

        retry = RetryPolicy(max_retries=1, base_delay=0.0, sleep=AsyncMock())
        mgr = make_manager([a, fake_backend(B)], retry=retry)

        assert await mgr.execute_with_fallback(flaky, "op") == "text from google-ai"
        assert attempts["n"] == 2

    @pytest.mark.asyncio
    async def test_disabled_uses_only_best_provider(self, make_manager, fake_backend):
        a = fake_backend(A, error=RuntimeError("down"))
        b = fake_backend(B)
        mgr = make_manager([a, b], enabled=False)

        with pytest.raises(NoProvidersAvailableError):
            await mgr.execute_with_fallback(_complete, "op")
        assert b.calls == 0

    @pytest.mark.asyncio
    async def test_provider_context_var_is_reset(self, make_manager, fake_backend):
        seen = []

        async def op(backend):
            seen.append(ctx_provider.get())
            return "ok"

        mgr = make_manager([fake_backend(A)])
        await mgr.execute_with_fallback(op, "op")
        assert seen == ["google-ai"]
        assert ctx_provider.get() == ""


# ── Performance gating ────────────────────────────────────────────────────


class TestPerformanceGating:
    def test_slow_provider_excluded_when_enabled(self, make_manager, fake_backend):
        mgr = make_manager(
            [fake_backend(A), fake_backend(B)],
            performance_gating=True,
            max_response_time_ms=1000,
        )
        mgr._health.record_success(A, 5000)
        assert mgr.is_provider_healthy(A) is False
        assert mgr.get_best_provider() == B

    def test_slow_provider_allowed_when_disabled(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A)], max_response_time_ms=1000)
        mgr._health.record_success(A, 5000)
        assert mgr.is_provider_healthy(A) is True

    def test_low_success_rate_excluded(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A)], performance_gating=True, min_success_rate=0.95)
        mgr._health.record_success(A, 10)
        mgr._health.record_failure(A, "x")
        assert mgr.is_provider_healthy(A) is False


# ── History and configuration ─────────────────────────────────────────────


class TestHistory:
    def test_ring_buffer_caps_at_100(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B)])
        for i in range(101):
            mgr.force_provider_switch(A if i % 2 == 0 else B)

        history = mgr.get_fallback_history()
        assert len(history) == 100
        # The first switch (from nothing) was evicted.
        assert history[0].from_provider == A
        assert history[0].to_provider == B

    def test_no_event_when_switching_to_current(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A)])
        mgr.force_provider_switch(A)
        mgr.force_provider_switch(A)
        assert len(mgr.get_fallback_history()) == 1

    def test_force_switch_rejects_unconfigured(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B, configured=False)])
        with pytest.raises(ProviderNotConfiguredError):
            mgr.force_provider_switch(B)

    def test_switch_logging(self, make_manager, fake_backend, caplog):
        mgr = make_manager([fake_backend(A), fake_backend(B)], log_provider_switches=True)
        with caplog.at_level(logging.INFO, logger="reqagent.runtime.fallback"):
            mgr.force_provider_switch(B)
        assert "Provider switch: none -> github-ai" in caplog.text


class TestUpdateConfig:
    def test_threshold_propagates_to_health(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B)])
        mgr.update_config(max_consecutive_failures=1)
        mgr.handle_provider_failure(A, "down")
        assert mgr.is_provider_healthy(A) is False

    def test_history_size_shrinks(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A), fake_backend(B)])
        for i in range(10):
            mgr.force_provider_switch(A if i % 2 == 0 else B)
        mgr.update_config(history_size=3)
        assert len(mgr.get_fallback_history()) == 3

    def test_invalid_value_rejected(self, make_manager, fake_backend):
        mgr = make_manager([fake_backend(A)])
        with pytest.raises(ConfigValidationError):
            mgr.update_config(min_success_rate=2.0)
        assert mgr.config.min_success_rate == 0.8
