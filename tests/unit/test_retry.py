from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from reqagent.errors import ProviderAuthError, ProviderRateLimitError
from reqagent.runtime.retry import RetryPolicy


def _scripted(*outcomes):
    """Async callable that raises or returns each outcome in turn."""
    calls = {"n": 0}

    async def op():
        outcome = outcomes[calls["n"]]
        calls["n"] += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    op.calls = calls
    return op


@pytest.mark.asyncio
async def test_first_attempt_success_does_not_sleep():
    sleep = AsyncMock()
    policy = RetryPolicy(max_retries=2, sleep=sleep)
    assert await policy.execute(_scripted("ok")) == "ok"
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_retryable_error_then_success(metrics):
    sleep = AsyncMock()
    policy = RetryPolicy(max_retries=2, base_delay=0.5, sleep=sleep, metrics=metrics)
    op = _scripted(ProviderRateLimitError("429"), "ok")

    assert await policy.execute(op, "gen", "ollama") == "ok"
    assert op.calls["n"] == 2
    sleep.assert_awaited_once()
    delay = sleep.await_args.args[0]
    assert 0.5 <= delay <= 1.0
    assert metrics.counter("llm_retries_total").value == 1


@pytest.mark.asyncio
async def test_non_retryable_raises_immediately():
    sleep = AsyncMock()
    policy = RetryPolicy(max_retries=3, sleep=sleep)
    op = _scripted(ProviderAuthError("401"), "never")

    with pytest.raises(ProviderAuthError):
        await policy.execute(op)
    assert op.calls["n"] == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_value_error_is_not_retried():
    policy = RetryPolicy(max_retries=3, sleep=AsyncMock())
    op = _scripted(ValueError("bad input"), "never")
    with pytest.raises(ValueError):
        await policy.execute(op)
    assert op.calls["n"] == 1


@pytest.mark.asyncio
async def test_exhaustion_reraises_last_error():
    last = RuntimeError("third")
    policy = RetryPolicy(max_retries=2, sleep=AsyncMock())
    op = _scripted(RuntimeError("first"), RuntimeError("second"), last)

    with pytest.raises(RuntimeError) as info:
        await policy.execute(op)
    assert info.value is last
    assert op.calls["n"] == 3


def test_delay_grows_and_caps():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
    assert 1.0 <= policy.delay_for(0) <= 2.0
    assert 4.0 <= policy.delay_for(2) <= 5.0
    assert policy.delay_for(10) == 5.0
