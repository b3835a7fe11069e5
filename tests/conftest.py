from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from reqagent.config import FallbackConfig
from reqagent.models.provider import ProviderId
from reqagent.runtime.fallback import ProviderFallbackManager
from reqagent.runtime.health import ProviderHealthMonitor
from reqagent.runtime.metrics import MetricsCollector
from reqagent.runtime.providers.backends import LLMBackend
from reqagent.runtime.providers.definitions import PROVIDER_DEFINITIONS
from reqagent.runtime.retry import RetryPolicy


class FakeBackend(LLMBackend):
    """In-process backend: scripted completions, no network."""

    def __init__(
        self,
        provider_id: ProviderId,
        *,
        configured: bool = True,
        responses: list[str] | None = None,
        error: Exception | None = None,
        probe_error: Exception | None = None,
        probe_delay: float = 0.0,
    ) -> None:
        super().__init__(PROVIDER_DEFINITIONS[provider_id], environ={})
        self.configured = configured
        self.responses = list(responses or [f"text from {provider_id.value}"])
        self.error = error
        self.probe_error = probe_error
        self.probe_delay = probe_delay
        self.calls = 0
        self.probes = 0
        self.last_messages: list[dict[str, str]] | None = None

    def is_configured(self) -> bool:
        return self.configured

    async def complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ) -> str:
        self.calls += 1
        self.last_messages = messages
        if self.error is not None:
            raise self.error
        return self.responses[min(self.calls, len(self.responses)) - 1]

    async def probe(self, timeout: float) -> None:
        self.probes += 1
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        if self.probe_error is not None:
            raise self.probe_error

    def litellm_model(self) -> str:
        return f"fake/{self.model}"

    def _completion_kwargs(self) -> dict[str, Any]:
        return {}

    def _probe_request(self) -> tuple[str, dict[str, str], dict[str, str]]:
        return ("http://fake.invalid", {}, {})


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def make_manager(metrics: MetricsCollector) -> Callable[..., ProviderFallbackManager]:
    """Build a fallback manager over fake backends, in the given order."""

    def _make(
        backends: list[FakeBackend],
        retry: RetryPolicy | None = None,
        **config: Any,
    ) -> ProviderFallbackManager:
        mapping = {b.provider_id: b for b in backends}
        cfg = FallbackConfig(fallback_order=list(mapping), **config)
        health = ProviderHealthMonitor(
            mapping,
            failure_threshold=cfg.max_consecutive_failures,
            metrics=metrics,
        )
        policy = retry or RetryPolicy(max_retries=0, sleep=AsyncMock())
        return ProviderFallbackManager(mapping, health, policy, config=cfg, metrics=metrics)

    return _make


@pytest.fixture
def fake_backend() -> type[FakeBackend]:
    return FakeBackend
