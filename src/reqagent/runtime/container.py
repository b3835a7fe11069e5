"""Service container and the composition root.

Every long-lived service is constructed once here and passed by
reference to the code that needs it; tests swap pieces with override().
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from reqagent.config import ReqAgentConfig
from reqagent.runtime.context_manager import ContextBudgeter
from reqagent.runtime.document_store import InMemoryDocumentStore, SQLiteDocumentStore
from reqagent.runtime.fallback import ProviderFallbackManager
from reqagent.runtime.generator import DocumentGenerator
from reqagent.runtime.health import ProviderHealthMonitor
from reqagent.runtime.large_context import LargeScaleContextManager
from reqagent.runtime.metrics import MetricsCollector
from reqagent.runtime.providers.backends import build_backends
from reqagent.runtime.retry import RetryPolicy
from reqagent.runtime.tokens import build_estimator

log = logging.getLogger(__name__)


class ServiceContainer:
    """Minimal dependency injection container.

    Services are resolved by name. Factories run lazily on first resolve()
    and the instance is cached; overrides win over both.

    Usage:
        container = ServiceContainer()
        container.register("metrics", MetricsCollector)
        metrics = container.resolve("metrics")

        # In tests:
        container.override("backends", {ProviderId.OLLAMA: fake})
    """

    def __init__(self) -> None:
        self._factories: dict[str, Callable[[], Any]] = {}
        self._instances: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}

    def register(self, name: str, factory: Callable[[], Any]) -> None:
        """Register a factory. Re-registering replaces the factory, not cached instances."""
        self._factories[name] = factory
        log.debug("container.register name=%s", name)

    def register_instance(self, name: str, instance: Any) -> None:
        self._instances[name] = instance
        log.debug("container.register_instance name=%s", name)

    def resolve(self, name: str) -> Any:
        """Resolve by override, then cached instance, then factory.

        Raises KeyError if the service is not registered.
        """
        if name in self._overrides:
            return self._overrides[name]
        if name in self._instances:
            return self._instances[name]

        factory = self._factories.get(name)
        if factory is None:
            raise KeyError(
                f"Service '{name}' not registered. "
                f"Available: {list(self._factories.keys())}"
            )

        instance = factory()
        self._instances[name] = instance
        log.debug("container.created name=%s type=%s", name, type(instance).__name__)
        return instance

    def override(self, name: str, instance: Any) -> None:
        self._overrides[name] = instance
        log.debug("container.override name=%s", name)

    def clear_override(self, name: str) -> None:
        self._overrides.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._overrides or name in self._instances or name in self._factories

    def registered_names(self) -> list[str]:
        return sorted(set(self._factories) | set(self._instances))

    def reset(self) -> None:
        """Clear all registrations, instances, and overrides. No cleanup is run."""
        self._factories.clear()
        self._instances.clear()
        self._overrides.clear()


def build_container(
    config: ReqAgentConfig,
    environ: Mapping[str, str] | None = None,
) -> ServiceContainer:
    """Wire every reqagent service from one validated config."""
    c = ServiceContainer()
    c.register_instance("config", config)
    c.register("metrics", MetricsCollector)
    c.register(
        "backends",
        lambda: build_backends(config.fallback.fallback_order, environ),
    )
    c.register(
        "health",
        lambda: ProviderHealthMonitor(
            c.resolve("backends"),
            failure_threshold=config.fallback.max_consecutive_failures,
            probe_timeout=config.fallback.health_check_timeout_seconds,
            interval=config.fallback.health_check_interval_seconds,
            metrics=c.resolve("metrics"),
        ),
    )
    c.register(
        "retry",
        lambda: RetryPolicy(
            max_retries=config.retry.max_retries,
            base_delay=config.retry.base_delay_seconds,
            max_delay=config.retry.max_delay_seconds,
            metrics=c.resolve("metrics"),
        ),
    )
    c.register(
        "fallback",
        lambda: ProviderFallbackManager(
            c.resolve("backends"),
            c.resolve("health"),
            c.resolve("retry"),
            config=config.fallback,
            metrics=c.resolve("metrics"),
        ),
    )
    c.register(
        "estimator",
        lambda: build_estimator(config.context.estimator, config.context.estimator_model),
    )
    c.register(
        "budgeter",
        lambda: ContextBudgeter.from_config(
            config.context,
            metrics=c.resolve("metrics"),
            estimator=c.resolve("estimator"),
        ),
    )
    c.register(
        "store",
        lambda: (
            SQLiteDocumentStore(config.store.db_path)
            if config.store.db_path
            else InMemoryDocumentStore()
        ),
    )
    c.register(
        "large_context",
        lambda: LargeScaleContextManager(
            c.resolve("store"),
            sink=c.resolve("budgeter"),
            estimator=c.resolve("estimator"),
            cache_ttl_seconds=config.large_context.document_cache_ttl_seconds,
            metrics=c.resolve("metrics"),
        ),
    )
    c.register(
        "generator",
        lambda: DocumentGenerator(
            c.resolve("fallback"),
            c.resolve("budgeter"),
            metrics=c.resolve("metrics"),
        ),
    )
    return c


async def start_services(container: ServiceContainer, *, monitor: bool = True) -> None:
    """Initialize persistent stores and, optionally, the health probe loop."""
    store = container.resolve("store")
    if isinstance(store, SQLiteDocumentStore):
        await store.initialize()
    if monitor:
        await container.resolve("health").start()


async def stop_services(container: ServiceContainer) -> None:
    if container.has("health"):
        await container.resolve("health").stop()
