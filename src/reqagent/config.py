"""Typed configuration models for reqagent.

Provides Pydantic validation for config.toml plus the environment variable
overrides that operators use to tune provider fallback without touching
the file.
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from reqagent.errors import ConfigValidationError
from reqagent.models.provider import ProviderId

log = logging.getLogger(__name__)

DEFAULT_FALLBACK_ORDER = [
    ProviderId.GOOGLE_AI,
    ProviderId.GITHUB_AI,
    ProviderId.AZURE_OPENAI_ENTRA,
    ProviderId.AZURE_OPENAI_KEY,
    ProviderId.OLLAMA,
]


class FallbackConfig(BaseModel):
    enabled: bool = True
    fallback_order: list[ProviderId] = Field(
        default_factory=lambda: list(DEFAULT_FALLBACK_ORDER)
    )
    primary_provider: ProviderId | None = None
    health_check_interval_seconds: float = Field(default=300.0, gt=0)
    health_check_timeout_seconds: float = Field(default=10.0, gt=0)
    max_consecutive_failures: int = Field(default=5, ge=1)
    history_size: int = Field(default=100, ge=1)
    # Performance gating is off unless explicitly enabled; see DESIGN.md.
    performance_gating: bool = False
    max_response_time_ms: float = Field(default=30_000.0, gt=0)
    min_success_rate: float = Field(default=0.8, ge=0.0, le=1.0)
    log_provider_switches: bool = False

    @field_validator("fallback_order", mode="before")
    @classmethod
    def split_order(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v


class RetryConfig(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)


class ContextConfig(BaseModel):
    max_context_tokens: int = Field(default=4000, gt=0)
    core_token_limit: int = Field(default=1000, gt=0)
    safety_buffer_chars: int = Field(default=100, ge=0)
    estimator: Literal["heuristic", "litellm"] = "heuristic"
    estimator_model: str = "gpt-4o-mini"
    relationships_path: str | None = None


class LargeContextConfig(BaseModel):
    max_documents: int = Field(default=50, gt=0)
    max_tokens: int = Field(default=1_000_000, gt=0)
    clustering_strategy: Literal["category", "relevance", "temporal", "hierarchical"] = (
        "hierarchical"
    )
    document_cache_ttl_seconds: float = Field(default=300.0, ge=0)


class StoreConfig(BaseModel):
    db_path: str | None = None


class RuntimeConfig(BaseModel):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False
    log_dir: str | None = None
    module_levels: dict[str, str] | None = None


class ReqAgentConfig(BaseModel):
    """Root configuration model for config.toml."""

    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    large_context: LargeContextConfig = Field(default_factory=LargeContextConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    model_config = {"extra": "allow"}


# env var → (section, key, converter)
_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "ENABLE_PROVIDER_FALLBACK": ("fallback", "enabled", lambda v: v.lower() == "true"),
    "PROVIDER_FALLBACK_ORDER": ("fallback", "fallback_order", str),
    "PRIMARY_AI_PROVIDER": ("fallback", "primary_provider", str),
    "PROVIDER_HEALTH_CHECK_INTERVAL": (
        "fallback", "health_check_interval_seconds", lambda v: int(v) / 1000,
    ),
    "PROVIDER_HEALTH_CHECK_TIMEOUT": (
        "fallback", "health_check_timeout_seconds", lambda v: int(v) / 1000,
    ),
    "CIRCUIT_BREAKER_FAILURE_THRESHOLD": ("fallback", "max_consecutive_failures", int),
    "MAX_RESPONSE_TIME": ("fallback", "max_response_time_ms", float),
    "MIN_SUCCESS_RATE": ("fallback", "min_success_rate", float),
    "LOG_PROVIDER_SWITCHES": (
        "fallback", "log_provider_switches", lambda v: v.lower() == "true",
    ),
    "MAX_CONTEXT_TOKENS": ("context", "max_context_tokens", int),
}


def apply_env_overrides(
    raw: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Overlay recognised environment variables onto a raw config dict."""
    env = os.environ if environ is None else environ
    merged = {section: dict(values) for section, values in raw.items() if isinstance(values, dict)}
    merged.update({k: v for k, v in raw.items() if not isinstance(v, dict)})

    for var, (section, key, convert) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        try:
            merged.setdefault(section, {})[key] = convert(value)
        except ValueError as exc:
            raise ConfigValidationError(
                f"invalid value for {var}: {value!r}",
                context={"variable": var},
            ) from exc
    return merged


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ReqAgentConfig:
    """Load and validate config.toml, returning typed ReqAgentConfig.

    Missing file or sections are filled with defaults; environment
    overrides win over file values.
    Raises ConfigValidationError on invalid values.
    """
    config_path = path or Path("config.toml")
    raw: dict[str, Any] = {}

    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    raw = apply_env_overrides(raw, environ)
    try:
        config = ReqAgentConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigValidationError(str(exc), context={"path": str(config_path)}) from exc

    log.debug(
        "config.loaded path=%s fallback_enabled=%s order=%s max_context_tokens=%d",
        config_path,
        config.fallback.enabled,
        ",".join(config.fallback.fallback_order),
        config.context.max_context_tokens,
    )
    return config
