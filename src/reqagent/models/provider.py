"""Data models for LLM providers, their health, and fallback events."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class ProviderId(StrEnum):
    GOOGLE_AI = "google-ai"
    AZURE_OPENAI_ENTRA = "azure-openai-entra"
    AZURE_OPENAI_KEY = "azure-openai-key"
    AZURE_AI_STUDIO = "azure-ai-studio"
    GITHUB_AI = "github-ai"
    OLLAMA = "ollama"


class HealthStatus(StrEnum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ProviderDefinition(BaseModel):
    """Static description of a backend: credentials, model, and limits."""

    id: ProviderId
    display_name: str
    required_env: list[str] = Field(default_factory=list)
    optional_env: list[str] = Field(default_factory=list)
    default_model: str
    model_env: str | None = None
    endpoint: str | None = None
    endpoint_env: str | None = None
    token_limit: int = 4000
    priority: int = 99
    description: str = ""


class ProviderHealth(BaseModel):
    """Volatile health record, rebuilt on every process start."""

    provider: ProviderId
    status: HealthStatus = HealthStatus.UNKNOWN
    consecutive_failures: int = 0
    average_response_time_ms: float = 0.0
    success_rate: float = 1.0
    samples: int = 0
    last_error: str | None = None
    last_checked: datetime | None = None

    @property
    def is_usable(self) -> bool:
        """Unknown counts as usable; only a tripped provider is excluded."""
        return self.status != HealthStatus.UNHEALTHY


class FallbackEvent(BaseModel):
    """One provider switch, kept for observability only."""

    timestamp: datetime = Field(default_factory=datetime.now)
    from_provider: ProviderId | None = None
    to_provider: ProviderId
    reason: str
    success: bool = True

    model_config = {"frozen": True}
