"""LLM backends: one class per vendor behind a common interface.

Completions go through ``litellm.acompletion``; connectivity probes are
plain authenticated GETs against a cheap listing endpoint.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import httpx
import litellm

from reqagent.errors import ProviderNotConfiguredError, ProviderResponseError
from reqagent.models.provider import ProviderDefinition, ProviderId
from reqagent.runtime.providers.definitions import (
    AZURE_API_VERSION_ENV,
    DEFAULT_AZURE_API_VERSION,
    PROVIDER_DEFINITIONS,
)

log = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7


# ── Shared helpers ────────────────────────────────────────────────────────


async def _http_get(
    url: str,
    timeout: float,
    headers: dict[str, str] | None = None,
    params: dict[str, str] | None = None,
) -> None:
    """GET an endpoint and raise on any non-2xx status."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.get(url, headers=headers or {}, params=params or {})
        resp.raise_for_status()


def extract_text(response: Any) -> str:
    """Pull the first choice's message text out of a completion response."""
    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, KeyError, TypeError) as exc:
        raise ProviderResponseError(f"malformed completion response: {exc}") from exc
    return content or ""


# ── Backend interface ─────────────────────────────────────────────────────


class LLMBackend(ABC):
    """A configured vendor backend that can complete chat prompts."""

    def __init__(
        self,
        definition: ProviderDefinition,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.definition = definition
        self._env = dict(os.environ if environ is None else environ)

    @property
    def provider_id(self) -> ProviderId:
        return self.definition.id

    @property
    def model(self) -> str:
        if self.definition.model_env:
            return self._env.get(self.definition.model_env) or self.definition.default_model
        return self.definition.default_model

    @property
    def endpoint(self) -> str | None:
        if self.definition.endpoint_env and self._env.get(self.definition.endpoint_env):
            return self._env[self.definition.endpoint_env].rstrip("/")
        return self.definition.endpoint

    @property
    def token_limit(self) -> int:
        return self.definition.token_limit

    def is_configured(self) -> bool:
        """True if every required credential is present."""
        return all(self._env.get(v) for v in self.definition.required_env)

    async def complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: int = 4000,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> str:
        if not self.is_configured():
            raise ProviderNotConfiguredError(
                f"provider {self.provider_id} is missing credentials",
                context={"provider": self.provider_id.value},
            )
        response = await litellm.acompletion(
            model=self.litellm_model(),
            messages=messages,
            max_tokens=min(max_tokens, self.token_limit),
            temperature=temperature,
            **self._completion_kwargs(),
        )
        text = extract_text(response)
        log.debug(
            "backend.complete provider=%s model=%s chars=%d",
            self.provider_id,
            self.model,
            len(text),
        )
        return text

    async def probe(self, timeout: float) -> None:
        """Lightweight connectivity check. Raises on failure."""
        url, headers, params = self._probe_request()
        await _http_get(url, timeout, headers=headers, params=params)

    @abstractmethod
    def litellm_model(self) -> str:
        """Model string in litellm's ``provider/model`` form."""

    @abstractmethod
    def _completion_kwargs(self) -> dict[str, Any]:
        """Vendor-specific keyword arguments for ``litellm.acompletion``."""

    @abstractmethod
    def _probe_request(self) -> tuple[str, dict[str, str], dict[str, str]]:
        """(url, headers, params) for the health probe."""


# ── Vendor implementations ────────────────────────────────────────────────


class GoogleAIBackend(LLMBackend):
    def litellm_model(self) -> str:
        return f"gemini/{self.model}"

    def _completion_kwargs(self) -> dict[str, Any]:
        return {"api_key": self._env.get("GOOGLE_AI_API_KEY")}

    def _probe_request(self) -> tuple[str, dict[str, str], dict[str, str]]:
        return (
            f"{self.endpoint}/models",
            {"x-goog-api-key": self._env.get("GOOGLE_AI_API_KEY", "")},
            {},
        )


class _AzureBackend(LLMBackend):
    """Shared plumbing for the Azure-hosted OpenAI deployments."""

    key_env = "AZURE_OPENAI_API_KEY"

    @property
    def api_version(self) -> str:
        return self._env.get(AZURE_API_VERSION_ENV) or DEFAULT_AZURE_API_VERSION

    def litellm_model(self) -> str:
        return f"azure/{self.model}"

    def _completion_kwargs(self) -> dict[str, Any]:
        return {
            "api_base": self.endpoint,
            "api_version": self.api_version,
            "api_key": self._env.get(self.key_env),
        }

    def _probe_request(self) -> tuple[str, dict[str, str], dict[str, str]]:
        return (
            f"{self.endpoint}/openai/models",
            {"api-key": self._env.get(self.key_env, "")},
            {"api-version": self.api_version},
        )


class AzureOpenAIKeyBackend(_AzureBackend):
    key_env = "AZURE_OPENAI_API_KEY"


class AzureAIStudioBackend(_AzureBackend):
    key_env = "AZURE_AI_API_KEY"


class AzureOpenAIEntraBackend(_AzureBackend):
    def _completion_kwargs(self) -> dict[str, Any]:
        return {
            "api_base": self.endpoint,
            "api_version": self.api_version,
            "azure_ad_token": self._env.get("AZURE_OPENAI_AD_TOKEN"),
        }

    def _probe_request(self) -> tuple[str, dict[str, str], dict[str, str]]:
        token = self._env.get("AZURE_OPENAI_AD_TOKEN", "")
        return (
            f"{self.endpoint}/openai/models",
            {"Authorization": f"Bearer {token}"},
            {"api-version": self.api_version},
        )


class GitHubAIBackend(LLMBackend):
    def litellm_model(self) -> str:
        return f"github/{self.model}"

    def _completion_kwargs(self) -> dict[str, Any]:
        return {"api_key": self._env.get("GITHUB_TOKEN"), "api_base": self.endpoint}

    def _probe_request(self) -> tuple[str, dict[str, str], dict[str, str]]:
        return (
            f"{self.endpoint}/models",
            {"Authorization": f"Bearer {self._env.get('GITHUB_TOKEN', '')}"},
            {},
        )


class OllamaBackend(LLMBackend):
    def litellm_model(self) -> str:
        return f"ollama/{self.model}"

    def _completion_kwargs(self) -> dict[str, Any]:
        return {"api_base": self.endpoint}

    def _probe_request(self) -> tuple[str, dict[str, str], dict[str, str]]:
        return (f"{self.endpoint}/api/tags", {}, {})


# ── Backend registry ──────────────────────────────────────────────────────

BACKEND_CLASSES: dict[ProviderId, type[LLMBackend]] = {
    ProviderId.GOOGLE_AI: GoogleAIBackend,
    ProviderId.AZURE_OPENAI_ENTRA: AzureOpenAIEntraBackend,
    ProviderId.AZURE_OPENAI_KEY: AzureOpenAIKeyBackend,
    ProviderId.AZURE_AI_STUDIO: AzureAIStudioBackend,
    ProviderId.GITHUB_AI: GitHubAIBackend,
    ProviderId.OLLAMA: OllamaBackend,
}


def build_backend(
    provider_id: ProviderId,
    environ: Mapping[str, str] | None = None,
) -> LLMBackend:
    """Construct the backend for one provider id."""
    cls = BACKEND_CLASSES[provider_id]
    return cls(PROVIDER_DEFINITIONS[provider_id], environ)


def build_backends(
    order: list[ProviderId],
    environ: Mapping[str, str] | None = None,
) -> dict[ProviderId, LLMBackend]:
    """Construct backends for every provider in the fallback order."""
    backends: dict[ProviderId, LLMBackend] = {}
    for provider_id in order:
        if provider_id in backends:
            log.warning("providers.duplicate_in_order provider=%s", provider_id)
            continue
        backends[provider_id] = build_backend(provider_id, environ)
    configured = [p.value for p, b in backends.items() if b.is_configured()]
    log.info(
        "providers.built total=%d configured=%s",
        len(backends),
        ",".join(configured) or "none",
    )
    return backends
