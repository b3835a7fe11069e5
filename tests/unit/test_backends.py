from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from reqagent.errors import ProviderNotConfiguredError, ProviderResponseError
from reqagent.models.provider import ProviderId
from reqagent.runtime.providers import PROVIDER_DEFINITIONS, build_backend, build_backends
from reqagent.runtime.providers.backends import (
    BACKEND_CLASSES,
    AzureAIStudioBackend,
    GoogleAIBackend,
    OllamaBackend,
    extract_text,
)


def _response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


# ── Definitions and configuration ─────────────────────────────────────────


def test_every_provider_has_a_backend_class():
    assert set(BACKEND_CLASSES) == set(ProviderId) == set(PROVIDER_DEFINITIONS)


def test_is_configured_tracks_required_env():
    assert build_backend(ProviderId.GOOGLE_AI, {}).is_configured() is False
    assert build_backend(ProviderId.GOOGLE_AI, {"GOOGLE_AI_API_KEY": "k"}).is_configured()

    partial = {"AZURE_OPENAI_ENDPOINT": "https://res.openai.azure.com"}
    assert build_backend(ProviderId.AZURE_OPENAI_KEY, partial).is_configured() is False
    full = {**partial, "AZURE_OPENAI_API_KEY": "k"}
    assert build_backend(ProviderId.AZURE_OPENAI_KEY, full).is_configured() is True


def test_ollama_needs_no_credentials():
    assert build_backend(ProviderId.OLLAMA, {}).is_configured() is True


def test_model_and_endpoint_overrides():
    backend = build_backend(
        ProviderId.OLLAMA,
        {"OLLAMA_MODEL": "mistral", "OLLAMA_ENDPOINT": "http://gpu-box:11434/"},
    )
    assert backend.model == "mistral"
    assert backend.endpoint == "http://gpu-box:11434"
    assert backend.litellm_model() == "ollama/mistral"


def test_defaults():
    backend = build_backend(ProviderId.GOOGLE_AI, {})
    assert isinstance(backend, GoogleAIBackend)
    assert backend.model == "gemini-1.5-flash"
    assert backend.token_limit == 1_048_576


def test_build_backends_dedupes(caplog):
    order = [ProviderId.OLLAMA, ProviderId.GITHUB_AI, ProviderId.OLLAMA]
    backends = build_backends(order, {})
    assert list(backends) == [ProviderId.OLLAMA, ProviderId.GITHUB_AI]
    assert isinstance(backends[ProviderId.OLLAMA], OllamaBackend)
    assert "providers.duplicate_in_order" in caplog.text


# ── Completion ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_complete_passes_vendor_kwargs():
    backend = build_backend(ProviderId.GOOGLE_AI, {"GOOGLE_AI_API_KEY": "secret"})
    messages = [{"role": "user", "content": "hi"}]
    with patch(
        "reqagent.runtime.providers.backends.litellm.acompletion",
        new=AsyncMock(return_value=_response("hello")),
    ) as mock_completion:
        assert await backend.complete(messages, max_tokens=500) == "hello"

    kwargs = mock_completion.await_args.kwargs
    assert kwargs["model"] == "gemini/gemini-1.5-flash"
    assert kwargs["api_key"] == "secret"
    assert kwargs["messages"] == messages
    assert kwargs["max_tokens"] == 500


@pytest.mark.asyncio
async def test_complete_caps_max_tokens_at_provider_limit():
    env = {"AZURE_AI_ENDPOINT": "https://studio.example", "AZURE_AI_API_KEY": "k"}
    backend = build_backend(ProviderId.AZURE_AI_STUDIO, env)
    assert isinstance(backend, AzureAIStudioBackend)
    with patch(
        "reqagent.runtime.providers.backends.litellm.acompletion",
        new=AsyncMock(return_value=_response("ok")),
    ) as mock_completion:
        await backend.complete([{"role": "user", "content": "x"}], max_tokens=10_000)

    kwargs = mock_completion.await_args.kwargs
    assert kwargs["max_tokens"] == 8000
    assert kwargs["api_key"] == "k"
    assert kwargs["api_base"] == "https://studio.example"


@pytest.mark.asyncio
async def test_entra_uses_ad_token():
    env = {"AZURE_OPENAI_ENDPOINT": "https://res.example", "AZURE_OPENAI_AD_TOKEN": "tok"}
    backend = build_backend(ProviderId.AZURE_OPENAI_ENTRA, env)
    with patch(
        "reqagent.runtime.providers.backends.litellm.acompletion",
        new=AsyncMock(return_value=_response("ok")),
    ) as mock_completion:
        await backend.complete([{"role": "user", "content": "x"}])

    kwargs = mock_completion.await_args.kwargs
    assert kwargs["azure_ad_token"] == "tok"
    assert "api_key" not in kwargs
    assert kwargs["model"] == "azure/gpt-4o"


@pytest.mark.asyncio
async def test_complete_requires_configuration():
    backend = build_backend(ProviderId.GITHUB_AI, {})
    with pytest.raises(ProviderNotConfiguredError):
        await backend.complete([{"role": "user", "content": "x"}])


def test_extract_text():
    assert extract_text(_response("body")) == "body"
    assert extract_text(_response(None)) == ""
    with pytest.raises(ProviderResponseError):
        extract_text(SimpleNamespace(choices=[]))


# ── Probes ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_ollama_probe_hits_tags():
    backend = build_backend(ProviderId.OLLAMA, {})
    with patch(
        "reqagent.runtime.providers.backends._http_get", new=AsyncMock()
    ) as mock_get:
        await backend.probe(5.0)
    mock_get.assert_awaited_once_with(
        "http://localhost:11434/api/tags", 5.0, headers={}, params={}
    )


@pytest.mark.asyncio
async def test_azure_probe_sends_key_and_version():
    env = {
        "AZURE_OPENAI_ENDPOINT": "https://res.example/",
        "AZURE_OPENAI_API_KEY": "k",
        "AZURE_OPENAI_API_VERSION": "2024-10-21",
    }
    backend = build_backend(ProviderId.AZURE_OPENAI_KEY, env)
    with patch(
        "reqagent.runtime.providers.backends._http_get", new=AsyncMock()
    ) as mock_get:
        await backend.probe(2.0)
    mock_get.assert_awaited_once_with(
        "https://res.example/openai/models",
        2.0,
        headers={"api-key": "k"},
        params={"api-version": "2024-10-21"},
    )


@pytest.mark.asyncio
async def test_probe_failure_propagates():
    backend = build_backend(ProviderId.GITHUB_AI, {"GITHUB_TOKEN": "t"})
    with patch(
        "reqagent.runtime.providers.backends._http_get",
        new=AsyncMock(side_effect=RuntimeError("connection refused")),
    ), pytest.raises(RuntimeError, match="connection refused"):
        await backend.probe(1.0)
