"""Static provider definitions: credentials, default models, and limits."""

from __future__ import annotations

from reqagent.models.provider import ProviderDefinition, ProviderId

AZURE_API_VERSION_ENV = "AZURE_OPENAI_API_VERSION"
DEFAULT_AZURE_API_VERSION = "2024-08-01-preview"

PROVIDER_DEFINITIONS: dict[ProviderId, ProviderDefinition] = {
    ProviderId.GOOGLE_AI: ProviderDefinition(
        id=ProviderId.GOOGLE_AI,
        display_name="Google AI Studio",
        required_env=["GOOGLE_AI_API_KEY"],
        optional_env=["GOOGLE_AI_MODEL"],
        default_model="gemini-1.5-flash",
        model_env="GOOGLE_AI_MODEL",
        endpoint="https://generativelanguage.googleapis.com/v1beta",
        token_limit=1_048_576,
        priority=1,
        description="Gemini models with very large context windows",
    ),
    ProviderId.AZURE_OPENAI_ENTRA: ProviderDefinition(
        id=ProviderId.AZURE_OPENAI_ENTRA,
        display_name="Azure OpenAI (Entra ID)",
        required_env=["AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_AD_TOKEN"],
        optional_env=["AZURE_OPENAI_DEPLOYMENT_NAME", AZURE_API_VERSION_ENV],
        default_model="gpt-4o",
        model_env="AZURE_OPENAI_DEPLOYMENT_NAME",
        endpoint_env="AZURE_OPENAI_ENDPOINT",
        token_limit=128_000,
        priority=2,
        description="Azure OpenAI authenticated with an Entra ID bearer token",
    ),
    ProviderId.AZURE_OPENAI_KEY: ProviderDefinition(
        id=ProviderId.AZURE_OPENAI_KEY,
        display_name="Azure OpenAI (API key)",
        required_env=["AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_KEY"],
        optional_env=["AZURE_OPENAI_DEPLOYMENT_NAME", AZURE_API_VERSION_ENV],
        default_model="gpt-4o",
        model_env="AZURE_OPENAI_DEPLOYMENT_NAME",
        endpoint_env="AZURE_OPENAI_ENDPOINT",
        token_limit=128_000,
        priority=2,
        description="Azure OpenAI authenticated with an API key",
    ),
    ProviderId.AZURE_AI_STUDIO: ProviderDefinition(
        id=ProviderId.AZURE_AI_STUDIO,
        display_name="Azure AI Studio",
        required_env=["AZURE_AI_ENDPOINT", "AZURE_AI_API_KEY"],
        optional_env=["REQUIREMENTS_AGENT_MODEL", AZURE_API_VERSION_ENV],
        default_model="gpt-4o-mini",
        model_env="REQUIREMENTS_AGENT_MODEL",
        endpoint_env="AZURE_AI_ENDPOINT",
        token_limit=8_000,
        priority=2,
        description="Azure AI Studio deployment behind an API key",
    ),
    ProviderId.GITHUB_AI: ProviderDefinition(
        id=ProviderId.GITHUB_AI,
        display_name="GitHub Models",
        required_env=["GITHUB_TOKEN"],
        optional_env=["GITHUB_ENDPOINT", "REQUIREMENTS_AGENT_MODEL"],
        default_model="gpt-4o-mini",
        model_env="REQUIREMENTS_AGENT_MODEL",
        endpoint="https://models.inference.ai.azure.com",
        endpoint_env="GITHUB_ENDPOINT",
        token_limit=128_000,
        priority=3,
        description="GitHub-hosted models, free for GitHub users",
    ),
    ProviderId.OLLAMA: ProviderDefinition(
        id=ProviderId.OLLAMA,
        display_name="Ollama (local)",
        required_env=[],
        optional_env=["OLLAMA_ENDPOINT", "OLLAMA_MODEL"],
        default_model="llama3.1",
        model_env="OLLAMA_MODEL",
        endpoint="http://localhost:11434",
        endpoint_env="OLLAMA_ENDPOINT",
        token_limit=131_072,
        priority=4,
        description="Local models served by Ollama, usable offline",
    ),
}
