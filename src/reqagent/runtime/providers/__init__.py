"""LLM provider backends and their static definitions."""

from reqagent.runtime.providers.backends import LLMBackend, build_backend, build_backends
from reqagent.runtime.providers.definitions import PROVIDER_DEFINITIONS

__all__ = [
    "LLMBackend",
    "PROVIDER_DEFINITIONS",
    "build_backend",
    "build_backends",
]
