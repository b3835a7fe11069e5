"""Structured error taxonomy for reqagent.

Every error carries a machine-readable code, severity, and retryability
flag so that the retry policy and the fallback manager can decide what to
do without string matching.

Error code format: RGA_<DOMAIN>_<ISSUE>
Domains: PROVIDER, CONFIG, CONTEXT
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any

import httpx


class Severity(StrEnum):
    CRITICAL = "critical"  # system cannot continue
    ERROR = "error"  # operation failed
    WARN = "warn"  # degraded but operational


class ErrorDomain(StrEnum):
    PROVIDER = "PROVIDER"
    CONFIG = "CONFIG"
    CONTEXT = "CONTEXT"


# ── Base exception ─────────────────────────────────────────────────────────


class ReqAgentError(Exception):
    """Base exception for all reqagent errors."""

    code: str = "RGA_UNKNOWN"
    domain: ErrorDomain = ErrorDomain.PROVIDER
    severity: Severity = Severity.ERROR
    is_retryable: bool = False
    retry_delay_ms: int = 0

    def __init__(
        self,
        message: str = "",
        *,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.code
        self.context: dict[str, Any] = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "message": self.message,
            "is_retryable": self.is_retryable,
            "retry_delay_ms": self.retry_delay_ms,
            "context": self.context,
        }


# ── Provider errors ────────────────────────────────────────────────────────


class ProviderTimeoutError(ReqAgentError):
    code = "RGA_PROVIDER_TIMEOUT"
    domain = ErrorDomain.PROVIDER
    severity = Severity.WARN
    is_retryable = True
    retry_delay_ms = 2000


class ProviderRateLimitError(ReqAgentError):
    code = "RGA_PROVIDER_RATE_LIMIT"
    domain = ErrorDomain.PROVIDER
    severity = Severity.WARN
    is_retryable = True
    retry_delay_ms = 5000


class ProviderUnavailableError(ReqAgentError):
    code = "RGA_PROVIDER_UNAVAILABLE"
    domain = ErrorDomain.PROVIDER
    severity = Severity.ERROR
    is_retryable = True
    retry_delay_ms = 10000


class ProviderResponseError(ReqAgentError):
    code = "RGA_PROVIDER_BAD_RESPONSE"
    domain = ErrorDomain.PROVIDER
    severity = Severity.ERROR
    is_retryable = False


class ProviderAuthError(ReqAgentError):
    code = "RGA_PROVIDER_AUTH_FAILED"
    domain = ErrorDomain.PROVIDER
    severity = Severity.ERROR
    is_retryable = False


class ProviderNotConfiguredError(ReqAgentError):
    code = "RGA_PROVIDER_NOT_CONFIGURED"
    domain = ErrorDomain.PROVIDER
    severity = Severity.ERROR
    is_retryable = False


class NoProvidersAvailableError(ReqAgentError):
    """Every candidate provider was skipped or failed for an operation."""

    code = "RGA_PROVIDER_NONE_AVAILABLE"
    domain = ErrorDomain.PROVIDER
    severity = Severity.CRITICAL
    is_retryable = False


# ── Config errors ──────────────────────────────────────────────────────────


class ConfigValidationError(ReqAgentError):
    code = "RGA_CONFIG_INVALID"
    domain = ErrorDomain.CONFIG
    severity = Severity.CRITICAL
    is_retryable = False


# ── Context errors ─────────────────────────────────────────────────────────


class ContextStoreError(ReqAgentError):
    code = "RGA_CONTEXT_STORE"
    domain = ErrorDomain.CONTEXT
    severity = Severity.WARN
    is_retryable = True
    retry_delay_ms = 1000


# ── Error classification helper ────────────────────────────────────────────

_KEYWORDS: dict[str, type[ReqAgentError]] = {
    "timeout": ProviderTimeoutError,
    "timed out": ProviderTimeoutError,
    "rate_limit": ProviderRateLimitError,
    "rate limit": ProviderRateLimitError,
    "429": ProviderRateLimitError,
    "401": ProviderAuthError,
    "403": ProviderAuthError,
    "unauthorized": ProviderAuthError,
    "500": ProviderUnavailableError,
    "502": ProviderUnavailableError,
    "503": ProviderUnavailableError,
    "504": ProviderUnavailableError,
    "connection": ProviderUnavailableError,
    "unavailable": ProviderUnavailableError,
}

_NON_RETRYABLE = (ValueError, TypeError, KeyError, AttributeError, NotImplementedError)


def classify_error(exc: BaseException) -> ReqAgentError:
    """Classify a raw exception into a structured ReqAgentError.

    Transport exceptions from httpx and asyncio timeouts are mapped by type;
    everything else falls back to keyword matching on the message.
    """
    if isinstance(exc, ReqAgentError):
        return exc

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderTimeoutError(str(exc) or "operation timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return ProviderRateLimitError(str(exc))
        if status in (401, 403):
            return ProviderAuthError(str(exc))
        if status >= 500:
            return ProviderUnavailableError(str(exc))
        return ProviderResponseError(str(exc))
    if isinstance(exc, httpx.TransportError):
        return ProviderUnavailableError(str(exc))

    msg = str(exc).lower()
    for keyword, error_cls in _KEYWORDS.items():
        if keyword in msg:
            return error_cls(str(exc))

    return ReqAgentError(str(exc))


def is_retryable(exc: BaseException) -> bool:
    """True if an operation that raised ``exc`` is worth attempting again."""
    if isinstance(exc, _NON_RETRYABLE):
        return False
    classified = classify_error(exc)
    if type(classified) is ReqAgentError:
        # Unclassified failures get the benefit of the doubt.
        return True
    return classified.is_retryable
