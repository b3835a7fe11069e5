"""Bounded prompt context assembled from previously generated documents."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import TYPE_CHECKING, Literal, NamedTuple

from pydantic import BaseModel, Field

from reqagent.runtime.relationships import DOCUMENT_RELATIONSHIPS, load_relationships
from reqagent.runtime.tokens import (
    CHARS_PER_TOKEN,
    CharRatioEstimator,
    Summarizer,
    TokenEstimator,
    TruncatingSummarizer,
    build_estimator,
    truncate_to_tokens,
)

if TYPE_CHECKING:
    from reqagent.config import ContextConfig
    from reqagent.runtime.metrics import MetricsCollector

log = logging.getLogger(__name__)

TRUNCATION_MARKER = "...\n[Content truncated due to token limits]"
RELATED_HEADER = "## Related Context: "
LARGE_CONTEXT_THRESHOLD = 50_000

# Entries outside the relationship table fill leftover room.
SUPPLEMENTARY_HEADER = "## Supplementary Context: "
SUPPLEMENTARY_MIN_REMAINING = 5_000
SUPPLEMENTARY_LIMIT = 3
ADDITIONAL_HEADER = "## Additional Context: "
ADDITIONAL_CONTEXT_THRESHOLD = 200_000
ADDITIONAL_MIN_REMAINING = 50_000

_LIMIT_RATIOS = {"core": 0.3, "enriched": 0.6, "full": 0.9}


class ContextAnalysis(BaseModel):
    document_type: str
    total_tokens: int
    utilization_percentage: float
    included_contexts: list[str] = Field(default_factory=list)
    potential_contexts: list[str] = Field(default_factory=list)
    truncated_context: str | None = None
    recommendations: list[str] = Field(default_factory=list)


class _Assembly(NamedTuple):
    text: str
    included: list[str]
    truncated: str | None


class ContextBudgeter:
    """Builds per-document prompt context inside a fixed token budget.

    The assembled text is the core project summary, a freshness block,
    then related documents in relationship-table order. Leftover room goes
    to other registered entries, such as documents pushed by the large-scale
    loader: up to three when more than 5k tokens remain, or all of them on
    models above 200k tokens. The first section that does not fit is cut to
    a prefix and marked; nothing follows it.
    """

    def __init__(
        self,
        max_context_tokens: int = 4000,
        core_token_limit: int = 1000,
        estimator: TokenEstimator | None = None,
        summarizer: Summarizer | None = None,
        relationships: dict[str, list[str]] | None = None,
        safety_buffer_chars: int = 100,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.max_context_tokens = max_context_tokens
        self.core_token_limit = core_token_limit
        self.safety_buffer_chars = safety_buffer_chars
        self._estimator = estimator or CharRatioEstimator()
        self._summarizer = summarizer or TruncatingSummarizer(self._estimator)
        self._relationships = dict(
            relationships if relationships is not None else DOCUMENT_RELATIONSHIPS
        )
        self._metrics = metrics

        self._core_context = ""
        self._enriched: dict[str, str] = {}
        self._generated: list[str] = []
        self._cache: dict[tuple[str, tuple[str, ...]], _Assembly] = {}
        self._last_updated = datetime.now()

    @classmethod
    def from_config(
        cls,
        config: ContextConfig,
        metrics: MetricsCollector | None = None,
        estimator: TokenEstimator | None = None,
    ) -> ContextBudgeter:
        relationships = None
        if config.relationships_path:
            relationships = load_relationships(config.relationships_path)
        return cls(
            max_context_tokens=config.max_context_tokens,
            core_token_limit=config.core_token_limit,
            estimator=estimator or build_estimator(config.estimator, config.estimator_model),
            relationships=relationships,
            safety_buffer_chars=config.safety_buffer_chars,
            metrics=metrics,
        )

    # ── Limits ─────────────────────────────────────────────────────────

    def supports_large_context(self) -> bool:
        return self.max_context_tokens > LARGE_CONTEXT_THRESHOLD

    def get_effective_token_limit(self, operation: Literal["core", "enriched", "full"]) -> int:
        ratio = _LIMIT_RATIOS.get(operation)
        if ratio is None:
            return self.max_context_tokens
        return math.floor(self.max_context_tokens * ratio)

    def estimate_tokens(self, text: str) -> int:
        return self._estimator.estimate_tokens(text)

    # ── Registration ───────────────────────────────────────────────────

    @property
    def core_context(self) -> str:
        return self._core_context

    @property
    def generated_documents(self) -> list[str]:
        return list(self._generated)

    def create_core_context(self, summary_text: str) -> str:
        """Set the project summary, cut to the core token limit."""
        self._core_context = self._summarizer.summarize(summary_text, self.core_token_limit)
        self._touch()
        log.info(
            "context.core_created tokens=%d limit=%d truncated=%s",
            self.estimate_tokens(self._core_context),
            self.core_token_limit,
            len(self._core_context) < len(summary_text),
        )
        return self._core_context

    def add_enriched_context(self, key: str, content: str) -> None:
        self._enriched[key] = content
        self._touch()
        log.debug("context.enriched key=%s tokens=%d", key, self.estimate_tokens(content))

    def track_generated_document(self, key: str, content: str) -> None:
        """Register freshly generated content so later documents can use it."""
        self.add_enriched_context(key, content)
        if key not in self._generated:
            self._generated.append(key)

    def get_enriched_context(self, key: str) -> str | None:
        return self._enriched.get(key)

    def _touch(self) -> None:
        self._last_updated = datetime.now()
        self._cache.clear()

    # ── Assembly ───────────────────────────────────────────────────────

    def related_types_for(
        self,
        document_type: str,
        related_types: list[str] | None = None,
    ) -> list[str]:
        keys = list(self._relationships.get(document_type, []))
        for extra in related_types or []:
            if extra not in keys:
                keys.append(extra)
        return keys

    def build_context_for_document(
        self,
        document_type: str,
        related_types: list[str] | None = None,
    ) -> str:
        return self._assemble(document_type, related_types).text

    def _freshness_block(self) -> str:
        generated = ", ".join(self._generated) or "none"
        return (
            "## Context Freshness\n"
            f"Last updated: {self._last_updated.isoformat(timespec='seconds')}\n"
            f"Generated documents: {generated}"
        )

    def _supplementary_keys(
        self,
        related: list[str],
        remaining: int,
    ) -> tuple[str, list[str]]:
        """Enriched entries outside the relationship table, in insertion order."""
        keys = [k for k, v in self._enriched.items() if v and k not in related]
        if self.max_context_tokens > ADDITIONAL_CONTEXT_THRESHOLD and remaining > ADDITIONAL_MIN_REMAINING:
            return ADDITIONAL_HEADER, keys
        if remaining > SUPPLEMENTARY_MIN_REMAINING:
            return SUPPLEMENTARY_HEADER, keys[:SUPPLEMENTARY_LIMIT]
        return SUPPLEMENTARY_HEADER, []

    def _append_sections(
        self,
        context: str,
        header_prefix: str,
        keys: list[str],
        budget: int,
        document_type: str,
        included: list[str],
    ) -> tuple[str, str | None]:
        """Append whole sections until one overflows; return it as the second item."""
        safety_tokens = math.ceil(self.safety_buffer_chars / CHARS_PER_TOKEN)
        for key in keys:
            content = self._enriched.get(key)
            if not content:
                continue
            candidate = f"{context}\n\n{header_prefix}{key}\n{content}"
            if self.estimate_tokens(candidate) <= budget:
                context = candidate
                included.append(key)
                continue

            header = f"\n\n{header_prefix}{key} (Truncated)\n"
            available = (
                budget
                - self.estimate_tokens(context + header + TRUNCATION_MARKER)
                - safety_tokens
            )
            prefix = truncate_to_tokens(content, available, self._estimator)
            if prefix:
                context = f"{context}{header}{prefix}{TRUNCATION_MARKER}"
                included.append(key)
            if self._metrics is not None:
                self._metrics.counter("context_truncations_total").inc()
            log.info(
                "context.truncated document_type=%s key=%s kept_chars=%d of=%d",
                document_type,
                key,
                len(prefix),
                len(content),
            )
            return context, key
        return context, None

    def _assemble(self, document_type: str, related_types: list[str] | None) -> _Assembly:
        cache_key = (document_type, tuple(related_types or ()))
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        budget = self.get_effective_token_limit("enriched")
        freshness = self._freshness_block()
        context = f"{self._core_context}\n\n{freshness}" if self._core_context else freshness
        included: list[str] = []

        related = self.related_types_for(document_type, related_types)
        context, overflow = self._append_sections(
            context, RELATED_HEADER, related, budget, document_type, included
        )
        if overflow is None:
            remaining = budget - self.estimate_tokens(context)
            header_prefix, extra = self._supplementary_keys(related, remaining)
            context, overflow = self._append_sections(
                context, header_prefix, extra, budget, document_type, included
            )
        truncated = overflow if overflow in included else None

        # Core plus freshness alone can outgrow a tiny budget.
        if self.estimate_tokens(context) > budget:
            context = truncate_to_tokens(context, budget, self._estimator)

        tokens = self.estimate_tokens(context)
        if self._metrics is not None:
            self._metrics.counter("context_builds_total").inc()
            self._metrics.gauge("context_tokens_used").set(tokens)
        log.debug(
            "context.built document_type=%s tokens=%d budget=%d included=%s",
            document_type,
            tokens,
            budget,
            ",".join(included) or "none",
        )
        assembly = _Assembly(context, included, truncated)
        self._cache[cache_key] = assembly
        return assembly

    # ── Reporting ──────────────────────────────────────────────────────

    def get_metrics(self) -> dict[str, int | bool]:
        return {
            "core_context_tokens": self.estimate_tokens(self._core_context),
            "enriched_context_count": len(self._enriched),
            "generated_document_count": len(self._generated),
            "cache_size": len(self._cache),
            "max_tokens": self.max_context_tokens,
            "supports_large_context": self.supports_large_context(),
        }

    def analyze_document_context(self, document_type: str) -> ContextAnalysis:
        assembly = self._assemble(document_type, None)
        total_tokens = self.estimate_tokens(assembly.text)
        utilization = total_tokens / self.max_context_tokens * 100
        relevant = self.related_types_for(document_type)
        potential = [
            k for k in self._enriched if k not in relevant and k not in assembly.included
        ]

        recommendations: list[str] = []
        if assembly.truncated:
            recommendations.append(
                f"Context for {assembly.truncated} was truncated; raise max_context_tokens "
                "to include it in full"
            )
        missing = [k for k in relevant if k not in self._enriched]
        if missing:
            recommendations.append(f"Related documents not yet available: {', '.join(missing)}")
        if self.supports_large_context() and utilization < 5:
            recommendations.append(
                "Very low context utilization; the model can take far more background"
            )
        if potential:
            recommendations.append(
                f"{len(potential)} additional context sources available for inclusion"
            )

        return ContextAnalysis(
            document_type=document_type,
            total_tokens=total_tokens,
            utilization_percentage=round(utilization, 2),
            included_contexts=assembly.included,
            potential_contexts=potential,
            truncated_context=assembly.truncated,
            recommendations=recommendations,
        )
