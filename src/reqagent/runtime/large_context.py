"""Context loading for projects with many stored documents.

Documents are scored, optionally filtered, grouped into clusters, and then
greedily packed into a token budget. Whatever is selected is pushed into a
context sink so the budgeter can use it when assembling prompts.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections import Counter
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from reqagent.models.document import (
    ClusteringStrategy,
    DocumentCluster,
    DocumentContext,
    LargeScaleContextResult,
    LoadingStrategy,
    LoadOptions,
    Priority,
    StoredDocument,
)
from reqagent.runtime.logging_config import ctx_project_id
from reqagent.runtime.relationships import (
    DOCUMENT_RELATIONSHIPS,
    category_for,
    priority_for,
)
from reqagent.runtime.tokens import CharRatioEstimator, TokenEstimator, truncate_to_tokens

if TYPE_CHECKING:
    from reqagent.runtime.context_sink import ContextSink
    from reqagent.runtime.document_store import DocumentStore
    from reqagent.runtime.metrics import MetricsCollector

log = logging.getLogger(__name__)

SMART_FILTER_LIMIT = 50
RELEVANCE_BUCKET_SIZE = 10
TRUNCATED_SUFFIX = "\n...\n[Document truncated to fit the context budget]"

_PRIORITY_ORDER = [Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW]
_HIERARCHY_SCORES = {
    Priority.CRITICAL: 100.0,
    Priority.HIGH: 80.0,
    Priority.MEDIUM: 60.0,
    Priority.LOW: 40.0,
}
# (name, upper bound in days, priority); windows are disjoint
_TEMPORAL_WINDOWS: list[tuple[str, float, Priority]] = [
    ("Recent", 30, Priority.HIGH),
    ("Recent Past", 90, Priority.MEDIUM),
    ("Historical", 365, Priority.LOW),
    ("Archive", math.inf, Priority.LOW),
]

_WORD_RE = re.compile(r"[^\w\s]")
_DEPENDENCY_PATTERNS = [
    re.compile(r"see\s+(?:document|section|chapter)\s+[^,\n]+", re.IGNORECASE),
    re.compile(r"refer\s+to\s+[^,\n]+", re.IGNORECASE),
    re.compile(r"as\s+defined\s+in\s+[^,\n]+", re.IGNORECASE),
]
_REFERENCE_PATTERNS = [
    re.compile(r"https?://\S+", re.IGNORECASE),
    re.compile(r"www\.\S+", re.IGNORECASE),
    re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
]


# ── Pure helpers ──────────────────────────────────────────────────────────


def _age_days(when: datetime, now: datetime | None = None) -> float:
    if now is None:
        now = datetime.now(when.tzinfo) if when.tzinfo else datetime.now()
    return (now - when).total_seconds() / 86400


def determine_optimal_strategy(document_count: int, max_tokens: int) -> LoadingStrategy:
    """Pick a loading plan from the number of stored documents."""
    if document_count <= 10:
        return LoadingStrategy(
            name="full-load",
            description="Load all documents completely",
            max_documents=document_count,
            max_tokens=max_tokens,
            clustering_enabled=False,
            summarization_enabled=False,
            hierarchical_loading=False,
            smart_filtering=False,
        )
    if document_count <= 50:
        return LoadingStrategy(
            name="clustered-load",
            description="Load documents in clusters with prioritization",
            max_documents=min(document_count, 30),
            max_tokens=max_tokens,
            clustering_enabled=True,
            summarization_enabled=False,
            hierarchical_loading=False,
            smart_filtering=True,
        )
    if document_count <= 100:
        return LoadingStrategy(
            name="hierarchical-load",
            description="Load documents hierarchically with summarization",
            max_documents=min(document_count, 40),
            max_tokens=max_tokens,
            clustering_enabled=True,
            summarization_enabled=True,
            hierarchical_loading=True,
            smart_filtering=True,
        )
    return LoadingStrategy(
        name="intelligent-load",
        description="Intelligent loading with advanced filtering and summarization",
        max_documents=min(document_count, 50),
        max_tokens=max_tokens,
        clustering_enabled=True,
        summarization_enabled=True,
        hierarchical_loading=True,
        smart_filtering=True,
    )


def create_structured_content(doc: StoredDocument) -> str:
    quality = f"{doc.quality_score:g}%" if doc.quality_score is not None else "N/A"
    word_count = doc.word_count if doc.word_count is not None else "N/A"
    return (
        f"# {doc.name}\n\n"
        f"**Document Type:** {doc.type}\n"
        f"**Category:** {doc.category}\n"
        f"**Status:** {doc.status}\n"
        f"**Quality Score:** {quality}\n"
        f"**Last Modified:** {doc.last_modified.isoformat()}\n"
        f"**Word Count:** {word_count}\n\n"
        f"## Content\n\n{doc.content}"
    )


def calculate_relevance_score(doc: StoredDocument, now: datetime | None = None) -> float:
    score = doc.quality_score or 0.0
    if doc.status in ("approved", "published"):
        score += 20
    age = _age_days(doc.last_modified, now)
    if age < 30:
        score += 10
    elif age < 90:
        score += 5
    return score


def extract_keywords(content: str, limit: int = 10) -> list[str]:
    words = [w for w in _WORD_RE.sub(" ", content.lower()).split() if len(w) > 3]
    return [word for word, _ in Counter(words).most_common(limit)]


def extract_dependencies(content: str) -> list[str]:
    found: list[str] = []
    for pattern in _DEPENDENCY_PATTERNS:
        found.extend(m.group(0).strip() for m in pattern.finditer(content))
    return found


def extract_references(content: str) -> list[str]:
    found: list[str] = []
    for pattern in _REFERENCE_PATTERNS:
        found.extend(m.group(0).strip() for m in pattern.finditer(content))
    return found


def _cluster_priority(docs: list[DocumentContext]) -> Priority:
    present = {d.priority for d in docs}
    for priority in _PRIORITY_ORDER:
        if priority in present:
            return priority
    return Priority.LOW


def _make_cluster(
    cluster_id: str,
    name: str,
    docs: list[DocumentContext],
    category: str,
    relevance: float | None = None,
    priority: Priority | None = None,
) -> DocumentCluster:
    return DocumentCluster(
        id=cluster_id,
        name=name,
        documents=docs,
        total_tokens=sum(d.estimated_tokens for d in docs),
        relevance_score=(
            relevance if relevance is not None else sum(d.relevance_score for d in docs) / len(docs)
        ),
        priority=priority or _cluster_priority(docs),
        category=category,
        last_modified=max(d.last_modified for d in docs),
    )


def _by_relevance(docs: list[DocumentContext]) -> list[DocumentContext]:
    return sorted(docs, key=lambda d: d.relevance_score, reverse=True)


def create_category_clusters(docs: list[DocumentContext]) -> list[DocumentCluster]:
    groups: dict[str, list[DocumentContext]] = {}
    for doc in docs:
        groups.setdefault(doc.category or "uncategorized", []).append(doc)
    clusters = [
        _make_cluster(f"category-{cat}", f"{cat} Documents", _by_relevance(group), cat)
        for cat, group in groups.items()
    ]
    return sorted(clusters, key=lambda c: c.relevance_score, reverse=True)


def create_relevance_clusters(docs: list[DocumentContext]) -> list[DocumentCluster]:
    ranked = _by_relevance(docs)
    clusters = []
    for i in range(0, len(ranked), RELEVANCE_BUCKET_SIZE):
        index = i // RELEVANCE_BUCKET_SIZE
        clusters.append(
            _make_cluster(
                f"relevance-{index}",
                f"Relevance Cluster {index + 1}",
                ranked[i : i + RELEVANCE_BUCKET_SIZE],
                "relevance",
            )
        )
    return clusters


def create_temporal_clusters(
    docs: list[DocumentContext],
    now: datetime | None = None,
) -> list[DocumentCluster]:
    buckets: dict[str, list[DocumentContext]] = {name: [] for name, _, _ in _TEMPORAL_WINDOWS}
    for doc in docs:
        age = _age_days(doc.last_modified, now)
        for name, upper, _ in _TEMPORAL_WINDOWS:
            if age <= upper:
                buckets[name].append(doc)
                break

    clusters = [
        _make_cluster(
            f"temporal-{name.lower().replace(' ', '-')}",
            f"{name} Documents",
            _by_relevance(buckets[name]),
            "temporal",
            priority=priority,
        )
        for name, _, priority in _TEMPORAL_WINDOWS
        if buckets[name]
    ]
    return sorted(clusters, key=lambda c: c.relevance_score, reverse=True)


def create_hierarchical_clusters(docs: list[DocumentContext]) -> list[DocumentCluster]:
    clusters = []
    for priority in _PRIORITY_ORDER:
        tier = [d for d in docs if d.priority == priority]
        if tier:
            label = "Critical" if priority == Priority.CRITICAL else f"{priority.value.title()} Priority"
            clusters.append(
                _make_cluster(
                    f"hierarchical-{priority.value}",
                    f"{label} Documents",
                    _by_relevance(tier),
                    "hierarchical",
                    relevance=_HIERARCHY_SCORES[priority],
                    priority=priority,
                )
            )
    return clusters


_CLUSTER_BUILDERS: dict[ClusteringStrategy, Callable[[list[DocumentContext]], list[DocumentCluster]]] = {
    ClusteringStrategy.CATEGORY: create_category_clusters,
    ClusteringStrategy.RELEVANCE: create_relevance_clusters,
    ClusteringStrategy.TEMPORAL: create_temporal_clusters,
    ClusteringStrategy.HIERARCHICAL: create_hierarchical_clusters,
}


# ── Manager ───────────────────────────────────────────────────────────────


class LargeScaleContextManager:
    def __init__(
        self,
        store: DocumentStore,
        sink: ContextSink | None = None,
        estimator: TokenEstimator | None = None,
        relationships: dict[str, list[str]] | None = None,
        cache_ttl_seconds: float = 300.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._estimator = estimator or CharRatioEstimator()
        self._relationships = relationships if relationships is not None else DOCUMENT_RELATIONSHIPS
        self._cache_ttl = cache_ttl_seconds
        self._metrics = metrics
        self._cache: dict[str, tuple[float, list[DocumentContext]]] = {}

    # ── Cache ──────────────────────────────────────────────────────────

    def invalidate_cache(self, project_id: str | None = None) -> None:
        if project_id is None:
            self._cache.clear()
        else:
            self._cache.pop(project_id, None)

    async def _load_documents(self, project_id: str) -> list[DocumentContext]:
        cached = self._cache.get(project_id)
        if cached is not None and cached[0] > time.monotonic():
            log.debug("large_context.cache_hit project_id=%s", project_id)
            return cached[1]

        stored = await self._store.list_documents(project_id)
        contexts = [self.to_document_context(doc) for doc in stored]
        if self._cache_ttl > 0:
            self._cache[project_id] = (time.monotonic() + self._cache_ttl, contexts)
        return contexts

    def to_document_context(self, doc: StoredDocument) -> DocumentContext:
        content = create_structured_content(doc)
        return DocumentContext(
            id=doc.id,
            name=doc.name,
            type=doc.type,
            category=doc.category,
            content=content,
            quality_score=doc.quality_score,
            status=doc.status,
            last_modified=doc.last_modified,
            word_count=doc.word_count,
            estimated_tokens=self._estimator.estimate_tokens(content),
            relevance_score=calculate_relevance_score(doc),
            priority=priority_for(doc.type),
            keywords=extract_keywords(doc.content),
            dependencies=extract_dependencies(doc.content),
            references=extract_references(doc.content),
        )

    # ── Filtering ──────────────────────────────────────────────────────

    def apply_smart_filtering(
        self,
        docs: list[DocumentContext],
        target_document_type: str,
    ) -> list[DocumentContext]:
        """Boost scores toward the target type and keep the top documents."""
        related = self._relationships.get(target_document_type, [])
        target_category = category_for(target_document_type)

        scored = []
        for doc in docs:
            score = doc.relevance_score
            if doc.type in related:
                score += 50
            if target_category is not None and category_for(doc.type) == target_category:
                score += 15
            if doc.priority == Priority.CRITICAL:
                score += 30
            if doc.quality_score is not None and doc.quality_score > 80:
                score += 20
            if _age_days(doc.last_modified) < 30:
                score += 10
            scored.append(doc.model_copy(update={"relevance_score": score}))

        return _by_relevance(scored)[:SMART_FILTER_LIMIT]

    def create_clusters(
        self,
        docs: list[DocumentContext],
        strategy: LoadingStrategy,
        clustering: ClusteringStrategy,
    ) -> list[DocumentCluster]:
        if not docs:
            return []
        if not strategy.clustering_enabled:
            return [_make_cluster("all", "All Documents", _by_relevance(docs), "all")]
        return _CLUSTER_BUILDERS[clustering](docs)

    # ── Loading ────────────────────────────────────────────────────────

    async def load_large_scale_context(
        self,
        project_id: str,
        target_document_type: str,
        options: LoadOptions | None = None,
    ) -> LargeScaleContextResult:
        """Select and push project documents into the context sink.

        Never raises for store failures: the result carries
        ``success=False`` and the error text instead.
        """
        token = ctx_project_id.set(project_id)
        try:
            return await self._load(project_id, target_document_type, options or LoadOptions())
        finally:
            ctx_project_id.reset(token)

    async def _load(
        self,
        project_id: str,
        target_document_type: str,
        opts: LoadOptions,
    ) -> LargeScaleContextResult:
        start = time.monotonic()
        if self._metrics is not None:
            self._metrics.counter("large_context_loads_total").inc()
        log.info(
            "large_context.start project_id=%s target=%s max_documents=%d max_tokens=%d",
            project_id,
            target_document_type,
            opts.max_documents,
            opts.max_tokens,
        )

        try:
            documents = await self._load_documents(project_id)
        except Exception as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            if self._metrics is not None:
                self._metrics.counter("large_context_errors_total").inc()
            log.error("large_context.load_failed project_id=%s error=%s", project_id, exc)
            return LargeScaleContextResult(
                success=False,
                strategy="error",
                loading_time_ms=elapsed_ms,
                errors=[f"Large-scale context loading failed: {exc}"],
            )

        if not documents:
            return LargeScaleContextResult(
                success=True,
                strategy="empty",
                loading_time_ms=(time.monotonic() - start) * 1000,
            )

        strategy = determine_optimal_strategy(len(documents), opts.max_tokens)
        strategy.max_documents = min(strategy.max_documents, opts.max_documents)

        warnings: list[str] = []
        selected = documents
        if opts.enable_smart_filtering and strategy.smart_filtering:
            selected = self.apply_smart_filtering(documents, target_document_type)
            log.info(
                "large_context.filtered kept=%d of=%d",
                len(selected),
                len(documents),
            )
        if opts.enable_summarization and strategy.summarization_enabled:
            warnings.append(
                "Summarization is not available; oversized documents are truncated instead"
            )

        clusters = self.create_clusters(selected, strategy, opts.clustering_strategy)
        result = self._fill(clusters, strategy, opts, warnings)
        result.total_documents = len(documents)
        result.loading_time_ms = (time.monotonic() - start) * 1000

        if self._metrics is not None:
            self._metrics.histogram("large_context_load_ms").observe(result.loading_time_ms)
            self._metrics.gauge("context_window_utilization_pct").set(
                result.context_window_utilization
            )
        log.info(
            "large_context.done strategy=%s clusters=%d/%d documents=%d/%d tokens=%d "
            "utilization=%.1f%% duration_ms=%.1f",
            result.strategy,
            result.clusters_loaded,
            result.total_clusters,
            result.documents_loaded,
            result.total_documents,
            result.total_tokens_used,
            result.context_window_utilization,
            result.loading_time_ms,
        )
        return result

    def _fill(
        self,
        clusters: list[DocumentCluster],
        strategy: LoadingStrategy,
        opts: LoadOptions,
        warnings: list[str],
    ) -> LargeScaleContextResult:
        max_tokens = opts.max_tokens
        max_docs = strategy.max_documents
        max_clusters = max(1, math.ceil(max_docs / 10))
        owner = {doc.id: cluster.id for cluster in clusters for doc in cluster.documents}

        chosen: dict[str, DocumentContext] = {}
        used = 0

        if opts.preserve_critical_documents:
            for cluster in clusters:
                for doc in cluster.documents:
                    if doc.priority != Priority.CRITICAL or len(chosen) >= max_docs:
                        continue
                    remaining = max_tokens - used
                    if doc.estimated_tokens <= remaining:
                        chosen[doc.id] = doc
                        used += doc.estimated_tokens
                        continue
                    cut = self._truncate(doc, remaining)
                    if cut is None:
                        warnings.append(f"Critical document {doc.name} dropped: token budget exhausted")
                        continue
                    warnings.append(f"Critical document {doc.name} truncated to fit the token budget")
                    chosen[doc.id] = cut
                    used += cut.estimated_tokens

        contributing = {owner[d] for d in chosen}
        for cluster in clusters:
            if len(chosen) >= max_docs:
                break
            if cluster.id not in contributing and len(contributing) >= max_clusters:
                continue
            for doc in cluster.documents:
                if len(chosen) >= max_docs:
                    break
                if doc.id in chosen or used + doc.estimated_tokens > max_tokens:
                    continue
                chosen[doc.id] = doc
                used += doc.estimated_tokens
                contributing.add(cluster.id)

        loaded_clusters: list[DocumentCluster] = []
        for cluster in clusters:
            docs = [chosen[d.id] for d in cluster.documents if d.id in chosen]
            if not docs:
                continue
            loaded_clusters.append(cluster.model_copy(update={
                "documents": docs,
                "total_tokens": sum(d.estimated_tokens for d in docs),
            }))
            for doc in docs:
                self._push(cluster.id, doc)

        return LargeScaleContextResult(
            success=True,
            strategy=strategy.name,
            clusters_loaded=len(loaded_clusters),
            total_clusters=len(clusters),
            documents_loaded=len(chosen),
            total_tokens_used=used,
            context_window_utilization=used / max_tokens * 100,
            clusters=loaded_clusters,
            warnings=warnings,
        )

    def _truncate(self, doc: DocumentContext, max_tokens: int) -> DocumentContext | None:
        room = max_tokens - self._estimator.estimate_tokens(TRUNCATED_SUFFIX)
        prefix = truncate_to_tokens(doc.content, room, self._estimator)
        if not prefix:
            return None
        content = prefix + TRUNCATED_SUFFIX
        tokens = self._estimator.estimate_tokens(content)
        if tokens > max_tokens:
            return None
        return doc.model_copy(update={
            "content": content,
            "estimated_tokens": tokens,
            "truncated": True,
        })

    def _push(self, cluster_id: str, doc: DocumentContext) -> None:
        if self._sink is None:
            return
        key = f"LARGE-SCALE-{cluster_id}-{doc.type}-{doc.id}"
        self._sink.add_enriched_context(key, doc.content)
        log.debug(
            "large_context.loaded key=%s tokens=%d truncated=%s",
            key,
            doc.estimated_tokens,
            doc.truncated,
        )
