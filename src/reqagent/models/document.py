"""Data models for generated documents, context clusters, and load results."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class Priority(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ClusteringStrategy(StrEnum):
    CATEGORY = "category"
    RELEVANCE = "relevance"
    TEMPORAL = "temporal"
    HIERARCHICAL = "hierarchical"


DocumentStatus = Literal["draft", "review", "approved", "published", "archived"]

ACTIVE_STATUSES: tuple[str, ...] = ("draft", "review", "approved", "published")


class StoredDocument(BaseModel):
    """A persisted project document as the store hands it back."""

    id: str
    project_id: str
    name: str
    type: str
    category: str = "uncategorized"
    content: str = ""
    quality_score: float | None = None
    status: DocumentStatus = "draft"
    last_modified: datetime = Field(default_factory=datetime.now)
    word_count: int | None = None
    deleted: bool = False


class DocumentContext(BaseModel):
    """A previously generated artifact prepared for prompt assembly."""

    id: str
    name: str
    type: str
    category: str
    content: str
    quality_score: float | None = None
    status: str = "draft"
    last_modified: datetime
    word_count: int | None = None
    estimated_tokens: int
    relevance_score: float = 0.0
    priority: Priority = Priority.LOW
    keywords: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)
    truncated: bool = False


class DocumentCluster(BaseModel):
    """Documents grouped under one clustering strategy."""

    id: str
    name: str
    documents: list[DocumentContext] = Field(default_factory=list)
    total_tokens: int = 0
    relevance_score: float = 0.0
    priority: Priority = Priority.LOW
    category: str
    last_modified: datetime | None = None


class LoadingStrategy(BaseModel):
    """Loading plan chosen from the repository size."""

    name: str
    description: str
    max_documents: int
    max_tokens: int
    clustering_enabled: bool
    summarization_enabled: bool
    hierarchical_loading: bool
    smart_filtering: bool


class LoadOptions(BaseModel):
    max_documents: int = Field(default=50, gt=0)
    max_tokens: int = Field(default=1_000_000, gt=0)
    clustering_strategy: ClusteringStrategy = ClusteringStrategy.HIERARCHICAL
    enable_smart_filtering: bool = True
    enable_summarization: bool = True
    enable_hierarchical_loading: bool = True
    preserve_critical_documents: bool = True


class LargeScaleContextResult(BaseModel):
    success: bool
    strategy: str
    clusters_loaded: int = 0
    total_clusters: int = 0
    documents_loaded: int = 0
    total_documents: int = 0
    total_tokens_used: int = 0
    context_window_utilization: float = 0.0
    loading_time_ms: float = 0.0
    clusters: list[DocumentCluster] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class GeneratedDocument(BaseModel):
    document_type: str
    content: str
    provider: str
    response_time_ms: float
    estimated_tokens: int
    generated_at: datetime = Field(default_factory=datetime.now)
