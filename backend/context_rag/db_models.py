"""SQLAlchemy ORM models for PostgreSQL persistence.

This module defines the database schema for:
- KnowledgeItem: Per-user retrievable memory (conversation turns, document
  chunks, preferences, feedback) with a pgvector embedding and a generated
  full-text search vector
- SemanticCacheEntry: Durable tier of the semantic query cache
- PerformanceMetric: Append-only operation timings written by the monitor
- UserProfile: Profile fields read when assembling user context

Every query against knowledge_items and semantic_cache is scoped by user_id.
"""

import re
import uuid
from datetime import datetime
from typing import Optional, List

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    String,
    Text,
    Float,
    Integer,
    Boolean,
    DateTime,
    Index,
    UniqueConstraint,
    Computed,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID, JSONB, ARRAY, TSVECTOR

from context_rag.config import settings
from context_rag.database import Base
from context_rag.errors import ConfigurationError

EMBEDDING_DIMENSION = settings.embedding_dimension

_REGCONFIG_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


def search_vector_expression(language: str) -> str:
    """Generated-column SQL for the content tsvector in the given text search config.

    Must name the same configuration the keyword search queries with, or
    stemming differs between indexed rows and queries.
    """
    if not _REGCONFIG_NAME.match(language):
        raise ConfigurationError(
            f"Invalid full-text search configuration: {language!r}",
            operation="schema",
        )
    return f"to_tsvector('{language}', coalesce(content, ''))"


# =============================================================================
# Knowledge Store
# =============================================================================


class KnowledgeItem(Base):
    """A unit of retrievable per-user memory.

    Content is immutable after creation. Only the access counters change,
    and rows disappear only through document deletion or the retention sweep.
    """

    __tablename__ = "knowledge_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique knowledge item identifier",
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Owner of the item; every read is scoped by it",
    )

    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Raw text of the conversation turn or document chunk",
    )

    content_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="conversation",
        comment="conversation, document, preference, feedback, ...",
    )

    embedding: Mapped[Optional[List[float]]] = mapped_column(
        Vector(EMBEDDING_DIMENSION),
        nullable=True,
        comment="Dense embedding of content",
    )

    search_vector = mapped_column(
        TSVECTOR,
        Computed(search_vector_expression(settings.fulltext_language), persisted=True),
        comment="Generated full-text search vector",
    )

    topics: Mapped[List[str]] = mapped_column(
        ARRAY(String(100)),
        nullable=False,
        default=list,
        server_default="{}",
        comment="Extracted topic labels",
    )

    importance_score: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=1.0,
        comment="Importance in [0, 2]",
    )

    # 'metadata' is reserved on declarative classes
    item_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Free-form JSON metadata (document_id, source, ...)",
    )

    access_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Times this item was returned by a search",
    )

    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the item was last returned by a search",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
        comment="When the item was stored",
    )

    __table_args__ = (
        Index("ix_knowledge_items_user_type_created", "user_id", "content_type", "created_at"),
        Index("ix_knowledge_items_search_vector", "search_vector", postgresql_using="gin"),
        Index(
            "ix_knowledge_items_embedding_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    def __repr__(self) -> str:
        return f"<KnowledgeItem(id={self.id}, user_id={self.user_id}, type={self.content_type})>"


# =============================================================================
# Semantic Cache
# =============================================================================


class SemanticCacheEntry(Base):
    """Durable semantic cache entry, one per (user_id, query_hash)."""

    __tablename__ = "semantic_cache"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    query_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA256 of the normalized query text",
    )

    query_embedding: Mapped[List[float]] = mapped_column(
        Vector(EMBEDDING_DIMENSION),
        nullable=False,
    )

    cached_response: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        comment="Serialized RAG context",
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    hit_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    last_hit: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "query_hash", name="uq_semantic_cache_user_query"),
        Index(
            "ix_semantic_cache_embedding_hnsw",
            "query_embedding",
            postgresql_using="hnsw",
            postgresql_ops={"query_embedding": "vector_cosine_ops"},
        ),
    )

    def __repr__(self) -> str:
        return f"<SemanticCacheEntry(user_id={self.user_id}, hits={self.hit_count})>"


# =============================================================================
# Monitoring
# =============================================================================


class PerformanceMetric(Base):
    """One timed pipeline operation. Append-only."""

    __tablename__ = "performance_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    operation: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    duration_ms: Mapped[float] = mapped_column(Float, nullable=False)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)

    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    query_length: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    metric_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_performance_metrics_operation_timestamp", "operation", "timestamp"),
    )


# =============================================================================
# User Profile (read-only here)
# =============================================================================


class UserProfile(Base):
    """Profile fields surfaced to the prompt as user preferences."""

    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    industry: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    primary_goals: Mapped[Optional[List[str]]] = mapped_column(ARRAY(Text), nullable=True)
    communication_style: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
