"""Per-user retrieval for RAG.

This package provides:
- Core data types (candidates, rerank results, assembled contexts)
- Hybrid retrieval strategy (pgvector + PostgreSQL full-text)
- Pipeline orchestrator

Usage:
    from context_rag.retrieval.pipeline import create_pipeline

    pipeline = create_pipeline()
    context = await pipeline.get_context(user_id, "Which publishers fit my budget?")
"""

from context_rag.retrieval.base import (
    ContextMetadata,
    RAGContext,
    RerankResult,
    RetrievalCandidate,
    RetrievalStrategy,
    UserContext,
)

__all__ = [
    # Base classes
    "RetrievalStrategy",
    # Data types
    "RetrievalCandidate",
    "RerankResult",
    "UserContext",
    "ContextMetadata",
    "RAGContext",
]
