"""Repository pattern implementations for PostgreSQL data access.

Usage:
    from context_rag.repositories import KnowledgeRepository

    repo = KnowledgeRepository(session_factory=Database().session_factory)
    hits = await repo.semantic_search(user_id, embedding, top_k=25)
"""

from context_rag.repositories.base import (
    BaseRepository,
    AsyncSessionRepository,
    RepositoryContext,
    RepositoryError,
    QueryError,
)
from context_rag.repositories.knowledge import KnowledgeRepository
from context_rag.repositories.semantic_cache import SemanticCacheRepository
from context_rag.repositories.metrics import PerformanceMetricRepository
from context_rag.repositories.user_profile import UserProfileRepository

__all__ = [
    # Base classes
    "BaseRepository",
    "AsyncSessionRepository",
    "RepositoryContext",
    # Exceptions
    "RepositoryError",
    "QueryError",
    # Concrete repositories
    "KnowledgeRepository",
    "SemanticCacheRepository",
    "PerformanceMetricRepository",
    "UserProfileRepository",
]
