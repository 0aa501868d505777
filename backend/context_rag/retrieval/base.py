"""Core data structures and the retrieval strategy interface.

Everything here is in-memory and JSON-serializable through ``to_dict`` /
``from_dict``, because assembled contexts are stored verbatim in the durable
semantic cache.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# JSON-compatible metadata bag attached to items, candidates and results
Metadata = Dict[str, Any]


@dataclass
class RetrievalCandidate:
    """A knowledge item returned by hybrid search with its fused score.

    Attributes:
        id: Knowledge item id
        user_id: Owner of the item
        content: Item text
        score: Fused relevance score
        similarity: Cosine similarity from the semantic leg (0 if absent)
        keyword_rank: Normalized full-text rank from the keyword leg (0 if absent)
        match_type: "semantic", "keyword", "both" or "recent"
    """
    id: str
    user_id: str
    content: str
    score: float
    content_type: str = "conversation"
    similarity: float = 0.0
    keyword_rank: float = 0.0
    match_type: str = "semantic"
    topics: List[str] = field(default_factory=list)
    metadata: Metadata = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "score": self.score,
            "content_type": self.content_type,
            "similarity": self.similarity,
            "keyword_rank": self.keyword_rank,
            "match_type": self.match_type,
            "topics": list(self.topics),
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class RerankResult:
    """A candidate after reranking.

    ``original_rank`` is the position in the reranker's input and
    ``new_rank`` the position in its output, both zero-based.
    """
    id: str
    content: str
    score: float
    original_rank: int
    new_rank: int
    metadata: Metadata = field(default_factory=dict)
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "score": self.score,
            "original_rank": self.original_rank,
            "new_rank": self.new_rank,
            "metadata": dict(self.metadata),
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RerankResult":
        return cls(
            id=str(data["id"]),
            content=data["content"],
            score=float(data["score"]),
            original_rank=int(data.get("original_rank", 0)),
            new_rank=int(data.get("new_rank", 0)),
            metadata=dict(data.get("metadata") or {}),
            user_id=data.get("user_id"),
        )


@dataclass
class UserContext:
    """Per-user enrichment: profile preferences, recent topics, last turns."""
    preferences: Metadata = field(default_factory=dict)
    recent_topics: List[str] = field(default_factory=list)
    conversation_history: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.preferences or self.recent_topics or self.conversation_history)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preferences": dict(self.preferences),
            "recent_topics": list(self.recent_topics),
            "conversation_history": list(self.conversation_history),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UserContext":
        data = data or {}
        return cls(
            preferences=dict(data.get("preferences") or {}),
            recent_topics=list(data.get("recent_topics") or []),
            conversation_history=list(data.get("conversation_history") or []),
        )


@dataclass
class ContextMetadata:
    """Timing and quality figures for one assembled context."""
    retrieval_time_ms: float = 0.0
    rerank_time_ms: float = 0.0
    total_docs: int = 0
    relevancy_score: float = 0.0
    cache_hit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "retrieval_time_ms": self.retrieval_time_ms,
            "rerank_time_ms": self.rerank_time_ms,
            "total_docs": self.total_docs,
            "relevancy_score": self.relevancy_score,
            "cache_hit": self.cache_hit,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ContextMetadata":
        data = data or {}
        return cls(
            retrieval_time_ms=float(data.get("retrieval_time_ms", 0.0)),
            rerank_time_ms=float(data.get("rerank_time_ms", 0.0)),
            total_docs=int(data.get("total_docs", 0)),
            relevancy_score=float(data.get("relevancy_score", 0.0)),
            cache_hit=bool(data.get("cache_hit", False)),
        )


@dataclass
class RAGContext:
    """The assembled retrieval context handed to prompt construction."""
    query: str
    relevant_docs: List[RerankResult] = field(default_factory=list)
    user_context: UserContext = field(default_factory=UserContext)
    metadata: ContextMetadata = field(default_factory=ContextMetadata)

    def as_cache_hit(self) -> "RAGContext":
        """Independent deep copy of this context tagged as served from cache."""
        hit = copy.deepcopy(self)
        hit.metadata.cache_hit = True
        return hit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "relevant_docs": [doc.to_dict() for doc in self.relevant_docs],
            "user_context": self.user_context.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RAGContext":
        return cls(
            query=data.get("query", ""),
            relevant_docs=[RerankResult.from_dict(d) for d in data.get("relevant_docs", [])],
            user_context=UserContext.from_dict(data.get("user_context")),
            metadata=ContextMetadata.from_dict(data.get("metadata")),
        )


class RetrievalStrategy(ABC):
    """Interface for first-stage candidate retrieval.

    The orchestrator depends on this interface only, so alternative
    strategies (or test doubles) can be swapped in.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of this retrieval strategy."""
        pass

    @abstractmethod
    async def search(self, user_id: str, query: str, config: Any = None) -> List[RetrievalCandidate]:
        """Return this user's candidates for the query, best first."""
        pass

    async def get_recent_interactions(self, user_id: str, limit: int = 10) -> List[RetrievalCandidate]:
        return []

    async def get_user_context(self, user_id: str) -> UserContext:
        return UserContext()

    def get_config(self) -> Dict[str, Any]:
        return {}

    def is_available(self) -> bool:
        return True


__all__ = [
    "Metadata",
    "RetrievalCandidate",
    "RerankResult",
    "UserContext",
    "ContextMetadata",
    "RAGContext",
    "RetrievalStrategy",
]
