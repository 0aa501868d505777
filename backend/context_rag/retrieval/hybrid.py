"""Hybrid retrieval combining pgvector similarity with PostgreSQL full-text rank.

Flow for one query:
1. Embed the query once. Failure here fails the whole search.
2. Run the semantic and keyword legs concurrently, both scoped to the user.
3. Fuse: score = semantic_weight * similarity + keyword_weight * keyword_rank,
   with an absent leg contributing zero.
4. Drop candidates below the similarity floor, sort, truncate to top_k.

A failing leg is logged and treated as empty. Only when both legs fail is
the data store considered unreachable.
"""

import asyncio
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from context_rag.async_utils import BackgroundTaskRunner
from context_rag.config import settings
from context_rag.embeddings import EmbeddingProvider
from context_rag.errors import ConfigurationError, EmbeddingProviderError, RetrievalError
from context_rag.models import HybridSearchConfig
from context_rag.monitoring import PerformanceMonitor
from context_rag.retrieval.base import RetrievalCandidate, RetrievalStrategy, UserContext

logger = logging.getLogger(__name__)

# (knowledge item, leg score) as returned by the repository
LegHit = Tuple[Any, float]


def _to_candidate(item: Any, user_id_fallback: str = "") -> RetrievalCandidate:
    return RetrievalCandidate(
        id=str(item.id),
        user_id=getattr(item, "user_id", user_id_fallback),
        content=item.content,
        score=0.0,
        content_type=getattr(item, "content_type", "conversation"),
        topics=list(getattr(item, "topics", None) or []),
        metadata=dict(getattr(item, "item_metadata", None) or {}),
        created_at=getattr(item, "created_at", None),
    )


def fuse_results(
    semantic_hits: Sequence[LegHit],
    keyword_hits: Sequence[LegHit],
    semantic_weight: float = 0.7,
    keyword_weight: float = 0.3,
    normalize: bool = True,
) -> List[RetrievalCandidate]:
    """Merge the two legs into candidates with a weighted score.

    Cosine similarity is clamped to [0, 1]. With ``normalize`` the keyword
    ranks are divided by the leg's best rank, so both legs contribute on the
    same [0, 1] scale. A leg weighted zero is ignored entirely, so its hits
    neither pad the result nor change match types. Ties are broken by
    position in the more heavily weighted leg, then the other leg.

    Returns:
        Candidates sorted by fused score, highest first
    """
    if semantic_weight <= 0:
        semantic_hits = []
    if keyword_weight <= 0:
        keyword_hits = []

    max_rank = max((rank for _, rank in keyword_hits), default=0.0)

    candidates: Dict[str, RetrievalCandidate] = {}
    semantic_pos: Dict[str, int] = {}
    keyword_pos: Dict[str, int] = {}

    for position, (item, similarity) in enumerate(semantic_hits):
        candidate = _to_candidate(item)
        candidate.similarity = min(1.0, max(0.0, float(similarity)))
        candidate.match_type = "semantic"
        candidates[candidate.id] = candidate
        semantic_pos[candidate.id] = position

    for position, (item, rank) in enumerate(keyword_hits):
        item_id = str(item.id)
        keyword_rank = float(rank)
        if normalize:
            keyword_rank = keyword_rank / max_rank if max_rank > 0 else 0.0

        candidate = candidates.get(item_id)
        if candidate is None:
            candidate = _to_candidate(item)
            candidate.match_type = "keyword"
            candidates[item_id] = candidate
        else:
            candidate.match_type = "both"
        candidate.keyword_rank = keyword_rank
        keyword_pos[item_id] = position

    for candidate in candidates.values():
        candidate.score = semantic_weight * candidate.similarity + keyword_weight * candidate.keyword_rank

    if semantic_weight >= keyword_weight:
        primary, secondary = semantic_pos, keyword_pos
    else:
        primary, secondary = keyword_pos, semantic_pos

    return sorted(
        candidates.values(),
        key=lambda c: (-c.score, primary.get(c.id, math.inf), secondary.get(c.id, math.inf)),
    )


class HybridSearcher(RetrievalStrategy):
    """Per-user hybrid search over the knowledge store."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        repository,
        monitor: PerformanceMonitor,
        tasks: Optional[BackgroundTaskRunner] = None,
        profiles=None,
        normalize_scores: Optional[bool] = None,
    ):
        self.embedder = embedder
        self.repository = repository
        self.monitor = monitor
        self.tasks = tasks or BackgroundTaskRunner("hybrid_search")
        self.profiles = profiles
        self.normalize_scores = settings.hybrid_normalize_scores if normalize_scores is None else normalize_scores

    @property
    def name(self) -> str:
        return "hybrid"

    def get_config(self) -> Dict[str, Any]:
        return {
            "semantic_weight": settings.hybrid_semantic_weight,
            "keyword_weight": settings.hybrid_keyword_weight,
            "candidate_pool": settings.hybrid_candidate_pool,
            "normalize_scores": self.normalize_scores,
        }

    async def search(
        self,
        user_id: str,
        query: str,
        config: Optional[HybridSearchConfig] = None,
    ) -> List[RetrievalCandidate]:
        """Hybrid search for one user.

        Raises:
            RetrievalError: The query could not be embedded, or both legs failed
        """
        config = config or HybridSearchConfig()
        return await self.monitor.track(
            "hybrid_search",
            lambda: self._search(user_id, query, config),
            metadata={"user_id": user_id, "query_length": len(query), "top_k": config.top_k},
        )

    async def _search(self, user_id: str, query: str, config: HybridSearchConfig) -> List[RetrievalCandidate]:
        try:
            embedding = await self.embedder.embed(query)
        except ConfigurationError as e:
            raise RetrievalError(str(e), reason="configuration", details={"user_id": user_id}) from e
        except EmbeddingProviderError as e:
            raise RetrievalError(
                f"Query embedding failed: {e}",
                reason="embedding_failed",
                details={"user_id": user_id},
            ) from e

        semantic, keyword = await asyncio.gather(
            self.repository.semantic_search(user_id, embedding, config.top_k, config.filters),
            self.repository.keyword_search(user_id, query, config.top_k, config.filters),
            return_exceptions=True,
        )

        if isinstance(semantic, BaseException) and isinstance(keyword, BaseException):
            raise RetrievalError(
                f"Knowledge store unavailable: {semantic}",
                reason="datastore_unavailable",
                details={"user_id": user_id, "keyword_error": str(keyword)},
            ) from semantic
        if isinstance(semantic, BaseException):
            logger.warning(f"Semantic search leg failed, continuing with keyword results: {semantic}")
            semantic = []
        if isinstance(keyword, BaseException):
            logger.warning(f"Keyword search leg failed, continuing with semantic results: {keyword}")
            keyword = []

        fused = fuse_results(
            semantic,
            keyword,
            semantic_weight=config.semantic_weight,
            keyword_weight=config.keyword_weight,
            normalize=self.normalize_scores,
        )

        owned = [c for c in fused if c.user_id == user_id]
        if len(owned) != len(fused):
            logger.error(f"Dropped {len(fused) - len(owned)} candidates not owned by the requesting user")

        results = [c for c in owned if c.score >= config.min_similarity][:config.top_k]

        logger.debug(
            f"Hybrid search: semantic={len(semantic)} keyword={len(keyword)} "
            f"fused={len(owned)} returned={len(results)}"
        )

        if results:
            self.tasks.spawn(self._touch_access([c.id for c in results]), name="touch_access")

        return results

    async def _touch_access(self, item_ids: List[str]) -> None:
        try:
            await self.repository.touch_access(item_ids)
        except Exception as e:
            logger.debug(f"Failed to update access metrics: {e}")

    async def get_recent_interactions(self, user_id: str, limit: int = 10) -> List[RetrievalCandidate]:
        """The user's newest conversation items as candidates with score 1.0."""
        return await self.monitor.track(
            "get_recent_interactions",
            lambda: self._recent_interactions(user_id, limit),
            metadata={"user_id": user_id, "limit": limit},
        )

    async def _recent_interactions(self, user_id: str, limit: int) -> List[RetrievalCandidate]:
        try:
            items = await self.repository.recent_interactions(user_id, limit=limit)
        except Exception as e:
            logger.warning(f"Failed to load recent interactions: {e}")
            return []

        candidates = []
        for item in items:
            candidate = _to_candidate(item)
            candidate.score = 1.0
            candidate.match_type = "recent"
            candidates.append(candidate)
        return candidates

    async def get_user_context(self, user_id: str) -> UserContext:
        """Profile preferences, recent topics and the last few conversation turns.

        Each part degrades to empty independently.
        """
        return await self.monitor.track(
            "get_user_context",
            lambda: self._user_context(user_id),
            metadata={"user_id": user_id},
        )

    async def _user_context(self, user_id: str) -> UserContext:
        preferences, topics, history = await asyncio.gather(
            self._preferences(user_id),
            self.repository.recent_topics(
                user_id,
                days=settings.recent_topics_days,
                limit=settings.recent_topics_limit,
            ),
            self.repository.conversation_history(user_id, limit=settings.conversation_history_limit),
            return_exceptions=True,
        )

        if isinstance(preferences, BaseException):
            logger.warning(f"Failed to load user preferences: {preferences}")
            preferences = {}
        if isinstance(topics, BaseException):
            logger.warning(f"Failed to load recent topics: {topics}")
            topics = []
        if isinstance(history, BaseException):
            logger.warning(f"Failed to load conversation history: {history}")
            history = []

        return UserContext(
            preferences=preferences,
            recent_topics=list(topics),
            conversation_history=list(history),
        )

    async def _preferences(self, user_id: str) -> Dict[str, Any]:
        if self.profiles is None:
            return {}
        return await self.profiles.get_preferences(user_id)
