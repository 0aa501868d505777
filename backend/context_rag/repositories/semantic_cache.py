"""Repository for the durable tier of the semantic cache."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert

from context_rag.db_models import SemanticCacheEntry
from context_rag.repositories.base import AsyncSessionRepository, QueryError, RepositoryContext

logger = logging.getLogger(__name__)


class SemanticCacheRepository(AsyncSessionRepository):
    """Nearest-neighbour lookups and upserts on the ``semantic_cache`` table."""

    def __init__(self, session_factory=None, context: Optional[RepositoryContext] = None):
        super().__init__(session_factory, context)

    async def find_similar(
        self,
        user_id: str,
        embedding: Sequence[float],
        limit: int = 5,
    ) -> List[Tuple[str, Dict[str, Any], float]]:
        """Closest live entries for the user.

        Returns:
            (query_hash, cached_response, cosine similarity) tuples, closest first
        """
        self._log_operation("find_similar", user_id=user_id, limit=limit)

        try:
            distance = SemanticCacheEntry.query_embedding.cosine_distance(list(embedding))
            stmt = (
                select(
                    SemanticCacheEntry.query_hash,
                    SemanticCacheEntry.cached_response,
                    (1 - distance).label("similarity"),
                )
                .where(
                    SemanticCacheEntry.user_id == user_id,
                    SemanticCacheEntry.expires_at > func.now(),
                )
                .order_by(distance)
                .limit(limit)
            )
            async with self.session() as session:
                result = await session.execute(stmt)
                return [(row[0], row[1], float(row[2])) for row in result.all()]
        except Exception as e:
            self._log_error("find_similar", e, user_id=user_id)
            raise QueryError(str(e), "find_similar")

    async def upsert(
        self,
        user_id: str,
        query_hash: str,
        embedding: Sequence[float],
        response: Dict[str, Any],
        ttl_seconds: int,
    ) -> None:
        """Insert or refresh the entry for (user_id, query_hash)."""
        self._log_operation("upsert", user_id=user_id)

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        stmt = insert(SemanticCacheEntry).values(
            user_id=user_id,
            query_hash=query_hash,
            query_embedding=list(embedding),
            cached_response=response,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SemanticCacheEntry.user_id, SemanticCacheEntry.query_hash],
            set_={
                "query_embedding": stmt.excluded.query_embedding,
                "cached_response": stmt.excluded.cached_response,
                "expires_at": stmt.excluded.expires_at,
            },
        )
        try:
            async with self.session() as session:
                await session.execute(stmt)
        except Exception as e:
            self._log_error("upsert", e, user_id=user_id)
            raise QueryError(str(e), "upsert")

    async def record_hit(self, user_id: str, query_hash: str, ttl_seconds: int) -> None:
        """Increment hit_count, stamp last_hit and extend the expiry."""
        self._log_operation("record_hit", user_id=user_id)

        try:
            stmt = (
                update(SemanticCacheEntry)
                .where(
                    SemanticCacheEntry.user_id == user_id,
                    SemanticCacheEntry.query_hash == query_hash,
                )
                .values(
                    hit_count=SemanticCacheEntry.hit_count + 1,
                    last_hit=func.now(),
                    expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds),
                )
            )
            async with self.session() as session:
                await session.execute(stmt)
        except Exception as e:
            self._log_error("record_hit", e, user_id=user_id)
            raise QueryError(str(e), "record_hit")

    async def delete_for_user(self, user_id: str) -> int:
        self._log_operation("delete_for_user", user_id=user_id)

        try:
            async with self.session() as session:
                result = await session.execute(
                    delete(SemanticCacheEntry).where(SemanticCacheEntry.user_id == user_id)
                )
                return result.rowcount or 0
        except Exception as e:
            self._log_error("delete_for_user", e, user_id=user_id)
            raise QueryError(str(e), "delete_for_user")

    async def delete_expired(self) -> int:
        self._log_operation("delete_expired")

        try:
            async with self.session() as session:
                result = await session.execute(
                    delete(SemanticCacheEntry).where(SemanticCacheEntry.expires_at <= func.now())
                )
                return result.rowcount or 0
        except Exception as e:
            self._log_error("delete_expired", e)
            raise QueryError(str(e), "delete_expired")

    async def get_stats(self) -> Dict[str, Any]:
        """Total entries and average hit count."""
        self._log_operation("get_stats")

        try:
            async with self.session() as session:
                result = await session.execute(
                    select(
                        func.count(SemanticCacheEntry.id),
                        func.avg(SemanticCacheEntry.hit_count),
                    )
                )
                total, avg_hits = result.one()
            return {
                "total_entries": int(total or 0),
                "avg_hits": round(float(avg_hits or 0.0), 2),
            }
        except Exception as e:
            self._log_error("get_stats", e)
            raise QueryError(str(e), "get_stats")
