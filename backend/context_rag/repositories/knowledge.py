"""Repository for the per-user knowledge store.

Every read is scoped by ``user_id`` in the WHERE clause. Vector search uses
pgvector's cosine distance operator and keyword search uses PostgreSQL
full-text search over the generated ``search_vector`` column. All values are
bound parameters.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import cast, delete, desc, func, literal, select, update
from sqlalchemy.dialects.postgresql import REGCONFIG

from context_rag.config import settings
from context_rag.db_models import KnowledgeItem
from context_rag.models import SearchFilters
from context_rag.repositories.base import AsyncSessionRepository, QueryError, RepositoryContext

logger = logging.getLogger(__name__)


class KnowledgeRepository(AsyncSessionRepository):
    """Data access for knowledge items (conversation turns, document chunks, ...)."""

    def __init__(
        self,
        session_factory=None,
        context: Optional[RepositoryContext] = None,
        language: Optional[str] = None,
    ):
        super().__init__(session_factory, context)
        self._language = language or settings.fulltext_language

    @staticmethod
    def _filter_clauses(filters: Optional[SearchFilters]) -> List[Any]:
        if filters is None:
            return []
        clauses = []
        if filters.content_types:
            clauses.append(KnowledgeItem.content_type.in_(filters.content_types))
        if filters.start_date:
            clauses.append(KnowledgeItem.created_at >= filters.start_date)
        if filters.end_date:
            clauses.append(KnowledgeItem.created_at <= filters.end_date)
        if filters.topics:
            clauses.append(KnowledgeItem.topics.overlap(filters.topics))
        return clauses

    async def semantic_search(
        self,
        user_id: str,
        embedding: Sequence[float],
        top_k: int,
        filters: Optional[SearchFilters] = None,
    ) -> List[Tuple[KnowledgeItem, float]]:
        """Nearest items by cosine distance.

        Returns:
            (item, cosine similarity) pairs, closest first
        """
        self._log_operation("semantic_search", user_id=user_id, top_k=top_k)

        try:
            distance = KnowledgeItem.embedding.cosine_distance(list(embedding))
            stmt = (
                select(KnowledgeItem, (1 - distance).label("similarity"))
                .where(
                    KnowledgeItem.user_id == user_id,
                    KnowledgeItem.embedding.is_not(None),
                    *self._filter_clauses(filters),
                )
                .order_by(distance)
                .limit(top_k)
            )
            async with self.session() as session:
                result = await session.execute(stmt)
                return [(row[0], float(row[1])) for row in result.all()]
        except Exception as e:
            self._log_error("semantic_search", e, user_id=user_id)
            raise QueryError(str(e), "semantic_search")

    async def keyword_search(
        self,
        user_id: str,
        query: str,
        top_k: int,
        filters: Optional[SearchFilters] = None,
    ) -> List[Tuple[KnowledgeItem, float]]:
        """Full-text matches ranked by ``ts_rank``.

        Returns:
            (item, raw ts_rank) pairs, best first
        """
        self._log_operation("keyword_search", user_id=user_id, top_k=top_k)

        try:
            tsquery = func.plainto_tsquery(cast(literal(self._language), REGCONFIG), query)
            rank = func.ts_rank(KnowledgeItem.search_vector, tsquery)
            stmt = (
                select(KnowledgeItem, rank.label("rank"))
                .where(
                    KnowledgeItem.user_id == user_id,
                    KnowledgeItem.search_vector.op("@@")(tsquery),
                    *self._filter_clauses(filters),
                )
                .order_by(desc(rank))
                .limit(top_k)
            )
            async with self.session() as session:
                result = await session.execute(stmt)
                return [(row[0], float(row[1])) for row in result.all()]
        except Exception as e:
            self._log_error("keyword_search", e, user_id=user_id)
            raise QueryError(str(e), "keyword_search")

    async def add_item(
        self,
        user_id: str,
        content: str,
        content_type: str,
        embedding: Optional[Sequence[float]],
        topics: Optional[List[str]] = None,
        importance_score: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Insert a knowledge item and return its id."""
        self._log_operation("add_item", user_id=user_id, content_type=content_type)

        item = KnowledgeItem(
            id=uuid.uuid4(),
            user_id=user_id,
            content=content,
            content_type=content_type,
            embedding=list(embedding) if embedding is not None else None,
            topics=topics or [],
            importance_score=importance_score,
            item_metadata=metadata or {},
        )
        try:
            async with self.session() as session:
                session.add(item)
            return str(item.id)
        except Exception as e:
            self._log_error("add_item", e, user_id=user_id)
            raise QueryError(str(e), "add_item")

    async def touch_access(self, item_ids: Sequence[str]) -> int:
        """Increment access_count and stamp last_accessed_at for returned items."""
        if not item_ids:
            return 0
        self._log_operation("touch_access", count=len(item_ids))

        try:
            stmt = (
                update(KnowledgeItem)
                .where(KnowledgeItem.id.in_([uuid.UUID(str(i)) for i in item_ids]))
                .values(
                    access_count=KnowledgeItem.access_count + 1,
                    last_accessed_at=func.now(),
                )
            )
            async with self.session() as session:
                result = await session.execute(stmt)
                return result.rowcount or 0
        except Exception as e:
            self._log_error("touch_access", e)
            raise QueryError(str(e), "touch_access")

    async def recent_interactions(self, user_id: str, limit: int = 10) -> List[KnowledgeItem]:
        """Newest conversation items for the user."""
        self._log_operation("recent_interactions", user_id=user_id, limit=limit)

        try:
            stmt = (
                select(KnowledgeItem)
                .where(
                    KnowledgeItem.user_id == user_id,
                    KnowledgeItem.content_type == "conversation",
                )
                .order_by(desc(KnowledgeItem.created_at))
                .limit(limit)
            )
            async with self.session() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except Exception as e:
            self._log_error("recent_interactions", e, user_id=user_id)
            raise QueryError(str(e), "recent_interactions")

    @staticmethod
    def _recent_topics_stmt(user_id: str, cutoff: datetime, limit: int):
        tagged = (
            select(
                func.unnest(KnowledgeItem.topics).label("topic"),
                KnowledgeItem.created_at.label("created_at"),
            )
            .where(
                KnowledgeItem.user_id == user_id,
                KnowledgeItem.created_at >= cutoff,
            )
            .subquery()
        )
        # Most recently tagged first; name breaks ties so the limit is stable
        return (
            select(tagged.c.topic)
            .group_by(tagged.c.topic)
            .order_by(desc(func.max(tagged.c.created_at)), tagged.c.topic)
            .limit(limit)
        )

    async def recent_topics(self, user_id: str, days: int = 7, limit: int = 10) -> List[str]:
        """Distinct topics tagged on the user's items within the window, newest first."""
        self._log_operation("recent_topics", user_id=user_id, days=days)

        try:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)
            stmt = self._recent_topics_stmt(user_id, cutoff, limit)
            async with self.session() as session:
                result = await session.execute(stmt)
                return [row[0] for row in result.all() if row[0]]
        except Exception as e:
            self._log_error("recent_topics", e, user_id=user_id)
            raise QueryError(str(e), "recent_topics")

    async def conversation_history(self, user_id: str, limit: int = 5) -> List[str]:
        """Contents of the newest conversation items, newest first."""
        items = await self.recent_interactions(user_id, limit=limit)
        return [item.content for item in items]

    async def count_by_type(self, user_id: Optional[str] = None) -> Dict[str, int]:
        self._log_operation("count_by_type", user_id=user_id)

        try:
            stmt = select(KnowledgeItem.content_type, func.count(KnowledgeItem.id)).group_by(
                KnowledgeItem.content_type
            )
            if user_id is not None:
                stmt = stmt.where(KnowledgeItem.user_id == user_id)
            async with self.session() as session:
                result = await session.execute(stmt)
                return {row[0]: int(row[1]) for row in result.all()}
        except Exception as e:
            self._log_error("count_by_type", e)
            raise QueryError(str(e), "count_by_type")

    async def delete_document(self, user_id: str, document_id: str) -> int:
        """Delete all chunks of one uploaded document. Returns rows deleted."""
        self._log_operation("delete_document", user_id=user_id, document_id=document_id)

        try:
            stmt = delete(KnowledgeItem).where(
                KnowledgeItem.user_id == user_id,
                KnowledgeItem.item_metadata["document_id"].astext == document_id,
            )
            async with self.session() as session:
                result = await session.execute(stmt)
                return result.rowcount or 0
        except Exception as e:
            self._log_error("delete_document", e, user_id=user_id)
            raise QueryError(str(e), "delete_document")

    async def delete_older_than(
        self,
        days: int,
        content_types: Optional[List[str]] = None,
        dry_run: bool = False,
    ) -> int:
        """Retention sweep. Returns the number of rows deleted (or matched on dry run)."""
        self._log_operation("delete_older_than", days=days, dry_run=dry_run)

        try:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)
            clauses = [KnowledgeItem.created_at < cutoff]
            if content_types:
                clauses.append(KnowledgeItem.content_type.in_(content_types))

            async with self.session() as session:
                if dry_run:
                    result = await session.execute(select(func.count(KnowledgeItem.id)).where(*clauses))
                    return int(result.scalar() or 0)
                result = await session.execute(delete(KnowledgeItem).where(*clauses))
                return result.rowcount or 0
        except Exception as e:
            self._log_error("delete_older_than", e)
            raise QueryError(str(e), "delete_older_than")
