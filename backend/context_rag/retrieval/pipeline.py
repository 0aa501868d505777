"""RAG Pipeline Orchestrator.

Coordinates the semantic cache, hybrid search and reranking to produce a
per-user retrieval context, and writes finished chat turns back into the
knowledge store.

Example:
    pipeline = create_pipeline()

    context = await pipeline.get_context(user_id, "show me cheap tech sites")
    prompt = pipeline.build_enhanced_prompt("show me cheap tech sites", context)
    ...
    pipeline.schedule_store_interaction(user_id, message, answer, context)
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from context_rag.async_utils import BackgroundTaskRunner, consume_result, with_timeout
from context_rag.config import settings
from context_rag.embeddings import EmbeddingProvider
from context_rag.models import HealthReport, RAGConfig
from context_rag.monitoring import PerformanceMonitor, RetrievalTimer
from context_rag.prompts import build_enhanced_prompt
from context_rag.reranker import Reranker
from context_rag.retrieval.base import (
    ContextMetadata,
    RAGContext,
    RerankResult,
    RetrievalCandidate,
    RetrievalStrategy,
    UserContext,
)
from context_rag.semantic_cache import SemanticCache
from context_rag.topics import extract_topics
from context_rag.tracing import flush_tracing

logger = logging.getLogger(__name__)

CONTENT_TYPE_IMPORTANCE = {
    "conversation": 0.8,
    "document": 1.2,
    "preference": 1.5,
    "feedback": 1.3,
}
DEFAULT_IMPORTANCE = 1.0
MAX_IMPORTANCE = 2.0
LONG_CONTENT_CHARS = 100

# Whole words only, so "show" does not count as "how"
HELP_SEEKING_RE = re.compile(r"\b(help|how)\b", re.IGNORECASE)


class RAGPipelineOrchestrator:
    """Orchestrates the per-user retrieval pipeline.

    Coordinates:
    1. Semantic cache lookup
    2. Hybrid search (vector + full-text) over the user's knowledge items
    3. Reranking of the candidates
    4. User context fetch, concurrently with 2-3 under a soft time budget
    5. Background cache write of the assembled context

    All collaborators are passed in; see ``create_pipeline`` for the wiring
    used in production.
    """

    def __init__(
        self,
        searcher: RetrievalStrategy,
        reranker: Optional[Reranker],
        cache: Optional[SemanticCache],
        monitor: PerformanceMonitor,
        knowledge_repo,
        embedder: EmbeddingProvider,
        tasks: Optional[BackgroundTaskRunner] = None,
        user_context_timeout: Optional[float] = None,
    ):
        self.searcher = searcher
        self.reranker = reranker
        self.cache = cache
        self.monitor = monitor
        self.knowledge_repo = knowledge_repo
        self.embedder = embedder
        self.tasks = tasks or BackgroundTaskRunner("rag_pipeline")
        self.user_context_timeout = (
            user_context_timeout if user_context_timeout is not None else settings.user_context_timeout_seconds
        )
        self._relevancy_total = 0.0
        self._relevancy_count = 0

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def get_context(
        self,
        user_id: str,
        query: str,
        config: Optional[RAGConfig] = None,
    ) -> RAGContext:
        """Assemble the retrieval context for one user query.

        Args:
            user_id: Owner of the knowledge items to search
            query: The user's message
            config: Per-call options; defaults to ``RAGConfig()``

        Returns:
            RAGContext with at most ``config.top_k`` documents

        Raises:
            RetrievalError: The query could not be embedded or the knowledge
                store is unreachable
        """
        config = config or RAGConfig()
        return await self.monitor.track(
            "rag_pipeline",
            lambda: self._get_context(user_id, query, config),
            metadata={
                "user_id": user_id,
                "query_length": len(query),
                "use_cache": config.use_cache,
                "top_k": config.top_k,
                "enable_reranking": config.enable_reranking,
            },
        )

    async def _get_context(self, user_id: str, query: str, config: RAGConfig) -> RAGContext:
        use_cache = config.use_cache and self.cache is not None

        if use_cache:
            cached = await self.cache.get(user_id, query)
            if cached is not None:
                return cached

        user_context_fetch = asyncio.ensure_future(self.searcher.get_user_context(user_id))
        user_context_task = asyncio.ensure_future(
            with_timeout(
                user_context_fetch,
                self.user_context_timeout,
                UserContext(),
                name="user_context",
            )
        )

        try:
            with RetrievalTimer() as retrieval_timer:
                candidates = await self.searcher.search(user_id, query, config.to_search_config())

            with RetrievalTimer() as rerank_timer:
                relevant_docs = await self._rerank(query, candidates, config)

            user_context = await user_context_task
        except BaseException:
            user_context_task.cancel()
            user_context_fetch.add_done_callback(consume_result)
            raise

        relevancy = self._average_score(relevant_docs)
        context = RAGContext(
            query=query,
            relevant_docs=relevant_docs,
            user_context=user_context,
            metadata=ContextMetadata(
                retrieval_time_ms=round(retrieval_timer.elapsed_ms, 2),
                rerank_time_ms=round(rerank_timer.elapsed_ms, 2),
                total_docs=len(candidates),
                relevancy_score=relevancy,
                cache_hit=False,
            ),
        )

        if relevant_docs:
            self._relevancy_total += relevancy
            self._relevancy_count += 1

        logger.info(
            f"Context assembled: {len(relevant_docs)}/{len(candidates)} docs, "
            f"relevancy={relevancy:.3f}, retrieval={context.metadata.retrieval_time_ms:.0f}ms, "
            f"rerank={context.metadata.rerank_time_ms:.0f}ms"
        )

        if use_cache:
            self.tasks.spawn(self.cache.set(user_id, query, context), name="semantic_cache_set")

        return context

    async def _rerank(
        self,
        query: str,
        candidates: List[RetrievalCandidate],
        config: RAGConfig,
    ) -> List[RerankResult]:
        if not candidates:
            return []

        if config.enable_reranking and self.reranker is not None:
            try:
                return await self.reranker.rerank(query, candidates, top_n=config.top_k)
            except Exception as e:
                logger.warning(f"Reranking failed, keeping hybrid order: {e}")

        return self.passthrough(candidates, config.top_k)

    @staticmethod
    def passthrough(candidates: Sequence[RetrievalCandidate], top_k: int) -> List[RerankResult]:
        """Hybrid order truncated to ``top_k``, keeping the fused scores."""
        return [
            RerankResult(
                id=candidate.id,
                content=candidate.content,
                score=candidate.score,
                original_rank=index,
                new_rank=index,
                metadata=dict(candidate.metadata),
                user_id=candidate.user_id,
            )
            for index, candidate in enumerate(candidates[:top_k])
        ]

    @staticmethod
    def _average_score(docs: Sequence[RerankResult]) -> float:
        if not docs:
            return 0.0
        return sum(doc.score for doc in docs) / len(docs)

    def build_enhanced_prompt(self, query: str, context: Optional[RAGContext]) -> str:
        """See ``context_rag.prompts.build_enhanced_prompt``."""
        return build_enhanced_prompt(query, context)

    # =========================================================================
    # Knowledge writes
    # =========================================================================

    @staticmethod
    def calculate_importance(content: str, content_type: str) -> float:
        """Importance weight stored with a knowledge item, capped at 2.0."""
        importance = CONTENT_TYPE_IMPORTANCE.get(content_type, DEFAULT_IMPORTANCE)

        if len(content) > LONG_CONTENT_CHARS:
            importance *= 1.1

        if "?" in content or HELP_SEEKING_RE.search(content):
            importance *= 1.2

        return min(importance, MAX_IMPORTANCE)

    async def store_interaction(
        self,
        user_id: str,
        user_message: str,
        ai_response: str,
        context: Any = None,
    ) -> None:
        """Persist a finished chat turn as two conversation items.

        Failures are logged and never raised to the caller.
        """
        try:
            await self.monitor.track(
                "store_interaction",
                lambda: self._store_interaction(user_id, user_message, ai_response, context),
                metadata={"user_id": user_id, "message_length": len(user_message)},
            )
        except Exception as e:
            logger.error(f"Failed to store interaction: {e}")

    async def _store_interaction(
        self,
        user_id: str,
        user_message: str,
        ai_response: str,
        context: Any,
    ) -> None:
        summary = self._summarize_context(context)
        timestamp = datetime.now(timezone.utc).isoformat()

        for message_type, content in (("user_message", user_message), ("ai_response", ai_response)):
            metadata: Dict[str, Any] = {"type": message_type, "timestamp": timestamp}
            if summary is not None:
                metadata["context"] = summary
            await self._store_item(user_id, content, "conversation", metadata)

    @staticmethod
    def _summarize_context(context: Any) -> Optional[Dict[str, Any]]:
        if context is None:
            return None
        if isinstance(context, RAGContext):
            return {
                "query": context.query,
                "doc_ids": [doc.id for doc in context.relevant_docs],
                "relevancy_score": context.metadata.relevancy_score,
                "cache_hit": context.metadata.cache_hit,
            }
        if isinstance(context, dict):
            return context
        return {"value": str(context)}

    async def _store_item(
        self,
        user_id: str,
        content: str,
        content_type: str,
        metadata: Dict[str, Any],
    ) -> Optional[str]:
        try:
            embedding = await self.embedder.embed(content)
            return await self.knowledge_repo.add_item(
                user_id=user_id,
                content=content,
                content_type=content_type,
                embedding=embedding,
                topics=extract_topics(content),
                importance_score=self.calculate_importance(content, content_type),
                metadata=metadata,
            )
        except Exception as e:
            logger.error(f"Failed to store {content_type} item in knowledge base: {e}")
            return None

    def schedule_store_interaction(
        self,
        user_id: str,
        user_message: str,
        ai_response: str,
        context: Any = None,
    ) -> asyncio.Task:
        """Fire-and-forget ``store_interaction``."""
        return self.tasks.spawn(
            self.store_interaction(user_id, user_message, ai_response, context),
            name="store_interaction",
        )

    async def add_knowledge(
        self,
        user_id: str,
        content: str,
        content_type: str = "document",
        metadata: Optional[Dict[str, Any]] = None,
        topics: Optional[List[str]] = None,
    ) -> str:
        """Ingest a document chunk, preference or feedback item.

        Unlike ``store_interaction`` this raises on failure, since the caller
        is explicitly adding content.
        """
        async def _add() -> str:
            embedding = await self.embedder.embed(content)
            return await self.knowledge_repo.add_item(
                user_id=user_id,
                content=content,
                content_type=content_type,
                embedding=embedding,
                topics=topics if topics is not None else extract_topics(content),
                importance_score=self.calculate_importance(content, content_type),
                metadata=metadata,
            )

        return await self.monitor.track(
            "add_knowledge",
            _add,
            metadata={"user_id": user_id, "content_type": content_type, "content_length": len(content)},
        )

    async def delete_document(self, user_id: str, document_id: str) -> int:
        """Remove every chunk of a document and drop the user's cached contexts."""
        deleted = await self.knowledge_repo.delete_document(user_id, document_id)
        if deleted and self.cache is not None:
            await self.cache.clear_user_cache(user_id)
        logger.info(f"Deleted {deleted} chunks of document {document_id}")
        return deleted

    async def prune_knowledge(self, retention_days: Optional[int] = None, dry_run: bool = False) -> int:
        """Delete knowledge items older than the retention window."""
        days = retention_days if retention_days is not None else settings.knowledge_retention_days
        count = await self.knowledge_repo.delete_older_than(days, dry_run=dry_run)
        verb = "Would delete" if dry_run else "Deleted"
        logger.info(f"{verb} {count} knowledge items older than {days} days")
        return count

    # =========================================================================
    # Operations
    # =========================================================================

    async def get_stats(self) -> Dict[str, Any]:
        """Interaction count, response time, cache hit rate and relevancy."""
        stats: Dict[str, Any] = {
            "total_interactions": 0,
            "avg_response_time_ms": self.monitor.get_stats("rag_pipeline").avg_ms,
            "cache_hit_rate": 0.0,
            "avg_relevancy_score": (
                round(self._relevancy_total / self._relevancy_count, 4) if self._relevancy_count else 0.0
            ),
            "pending_background_tasks": self.tasks.pending,
        }

        try:
            counts = await self.knowledge_repo.count_by_type()
            stats["knowledge_items"] = counts
            stats["total_interactions"] = counts.get("conversation", 0)
        except Exception as e:
            logger.error(f"Failed to count knowledge items: {e}")

        if self.cache is not None:
            cache_stats = await self.cache.get_stats()
            stats["cache"] = cache_stats
            stats["cache_hit_rate"] = cache_stats["hit_rate"]

        stats["database"] = await self.monitor.get_database_stats()
        return stats

    async def health_check(self) -> HealthReport:
        probes = {"database": self.knowledge_repo.health_check, "embedding_api": self.embedder.health_check}
        if self.reranker is not None and self.reranker.backend_name != "fallback":
            probes["rerank_api"] = self.reranker.health_check
        return await self.monitor.health_check(probes)

    def get_config(self) -> Dict[str, Any]:
        return {
            "retrieval_strategy": self.searcher.name,
            "search": self.searcher.get_config(),
            "reranker": self.reranker.backend_name if self.reranker is not None else None,
            "semantic_cache": self.cache is not None,
            "user_context_timeout_seconds": self.user_context_timeout,
        }

    async def shutdown(self, timeout_seconds: float = 10.0) -> None:
        """Wait for background writes, close HTTP clients and flush spans."""
        await self.tasks.drain(timeout_seconds)
        await self.embedder.aclose()
        if self.reranker is not None:
            await self.reranker.aclose()
        flush_tracing()


def create_pipeline(session_factory=None, redis_client=None) -> RAGPipelineOrchestrator:
    """Wire the production pipeline from settings.

    Args:
        session_factory: Async session factory; defaults to the process-wide
            ``Database``
        redis_client: Async Redis client for the embedding cache. When omitted
            and embedding caching is enabled, the pipeline creates one and
            closes it on shutdown
    """
    from context_rag.database import get_session_factory
    from context_rag.embeddings import CachedEmbeddingProvider, OpenAIEmbeddingProvider, RedisEmbeddingCache
    from context_rag.monitoring import PrometheusOperationMetrics
    from context_rag.redis_client import create_redis_client
    from context_rag.repositories import (
        KnowledgeRepository,
        PerformanceMetricRepository,
        SemanticCacheRepository,
        UserProfileRepository,
    )
    from context_rag.reranker import create_rerank_client
    from context_rag.retrieval.hybrid import HybridSearcher
    from context_rag.tracing import init_tracing

    init_tracing()

    session_factory = session_factory or get_session_factory()
    tasks = BackgroundTaskRunner("rag_pipeline")
    prometheus = PrometheusOperationMetrics() if settings.enable_prometheus_metrics else None
    monitor = PerformanceMonitor(
        repository=PerformanceMetricRepository(session_factory),
        tasks=tasks,
        prometheus=prometheus,
    )

    owns_redis = redis_client is None and settings.embedding_cache_enabled
    if owns_redis:
        redis_client = create_redis_client()
    embedder = CachedEmbeddingProvider(
        OpenAIEmbeddingProvider(),
        RedisEmbeddingCache(redis_client, owns_client=owns_redis),
    )

    knowledge_repo = KnowledgeRepository(session_factory)
    searcher = HybridSearcher(
        embedder,
        knowledge_repo,
        monitor,
        tasks=tasks,
        profiles=UserProfileRepository(session_factory),
    )

    cache = None
    if settings.semantic_cache_enabled:
        cache = SemanticCache(embedder, SemanticCacheRepository(session_factory), monitor, tasks)

    pipeline = RAGPipelineOrchestrator(
        searcher=searcher,
        reranker=Reranker(create_rerank_client(), monitor),
        cache=cache,
        monitor=monitor,
        knowledge_repo=knowledge_repo,
        embedder=embedder,
        tasks=tasks,
    )
    logger.info(f"RAG pipeline created: {pipeline.get_config()}")
    return pipeline


__all__ = ["RAGPipelineOrchestrator", "create_pipeline"]
