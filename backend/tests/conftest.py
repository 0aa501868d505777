"""Pytest configuration and shared fixtures.

Every external dependency (embedding API, PostgreSQL, rerank API) is replaced
by an in-memory fake so the pipeline runs end to end without live services.

IMPORTANT: Environment variables are set BEFORE any context_rag import so
the settings object picks them up.
"""
import sys
import os

# Add backend to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# =============================================================================
# CRITICAL: Set environment variables BEFORE any imports
# =============================================================================

os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("COHERE_API_KEY", "")
os.environ.setdefault("EMBEDDING_CACHE_ENABLED", "false")
os.environ.setdefault("ENABLE_PROMETHEUS_METRICS", "false")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("METRICS_PERSIST_ENABLED", "true")

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from context_rag.async_utils import BackgroundTaskRunner
from context_rag.embeddings import EmbeddingProvider, cosine_similarity
from context_rag.errors import EmbeddingProviderError
from context_rag.monitoring import PerformanceMonitor
from context_rag.repositories.base import QueryError
from context_rag.reranker import Reranker
from context_rag.retrieval.hybrid import HybridSearcher
from context_rag.retrieval.pipeline import RAGPipelineOrchestrator
from context_rag.semantic_cache import InMemoryCacheTier, SemanticCache
from context_rag.topics import STOP_TERMS, tokenize


# =============================================================================
# Fake Embeddings
# =============================================================================

# One dimension per concept; synonyms land on the same axis
CONCEPTS = [
    {"cheap", "cheaper", "price", "prices", "pricing", "cost", "costs", "budget", "affordable"},
    {"tech", "technology", "software", "saas"},
    {"site", "sites", "publisher", "publishers", "website", "websites"},
    {"seo", "ranking", "rankings", "keyword", "keywords", "serp"},
    {"link", "links", "backlink", "backlinks"},
    {"guest", "post", "posts", "article", "articles", "content"},
    {"order", "orders", "checkout", "delivery"},
]
BIAS = 0.1
DIMENSION = len(CONCEPTS) + 1


def concept_vector(text: str) -> List[float]:
    """Deterministic embedding: 1.0 per concept mentioned, plus a small bias."""
    tokens = set(tokenize(text))
    vector = [1.0 if tokens & concept else 0.0 for concept in CONCEPTS]
    vector.append(BIAS)
    return vector


class FakeEmbeddingProvider(EmbeddingProvider):
    """Concept-vector embedder that counts calls and can be made to fail."""

    def __init__(self):
        self.model = "fake-concepts"
        self.dimension = DIMENSION
        self.calls: List[str] = []
        self.fail = False
        self.healthy = True

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingProviderError("embedding API unreachable", operation="embed")
        return concept_vector(text)

    async def health_check(self) -> bool:
        return self.healthy


# =============================================================================
# Fake Repositories
# =============================================================================

@dataclass
class FakeKnowledgeItem:
    id: uuid.UUID
    user_id: str
    content: str
    content_type: str
    embedding: Optional[List[float]]
    topics: List[str] = field(default_factory=list)
    importance_score: float = 1.0
    item_metadata: Dict[str, Any] = field(default_factory=dict)
    access_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _keyword_tokens(text: str) -> List[str]:
    return [t for t in tokenize(text) if t not in STOP_TERMS]


class FakeKnowledgeRepository:
    """In-memory stand-in for KnowledgeRepository.

    ``ignore_user_scope`` simulates a broken data layer that returns other
    users' rows, to prove the searcher still filters them out.
    """

    def __init__(self):
        self.items: List[FakeKnowledgeItem] = []
        self.semantic_error: Optional[Exception] = None
        self.keyword_error: Optional[Exception] = None
        self.add_error: Optional[Exception] = None
        self.context_delay: float = 0.0
        self.ignore_user_scope = False
        self.touched: List[str] = []

    def seed(
        self,
        user_id: str,
        content: str,
        content_type: str = "document",
        metadata: Optional[Dict[str, Any]] = None,
        topics: Optional[List[str]] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        item = FakeKnowledgeItem(
            id=uuid.uuid4(),
            user_id=user_id,
            content=content,
            content_type=content_type,
            embedding=concept_vector(content),
            topics=topics or [],
            item_metadata=metadata or {},
        )
        if created_at is not None:
            item.created_at = created_at
        self.items.append(item)
        return str(item.id)

    def _visible(self, user_id: str) -> List[FakeKnowledgeItem]:
        if self.ignore_user_scope:
            return list(self.items)
        return [item for item in self.items if item.user_id == user_id]

    async def semantic_search(self, user_id, embedding, top_k, filters=None) -> List[Tuple[Any, float]]:
        if self.semantic_error is not None:
            raise self.semantic_error
        hits = [
            (item, cosine_similarity(embedding, item.embedding))
            for item in self._visible(user_id)
            if item.embedding is not None
        ]
        hits.sort(key=lambda pair: pair[1], reverse=True)
        return hits[:top_k]

    async def keyword_search(self, user_id, query, top_k, filters=None) -> List[Tuple[Any, float]]:
        if self.keyword_error is not None:
            raise self.keyword_error
        query_tokens = set(_keyword_tokens(query))
        if not query_tokens:
            return []
        hits = []
        for item in self._visible(user_id):
            overlap = query_tokens & set(_keyword_tokens(item.content))
            if overlap:
                hits.append((item, len(overlap) / len(query_tokens)))
        hits.sort(key=lambda pair: pair[1], reverse=True)
        return hits[:top_k]

    async def add_item(
        self,
        user_id,
        content,
        content_type,
        embedding,
        topics=None,
        importance_score=1.0,
        metadata=None,
    ) -> str:
        if self.add_error is not None:
            raise self.add_error
        item = FakeKnowledgeItem(
            id=uuid.uuid4(),
            user_id=user_id,
            content=content,
            content_type=content_type,
            embedding=list(embedding) if embedding is not None else None,
            topics=list(topics or []),
            importance_score=importance_score,
            item_metadata=dict(metadata or {}),
        )
        self.items.append(item)
        return str(item.id)

    async def touch_access(self, item_ids) -> int:
        self.touched.extend(item_ids)
        for item in self.items:
            if str(item.id) in item_ids:
                item.access_count += 1
        return len(item_ids)

    async def recent_interactions(self, user_id, limit=10):
        items = [
            item for item in self.items
            if item.user_id == user_id and item.content_type == "conversation"
        ]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items[:limit]

    async def recent_topics(self, user_id, days=7, limit=10) -> List[str]:
        if self.context_delay:
            await asyncio.sleep(self.context_delay)
        topics: List[str] = []
        for item in self.items:
            if item.user_id != user_id:
                continue
            for topic in item.topics:
                if topic not in topics:
                    topics.append(topic)
        return topics[:limit]

    async def conversation_history(self, user_id, limit=5) -> List[str]:
        return [item.content for item in await self.recent_interactions(user_id, limit)]

    async def count_by_type(self, user_id=None) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in self.items:
            if user_id is None or item.user_id == user_id:
                counts[item.content_type] = counts.get(item.content_type, 0) + 1
        return counts

    async def delete_document(self, user_id, document_id) -> int:
        before = len(self.items)
        self.items = [
            item for item in self.items
            if not (item.user_id == user_id and item.item_metadata.get("document_id") == document_id)
        ]
        return before - len(self.items)

    async def delete_older_than(self, days, content_types=None, dry_run=False) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        old = [
            item for item in self.items
            if item.created_at < cutoff and (not content_types or item.content_type in content_types)
        ]
        if not dry_run:
            self.items = [item for item in self.items if item not in old]
        return len(old)

    async def health_check(self) -> bool:
        return self.semantic_error is None


class FakeCacheRepository:
    """In-memory stand-in for SemanticCacheRepository."""

    def __init__(self, clock=time.time):
        self.entries: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.find_error: Optional[Exception] = None
        self.hits_recorded: List[Tuple[str, str]] = []
        self._clock = clock

    async def find_similar(self, user_id, embedding, limit=5):
        if self.find_error is not None:
            raise self.find_error
        now = self._clock()
        rows = [
            (hash_, entry["payload"], cosine_similarity(embedding, entry["embedding"]))
            for (owner, hash_), entry in self.entries.items()
            if owner == user_id and entry["expires_at"] > now
        ]
        rows.sort(key=lambda row: row[2], reverse=True)
        return rows[:limit]

    async def upsert(self, user_id, query_hash, embedding, response, ttl_seconds) -> None:
        self.entries[(user_id, query_hash)] = {
            "embedding": list(embedding),
            "payload": response,
            "expires_at": self._clock() + ttl_seconds,
            "hit_count": 0,
        }

    async def record_hit(self, user_id, query_hash, ttl_seconds) -> None:
        self.hits_recorded.append((user_id, query_hash))
        entry = self.entries.get((user_id, query_hash))
        if entry is not None:
            entry["hit_count"] += 1
            entry["expires_at"] = self._clock() + ttl_seconds

    async def delete_for_user(self, user_id) -> int:
        keys = [key for key in self.entries if key[0] == user_id]
        for key in keys:
            del self.entries[key]
        return len(keys)

    async def delete_expired(self) -> int:
        now = self._clock()
        keys = [key for key, entry in self.entries.items() if entry["expires_at"] <= now]
        for key in keys:
            del self.entries[key]
        return len(keys)

    async def get_stats(self) -> Dict[str, Any]:
        hits = [entry["hit_count"] for entry in self.entries.values()]
        return {
            "total_entries": len(hits),
            "avg_hits": round(sum(hits) / len(hits), 2) if hits else 0.0,
        }


class FakeMetricRepository:
    """Collects persisted metrics; ``fail`` makes every write raise."""

    def __init__(self):
        self.records: List[Tuple[str, float, bool, Dict[str, Any]]] = []
        self.fail = False

    async def record(self, operation, duration_ms, success, metadata=None) -> None:
        if self.fail:
            raise QueryError("database is down", "record")
        self.records.append((operation, duration_ms, success, dict(metadata or {})))

    async def get_database_stats(self, recent_limit=10) -> Dict[str, Any]:
        return {
            "total_metrics": len(self.records),
            "recent_metrics": [r[0] for r in self.records[-recent_limit:]],
            "avg_duration_by_operation": {},
        }


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def knowledge_repo():
    return FakeKnowledgeRepository()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_repo(clock):
    return FakeCacheRepository(clock=clock)


@pytest.fixture
def metric_repo():
    return FakeMetricRepository()


@pytest.fixture
def tasks():
    return BackgroundTaskRunner("test")


@pytest.fixture
def monitor(metric_repo, tasks):
    return PerformanceMonitor(repository=metric_repo, tasks=tasks, persist=True)


@pytest.fixture
def searcher(embedder, knowledge_repo, monitor, tasks):
    return HybridSearcher(embedder, knowledge_repo, monitor, tasks=tasks, normalize_scores=True)


@pytest.fixture
def reranker(monitor):
    """Reranker without a backend: positional fallback ordering."""
    return Reranker(None, monitor)


@pytest.fixture
def cache(embedder, cache_repo, monitor, tasks, clock):
    memory = InMemoryCacheTier(max_entries=100, ttl_seconds=1800, eviction_fraction=0.1, clock=clock)
    return SemanticCache(
        embedder,
        cache_repo,
        monitor,
        tasks,
        memory=memory,
        similarity_threshold=0.95,
        ttl_seconds=1800,
    )


@pytest.fixture
def pipeline(searcher, reranker, cache, monitor, knowledge_repo, embedder, tasks):
    return RAGPipelineOrchestrator(
        searcher=searcher,
        reranker=reranker,
        cache=cache,
        monitor=monitor,
        knowledge_repo=knowledge_repo,
        embedder=embedder,
        tasks=tasks,
        user_context_timeout=0.3,
    )
