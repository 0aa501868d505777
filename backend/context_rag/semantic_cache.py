"""Semantic cache for assembled retrieval contexts.

A request whose query embedding is within cosine 0.95 of a recent query by
the same user reuses that query's context instead of searching again.

The cache has two tiers:
1. In-process: a bounded dict scanned linearly for the requesting user's live
   entries. At capacity the oldest ~10% (by last use) is evicted.
2. Durable: the ``semantic_cache`` table, searched by pgvector nearest
   neighbour. A durable hit is promoted into the in-process tier.

Entries live for 30 minutes and every reuse extends that. Writes to the
durable tier happen in the background; lookup errors count as misses.

Usage:
    cache = SemanticCache(embedder, repository, monitor, tasks)

    cached = await cache.get(user_id, query)
    if cached is None:
        context = ...  # run retrieval
        await cache.set(user_id, query, context)
"""

import copy
import hashlib
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from context_rag.async_utils import BackgroundTaskRunner
from context_rag.config import settings
from context_rag.embeddings import EmbeddingProvider, cosine_similarity
from context_rag.errors import ConfigurationError, EmbeddingProviderError
from context_rag.monitoring import PerformanceMonitor
from context_rag.retrieval.base import RAGContext

logger = logging.getLogger(__name__)


def query_hash(query: str) -> str:
    """SHA256 of the whitespace/case-normalized query."""
    normalized = " ".join(query.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


@dataclass
class MemoryCacheEntry:
    """An in-process cache entry."""
    user_id: str
    query_hash: str
    query_embedding: List[float]
    result: RAGContext
    timestamp: float
    expires_at: float
    hit_count: int = 0


@dataclass
class CacheStats:
    """Statistics for semantic cache performance."""
    hits: int = 0
    memory_hits: int = 0
    durable_hits: int = 0
    misses: int = 0
    stores: int = 0
    evictions: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class InMemoryCacheTier:
    """Bounded per-process cache tier.

    Keys are ``"{user_id}:{sequence}"`` but user matching always compares the
    stored ``user_id`` field, never a key prefix.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
        eviction_fraction: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries if max_entries is not None else settings.semantic_cache_max_entries
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.semantic_cache_ttl
        self.eviction_fraction = (
            eviction_fraction if eviction_fraction is not None else settings.semantic_cache_eviction_fraction
        )
        self._clock = clock
        self._entries: Dict[str, MemoryCacheEntry] = {}
        self._sequence = itertools.count()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(
        self,
        user_id: str,
        embedding: List[float],
        threshold: float,
    ) -> Optional[Tuple[MemoryCacheEntry, float]]:
        """First live entry of this user at or above the threshold.

        Expired entries met during the scan are removed. A hit extends the
        entry's expiry and counts toward its hit_count.
        """
        now = self._clock()
        # Snapshot: concurrent requests may add or evict while we scan
        for key, entry in list(self._entries.items()):
            if entry.user_id != user_id:
                continue
            if entry.expires_at <= now:
                self._entries.pop(key, None)
                continue

            similarity = cosine_similarity(embedding, entry.query_embedding)
            if similarity >= threshold:
                entry.hit_count += 1
                entry.timestamp = now
                entry.expires_at = now + self.ttl_seconds
                return entry, similarity

        return None

    def add(
        self,
        user_id: str,
        hash_: str,
        embedding: List[float],
        result: RAGContext,
        hit_count: int = 0,
    ) -> MemoryCacheEntry:
        if len(self._entries) >= self.max_entries:
            self.evict_oldest()

        now = self._clock()
        entry = MemoryCacheEntry(
            user_id=user_id,
            query_hash=hash_,
            query_embedding=list(embedding),
            result=result,
            timestamp=now,
            expires_at=now + self.ttl_seconds,
            hit_count=hit_count,
        )
        self._entries[f"{user_id}:{next(self._sequence)}"] = entry
        return entry

    def evict_oldest(self) -> int:
        """Remove the least recently used ~10% (at least one entry)."""
        if not self._entries:
            return 0
        count = max(1, int(len(self._entries) * self.eviction_fraction))
        oldest = sorted(self._entries.items(), key=lambda item: item[1].timestamp)[:count]
        for key, _ in oldest:
            self._entries.pop(key, None)
        self.evictions += len(oldest)
        logger.debug(f"Evicted {len(oldest)} semantic cache entries")
        return len(oldest)

    def clear_user(self, user_id: str) -> int:
        keys = [key for key, entry in list(self._entries.items()) if entry.user_id == user_id]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        keys = [key for key, entry in list(self._entries.items()) if entry.expires_at <= now]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()


class SemanticCache:
    """Two-tier semantic cache of ``RAGContext`` results."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        repository=None,
        monitor: Optional[PerformanceMonitor] = None,
        tasks: Optional[BackgroundTaskRunner] = None,
        memory: Optional[InMemoryCacheTier] = None,
        similarity_threshold: Optional[float] = None,
        ttl_seconds: Optional[int] = None,
        durable_candidates: Optional[int] = None,
    ):
        self.embedder = embedder
        self.repository = repository
        self.monitor = monitor or PerformanceMonitor()
        self.tasks = tasks or BackgroundTaskRunner("semantic_cache")
        self.similarity_threshold = (
            similarity_threshold
            if similarity_threshold is not None
            else settings.semantic_cache_threshold
        )
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.semantic_cache_ttl
        self.memory = memory if memory is not None else InMemoryCacheTier(ttl_seconds=self.ttl_seconds)
        self.durable_candidates = (
            durable_candidates if durable_candidates is not None else settings.semantic_cache_db_candidates
        )
        self._stats = CacheStats()

    async def get(self, user_id: str, query: str) -> Optional[RAGContext]:
        """Cached context for a near-duplicate query, tagged as a cache hit, or None."""
        return await self.monitor.track(
            "semantic_cache_get",
            lambda: self._get(user_id, query),
            metadata={"user_id": user_id, "query_length": len(query)},
        )

    async def _get(self, user_id: str, query: str) -> Optional[RAGContext]:
        try:
            embedding = await self.embedder.embed(query)
        except (EmbeddingProviderError, ConfigurationError) as e:
            logger.warning(f"Semantic cache lookup skipped, embedding failed: {e}")
            self._stats.errors += 1
            self._stats.misses += 1
            return None

        match = self.memory.lookup(user_id, embedding, self.similarity_threshold)
        if match is not None:
            entry, similarity = match
            self._stats.hits += 1
            self._stats.memory_hits += 1
            logger.info(f"Semantic cache HIT (memory): similarity={similarity:.4f}")
            return entry.result.as_cache_hit()

        result = await self._lookup_durable(user_id, embedding)
        if result is not None:
            self._stats.hits += 1
            self._stats.durable_hits += 1
            return result.as_cache_hit()

        self._stats.misses += 1
        logger.debug("Semantic cache MISS")
        return None

    async def _lookup_durable(self, user_id: str, embedding: List[float]) -> Optional[RAGContext]:
        if self.repository is None:
            return None

        try:
            rows = await self.repository.find_similar(user_id, embedding, limit=self.durable_candidates)
        except Exception as e:
            logger.warning(f"Durable semantic cache lookup failed, treating as miss: {e}")
            self._stats.errors += 1
            return None

        for hash_, payload, similarity in rows:
            if similarity < self.similarity_threshold:
                continue
            try:
                result = RAGContext.from_dict(payload)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding undecodable cache entry: {e}")
                continue

            logger.info(f"Semantic cache HIT (durable): similarity={similarity:.4f}")
            self.tasks.spawn(
                self._record_durable_hit(user_id, hash_),
                name="semantic_cache_record_hit",
            )
            self.memory.add(user_id, hash_, embedding, result, hit_count=1)
            return result

        return None

    async def _record_durable_hit(self, user_id: str, hash_: str) -> None:
        try:
            await self.repository.record_hit(user_id, hash_, self.ttl_seconds)
        except Exception as e:
            logger.debug(f"Failed to record durable cache hit: {e}")

    async def set(self, user_id: str, query: str, result: RAGContext) -> bool:
        """Store a context for the query. Never raises.

        The in-process tier is written before returning; the durable write
        runs in the background.

        Returns:
            True if the entry was stored in the in-process tier
        """
        try:
            embedding = await self.embedder.embed(query)
        except (EmbeddingProviderError, ConfigurationError) as e:
            logger.warning(f"Semantic cache store skipped, embedding failed: {e}")
            self._stats.errors += 1
            return False

        hash_ = query_hash(query)
        # Independent of the caller's object and never tagged as a hit
        stored = copy.deepcopy(result)
        stored.metadata.cache_hit = False

        evictions_before = self.memory.evictions
        self.memory.add(user_id, hash_, embedding, stored)
        self._stats.evictions += self.memory.evictions - evictions_before
        self._stats.stores += 1

        if self.repository is not None:
            self.tasks.spawn(
                self._persist(user_id, hash_, embedding, stored.to_dict()),
                name="semantic_cache_persist",
            )
        return True

    async def _persist(self, user_id: str, hash_: str, embedding: List[float], payload: Dict[str, Any]) -> None:
        try:
            await self.repository.upsert(user_id, hash_, embedding, payload, self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Failed to persist semantic cache entry: {e}")

    async def clear_user_cache(self, user_id: str) -> int:
        """Drop every entry of one user from both tiers. Returns entries removed."""
        removed = self.memory.clear_user(user_id)
        if self.repository is not None:
            try:
                removed += await self.repository.delete_for_user(user_id)
            except Exception as e:
                logger.warning(f"Failed to clear durable cache for user: {e}")
        logger.info(f"Cleared {removed} semantic cache entries for user {user_id}")
        return removed

    async def cleanup(self) -> int:
        """Purge expired entries from both tiers. Returns entries removed."""
        removed = self.memory.purge_expired()
        if self.repository is not None:
            try:
                removed += await self.repository.delete_expired()
            except Exception as e:
                logger.warning(f"Failed to purge expired durable cache entries: {e}")
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        stats = {
            "hits": self._stats.hits,
            "memory_hits": self._stats.memory_hits,
            "durable_hits": self._stats.durable_hits,
            "misses": self._stats.misses,
            "stores": self._stats.stores,
            "evictions": self._stats.evictions,
            "errors": self._stats.errors,
            "hit_rate": round(self._stats.hit_rate, 4),
            "memory_entries": len(self.memory),
            "memory_capacity": self.memory.max_entries,
            "similarity_threshold": self.similarity_threshold,
            "ttl_seconds": self.ttl_seconds,
        }
        if self.repository is not None:
            try:
                stats["durable"] = await self.repository.get_stats()
            except Exception as e:
                stats["durable"] = {"error": str(e)}
        return stats
