"""Test suite for the two-tier semantic cache.

The embedding model and the durable table are replaced by the in-memory fakes
from conftest; the in-process tier runs on a manually advanced clock.
"""

import pytest

from context_rag.retrieval.base import ContextMetadata, RAGContext, RerankResult, UserContext
from context_rag.semantic_cache import InMemoryCacheTier, SemanticCache, query_hash

from tests.conftest import FakeClock, concept_vector


def _context(query: str, doc_id: str = "doc-1") -> RAGContext:
    return RAGContext(
        query=query,
        relevant_docs=[
            RerankResult(id=doc_id, content="Pricing guide for tech publishers", score=0.9,
                         original_rank=0, new_rank=0, user_id="user-a"),
        ],
        user_context=UserContext(recent_topics=["pricing"]),
        metadata=ContextMetadata(retrieval_time_ms=12.0, total_docs=3, relevancy_score=0.9),
    )


# =============================================================================
# Query Hashing
# =============================================================================

class TestQueryHash:
    def test_normalizes_case_and_whitespace(self):
        assert query_hash("Cheap  Tech Sites ") == query_hash("cheap tech sites")

    def test_different_queries_differ(self):
        assert query_hash("cheap tech sites") != query_hash("seo tips")


# =============================================================================
# In-process Tier
# =============================================================================

class TestInMemoryCacheTier:
    """Tests for lookup, TTL and eviction of the in-process tier."""

    def test_lookup_respects_threshold(self):
        tier = InMemoryCacheTier(max_entries=10, ttl_seconds=60, clock=FakeClock())
        tier.add("user-a", "h1", concept_vector("cheap tech sites"), _context("cheap tech sites"))

        assert tier.lookup("user-a", concept_vector("cheap tech publishers"), 0.95) is not None
        assert tier.lookup("user-a", concept_vector("seo rankings"), 0.95) is None

    def test_lookup_only_matches_owner(self):
        tier = InMemoryCacheTier(max_entries=10, ttl_seconds=60, clock=FakeClock())
        tier.add("user-a", "h1", concept_vector("cheap tech sites"), _context("cheap tech sites"))

        assert tier.lookup("user-b", concept_vector("cheap tech sites"), 0.95) is None

    def test_user_prefix_does_not_match_other_user(self):
        tier = InMemoryCacheTier(max_entries=10, ttl_seconds=60, clock=FakeClock())
        tier.add("user-10", "h1", concept_vector("cheap tech sites"), _context("cheap tech sites"))

        assert tier.lookup("user-1", concept_vector("cheap tech sites"), 0.95) is None

    def test_expired_entry_never_returned(self):
        clock = FakeClock()
        tier = InMemoryCacheTier(max_entries=10, ttl_seconds=60, clock=clock)
        tier.add("user-a", "h1", concept_vector("cheap tech sites"), _context("cheap tech sites"))

        clock.advance(61)

        assert tier.lookup("user-a", concept_vector("cheap tech sites"), 0.95) is None
        assert len(tier) == 0

    def test_hit_extends_expiry(self):
        clock = FakeClock()
        tier = InMemoryCacheTier(max_entries=10, ttl_seconds=60, clock=clock)
        tier.add("user-a", "h1", concept_vector("cheap tech sites"), _context("cheap tech sites"))

        clock.advance(50)
        entry, _ = tier.lookup("user-a", concept_vector("cheap tech sites"), 0.95)
        clock.advance(50)

        assert tier.lookup("user-a", concept_vector("cheap tech sites"), 0.95) is not None
        assert entry.hit_count == 2

    def test_eviction_removes_oldest_tenth(self):
        clock = FakeClock()
        tier = InMemoryCacheTier(max_entries=20, ttl_seconds=600, eviction_fraction=0.1, clock=clock)
        for i in range(20):
            tier.add("user-a", f"h{i}", [float(i), 1.0], _context(f"q{i}"))
            clock.advance(1)

        tier.add("user-a", "h-new", [1.0, 0.0], _context("new"))

        hashes = {entry.query_hash for entry in tier._entries.values()}
        assert len(tier) == 19
        assert "h0" not in hashes and "h1" not in hashes
        assert "h2" in hashes and "h-new" in hashes
        assert tier.evictions == 2

    def test_eviction_removes_at_least_one(self):
        tier = InMemoryCacheTier(max_entries=3, ttl_seconds=600, eviction_fraction=0.1, clock=FakeClock())
        for i in range(4):
            tier.add("user-a", f"h{i}", [1.0], _context(f"q{i}"))

        assert len(tier) == 3

    def test_purge_and_clear_user(self):
        clock = FakeClock()
        tier = InMemoryCacheTier(max_entries=10, ttl_seconds=60, clock=clock)
        tier.add("user-a", "h1", [1.0], _context("a"))
        tier.add("user-b", "h2", [1.0], _context("b"))

        assert tier.clear_user("user-a") == 1
        clock.advance(120)
        assert tier.purge_expired() == 1
        assert len(tier) == 0


# =============================================================================
# Semantic Cache
# =============================================================================

class TestSemanticCache:
    """Tests for the two-tier cache facade."""

    @pytest.mark.asyncio
    async def test_round_trip_near_duplicate(self, cache):
        await cache.set("user-a", "show me cheap tech sites", _context("show me cheap tech sites"))

        cached = await cache.get("user-a", "show cheap tech publishers")

        assert cached is not None
        assert cached.metadata.cache_hit is True
        assert cached.relevant_docs[0].id == "doc-1"

    @pytest.mark.asyncio
    async def test_stored_copy_is_not_tagged(self, cache):
        original = _context("cheap tech sites")
        await cache.set("user-a", "cheap tech sites", original)

        cached = await cache.get("user-a", "cheap tech sites")

        assert cached.metadata.cache_hit is True
        assert original.metadata.cache_hit is False

    @pytest.mark.asyncio
    async def test_mutating_stored_or_returned_context_does_not_leak(self, cache):
        original = _context("cheap tech sites")
        await cache.set("user-a", "cheap tech sites", original)

        original.relevant_docs[0].metadata["tampered"] = True
        original.user_context.recent_topics.append("seo")
        first = await cache.get("user-a", "cheap tech sites")
        first.relevant_docs.clear()
        first.user_context.preferences["tone"] = "casual"

        second = await cache.get("user-a", "cheap tech sites")

        assert [d.id for d in second.relevant_docs] == ["doc-1"]
        assert second.relevant_docs[0].metadata == {}
        assert second.user_context.recent_topics == ["pricing"]
        assert second.user_context.preferences == {}

    @pytest.mark.asyncio
    async def test_threshold_miss(self, cache):
        await cache.set("user-a", "cheap tech sites", _context("cheap tech sites"))

        assert await cache.get("user-a", "seo keyword rankings") is None

    @pytest.mark.asyncio
    async def test_no_cross_user_hits(self, cache, tasks):
        await cache.set("user-a", "cheap tech sites", _context("cheap tech sites"))
        await tasks.drain(1.0)

        assert await cache.get("user-b", "cheap tech sites") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry_in_both_tiers(self, cache, clock, tasks):
        await cache.set("user-a", "cheap tech sites", _context("cheap tech sites"))
        await tasks.drain(1.0)

        clock.advance(1801)

        assert await cache.get("user-a", "cheap tech sites") is None

    @pytest.mark.asyncio
    async def test_durable_write_happens_in_background(self, cache, cache_repo, tasks):
        await cache.set("user-a", "cheap tech sites", _context("cheap tech sites"))
        await tasks.drain(1.0)

        key = ("user-a", query_hash("cheap tech sites"))
        assert key in cache_repo.entries
        assert cache_repo.entries[key]["payload"]["metadata"]["cache_hit"] is False

    @pytest.mark.asyncio
    async def test_durable_hit_promoted_to_memory(self, embedder, cache_repo, monitor, tasks, clock):
        await cache_repo.upsert(
            "user-a",
            query_hash("cheap tech sites"),
            concept_vector("cheap tech sites"),
            _context("cheap tech sites").to_dict(),
            1800,
        )
        memory = InMemoryCacheTier(max_entries=10, ttl_seconds=1800, clock=clock)
        cache = SemanticCache(embedder, cache_repo, monitor, tasks, memory=memory)

        cached = await cache.get("user-a", "cheap tech publishers")
        await tasks.drain(1.0)

        assert cached is not None and cached.metadata.cache_hit is True
        assert len(memory) == 1
        assert cache_repo.hits_recorded == [("user-a", query_hash("cheap tech sites"))]

        stats = await cache.get_stats()
        assert stats["durable_hits"] == 1

    @pytest.mark.asyncio
    async def test_durable_errors_are_misses(self, cache, cache_repo):
        cache_repo.find_error = RuntimeError("database is down")

        assert await cache.get("user-a", "cheap tech sites") is None

    @pytest.mark.asyncio
    async def test_embedding_failure_is_a_miss(self, cache, embedder):
        embedder.fail = True

        assert await cache.get("user-a", "cheap tech sites") is None
        assert await cache.set("user-a", "cheap tech sites", _context("cheap tech sites")) is False

    @pytest.mark.asyncio
    async def test_clear_user_cache(self, cache, cache_repo, tasks):
        await cache.set("user-a", "cheap tech sites", _context("cheap tech sites"))
        await cache.set("user-b", "cheap tech sites", _context("cheap tech sites"))
        await tasks.drain(1.0)

        removed = await cache.clear_user_cache("user-a")

        assert removed == 2
        assert await cache.get("user-a", "cheap tech sites") is None
        assert await cache.get("user-b", "cheap tech sites") is not None

    @pytest.mark.asyncio
    async def test_cleanup_purges_both_tiers(self, cache, cache_repo, clock, tasks):
        await cache.set("user-a", "cheap tech sites", _context("cheap tech sites"))
        await tasks.drain(1.0)

        clock.advance(1801)

        assert await cache.cleanup() == 2
        assert len(cache.memory) == 0
        assert cache_repo.entries == {}

    @pytest.mark.asyncio
    async def test_stats(self, cache):
        await cache.set("user-a", "cheap tech sites", _context("cheap tech sites"))
        await cache.get("user-a", "cheap tech sites")
        await cache.get("user-a", "order delivery")

        stats = await cache.get_stats()

        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["memory_entries"] == 1
        assert "durable" in stats
