"""Test suite for the context retrieval core.

All external services are replaced by the in-memory fakes in conftest.py:
- Embedding API: FakeEmbeddingProvider (deterministic concept vectors)
- PostgreSQL: FakeKnowledgeRepository, FakeCacheRepository, FakeMetricRepository
- Rerank API: httpx.MockTransport or no backend (positional fallback)

Run tests with:
    pytest                          # Run all tests
    pytest -m "not slow"            # Skip slow tests
    pytest --cov=context_rag        # With coverage
"""
