"""Per-user context retrieval: hybrid search, reranking, semantic caching and monitoring."""

__version__ = "0.1.0"
