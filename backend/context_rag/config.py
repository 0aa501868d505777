"""Configuration management"""
import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # PostgreSQL (knowledge store, durable semantic cache, metrics)
    postgres_host: str = os.getenv("POSTGRES_HOST", "localhost")
    postgres_port: int = int(os.getenv("POSTGRES_PORT", 5432))
    postgres_user: str = os.getenv("POSTGRES_USER", "rag")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "")
    postgres_db: str = os.getenv("POSTGRES_DB", "context_rag")
    postgres_pool_size: int = int(os.getenv("POSTGRES_POOL_SIZE", 5))
    postgres_max_overflow: int = int(os.getenv("POSTGRES_MAX_OVERFLOW", 10))
    postgres_pool_timeout: int = int(os.getenv("POSTGRES_POOL_TIMEOUT", 30))
    postgres_pool_recycle: int = int(os.getenv("POSTGRES_POOL_RECYCLE", 1800))
    postgres_echo_sql: bool = os.getenv("POSTGRES_ECHO_SQL", "false").lower() == "true"

    # Redis (embedding cache)
    redis_host: str = os.getenv("REDIS_HOST", "localhost")
    redis_port: int = int(os.getenv("REDIS_PORT", 6379))
    redis_db: int = int(os.getenv("REDIS_DB", 0))
    redis_max_connections: int = int(os.getenv("REDIS_MAX_CONNECTIONS", 20))
    redis_socket_timeout: float = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0"))

    # Embeddings - OpenAI-compatible endpoint
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    embedding_api_url: str = os.getenv("EMBEDDING_API_URL", "https://api.openai.com/v1")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", 1536))
    embedding_timeout_seconds: float = float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "10.0"))
    embedding_cache_enabled: bool = os.getenv("EMBEDDING_CACHE_ENABLED", "true").lower() == "true"
    embedding_cache_ttl: int = int(os.getenv("EMBEDDING_CACHE_TTL", 86400))  # 24 hours
    embedding_memo_size: int = int(os.getenv("EMBEDDING_MEMO_SIZE", 512))  # In-process LRU entries

    # Reranker - "cohere" (hosted API), "cross_encoder" (local model) or "none"
    reranker_provider: str = os.getenv("RERANKER_PROVIDER", "cohere")
    cohere_api_key: str = os.getenv("COHERE_API_KEY", "")
    rerank_api_url: str = os.getenv("RERANK_API_URL", "https://api.cohere.ai/v1/rerank")
    rerank_model: str = os.getenv("RERANK_MODEL", "rerank-english-v3.0")
    rerank_timeout_seconds: float = float(os.getenv("RERANK_TIMEOUT_SECONDS", "5.0"))
    reranker_model: str = os.getenv("RERANKER_MODEL", "cross-encoder/ms-marco-MiniLM-L-6-v2")
    reranker_device: str = os.getenv("RERANKER_DEVICE", "cpu")

    # Score calibration for cross-encoder logits (Platt scaling)
    reranker_calibration_enabled: bool = os.getenv("RERANKER_CALIBRATION_ENABLED", "true").lower() == "true"
    reranker_calibration_a: float = float(os.getenv("RERANKER_CALIBRATION_A", "1.0"))
    reranker_calibration_b: float = float(os.getenv("RERANKER_CALIBRATION_B", "0.0"))

    # Hybrid search - weighted fusion of pgvector similarity and full-text rank
    hybrid_semantic_weight: float = float(os.getenv("HYBRID_SEMANTIC_WEIGHT", "0.7"))
    hybrid_keyword_weight: float = float(os.getenv("HYBRID_KEYWORD_WEIGHT", "0.3"))
    hybrid_candidate_pool: int = int(os.getenv("HYBRID_CANDIDATE_POOL", 25))
    hybrid_min_similarity: float = float(os.getenv("HYBRID_MIN_SIMILARITY", "0.5"))
    hybrid_normalize_scores: bool = os.getenv("HYBRID_NORMALIZE_SCORES", "true").lower() == "true"
    fulltext_language: str = os.getenv("FULLTEXT_LANGUAGE", "english")

    # Semantic cache - in-process tier backed by a pgvector table
    semantic_cache_enabled: bool = os.getenv("SEMANTIC_CACHE_ENABLED", "true").lower() == "true"
    semantic_cache_threshold: float = float(os.getenv("SEMANTIC_CACHE_THRESHOLD", "0.95"))
    semantic_cache_ttl: int = int(os.getenv("SEMANTIC_CACHE_TTL", 1800))  # 30 minutes
    semantic_cache_max_entries: int = int(os.getenv("SEMANTIC_CACHE_MAX_ENTRIES", 1000))
    semantic_cache_eviction_fraction: float = float(os.getenv("SEMANTIC_CACHE_EVICTION_FRACTION", "0.1"))
    semantic_cache_db_candidates: int = int(os.getenv("SEMANTIC_CACHE_DB_CANDIDATES", 5))

    # Monitoring
    slow_operation_ms: float = float(os.getenv("SLOW_OPERATION_MS", "1000"))
    metrics_buffer_size: int = int(os.getenv("METRICS_BUFFER_SIZE", 1000))
    metrics_retention_seconds: int = int(os.getenv("METRICS_RETENTION_SECONDS", 3600))
    metrics_persist_enabled: bool = os.getenv("METRICS_PERSIST_ENABLED", "true").lower() == "true"
    enable_prometheus_metrics: bool = os.getenv("ENABLE_PROMETHEUS_METRICS", "false").lower() == "true"
    health_max_avg_latency_ms: float = float(os.getenv("HEALTH_MAX_AVG_LATENCY_MS", "2000"))
    health_min_success_rate: float = float(os.getenv("HEALTH_MIN_SUCCESS_RATE", "95"))
    health_max_p95_latency_ms: float = float(os.getenv("HEALTH_MAX_P95_LATENCY_MS", "5000"))

    # Tracing (OpenTelemetry)
    tracing_enabled: bool = os.getenv("TRACING_ENABLED", "false").lower() == "true"
    tracing_service_name: str = os.getenv("TRACING_SERVICE_NAME", "context-rag")
    tracing_exporter: str = os.getenv("TRACING_EXPORTER", "console")  # console or otlp
    tracing_otlp_endpoint: str = os.getenv("TRACING_OTLP_ENDPOINT", "http://localhost:4317")
    tracing_sample_rate: float = float(os.getenv("TRACING_SAMPLE_RATE", "1.0"))

    # Pipeline
    user_context_timeout_seconds: float = float(os.getenv("USER_CONTEXT_TIMEOUT_SECONDS", "0.3"))
    recent_topics_days: int = int(os.getenv("RECENT_TOPICS_DAYS", 7))
    recent_topics_limit: int = int(os.getenv("RECENT_TOPICS_LIMIT", 10))
    conversation_history_limit: int = int(os.getenv("CONVERSATION_HISTORY_LIMIT", 5))
    knowledge_retention_days: int = int(os.getenv("KNOWLEDGE_RETENTION_DAYS", 365))

    log_level: str = os.getenv("LOG_LEVEL", "info")

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
