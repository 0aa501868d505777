"""Async Redis client construction for the embedding cache.

Each call builds a client over its own connection pool; the caller that
creates the client closes it. Responses are decoded to ``str`` because
cached vectors are stored as JSON text.

Usage:
    client = create_redis_client()
    cache = RedisEmbeddingCache(client)
    ...
    await client.aclose()
"""
import logging
from typing import Optional

import redis.asyncio as aioredis

from context_rag.config import settings

logger = logging.getLogger(__name__)


def create_redis_client(
    host: Optional[str] = None,
    port: Optional[int] = None,
    db: Optional[int] = None,
) -> aioredis.Redis:
    """Async client with connection limits and timeouts from settings."""
    host = host or settings.redis_host
    port = port or settings.redis_port
    pool = aioredis.ConnectionPool(
        host=host,
        port=port,
        db=settings.redis_db if db is None else db,
        max_connections=settings.redis_max_connections,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
        decode_responses=True,
    )
    logger.info(f"Redis client created for {host}:{port} (max_connections={settings.redis_max_connections})")
    return aioredis.Redis(connection_pool=pool)

