"""Embedding providers and the content-addressable embedding cache.

``OpenAIEmbeddingProvider`` calls an OpenAI-compatible ``/embeddings``
endpoint with httpx. It never retries: a failed embedding surfaces to the
caller, which decides whether the request can continue.

``CachedEmbeddingProvider`` wraps any provider with an in-process LRU and the
Redis-backed ``RedisEmbeddingCache``. Identical text always maps to the same
cache key, and cache failures only ever cost a provider call.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence

import httpx
import numpy as np
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from context_rag.circuit_breaker import CircuitBreakerOpen, embedding_breaker
from context_rag.config import settings
from context_rag.errors import ConfigurationError, EmbeddingProviderError

logger = logging.getLogger(__name__)


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine similarity between two vectors; 0.0 if either has zero norm."""
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)

    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)

    if norm1 == 0 or norm2 == 0:
        return 0.0

    return float(np.dot(a, b) / (norm1 * norm2))


class EmbeddingProvider(ABC):
    """Maps text to a fixed-dimension vector."""

    dimension: int
    model: str

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed one text.

        Raises:
            ConfigurationError: Credentials are missing
            EmbeddingProviderError: The provider failed or returned a bad vector
        """
        pass

    async def health_check(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.embedding_model
        self.dimension = dimension or settings.embedding_dimension
        self.base_url = (base_url or settings.embedding_api_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.embedding_timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._breaker = embedding_breaker(exceptions=(EmbeddingProviderError,))

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def embed(self, text: str) -> List[float]:
        if not self.api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is not configured; embeddings are unavailable",
                operation="embed",
            )

        try:
            return await self._breaker.call_async(self._request_embedding, text)
        except CircuitBreakerOpen as e:
            raise EmbeddingProviderError(str(e), operation="embed") from e

    async def _request_embedding(self, text: str) -> List[float]:
        payload = {"model": self.model, "input": text, "encoding_format": "float"}

        try:
            response = await self._get_client().post(
                f"{self.base_url}/embeddings",
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise EmbeddingProviderError(
                f"Embedding request failed: {e}",
                operation="embed",
                details={"model": self.model},
            ) from e

        if not response.is_success:
            raise EmbeddingProviderError(
                f"Embedding API returned HTTP {response.status_code}",
                operation="embed",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )

        return self._parse_embedding(response)

    def _parse_embedding(self, response: httpx.Response) -> List[float]:
        try:
            vector = response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingProviderError(
                f"Malformed embedding response: {e}",
                operation="embed",
            ) from e

        if not isinstance(vector, list) or not all(isinstance(v, (int, float)) for v in vector):
            raise EmbeddingProviderError("Embedding is not a numeric vector", operation="embed")

        if len(vector) != self.dimension:
            raise EmbeddingProviderError(
                f"Expected {self.dimension} dimensions, got {len(vector)}",
                operation="embed",
                details={"model": self.model},
            )

        return [float(v) for v in vector]

    async def health_check(self) -> bool:
        """Check that the API is reachable and the key is accepted."""
        if not self.api_key:
            return False
        try:
            response = await self._get_client().get(
                f"{self.base_url}/models",
                headers=self._headers(),
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Embedding API health check failed: {e}")
            return False

    def get_status(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "dimension": self.dimension,
            "configured": bool(self.api_key),
            "circuit_breaker": self._breaker.get_status(),
        }

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class RedisEmbeddingCache:
    """Redis-based cache for embeddings with hit/miss metrics tracking.

    Keys are the MD5 of model and text, so the same text embedded by the same
    model always resolves to one entry. Vectors are stored as JSON with a TTL.
    """

    # Cache key prefix to namespace embedding cache entries
    CACHE_PREFIX = "emb:"

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis],
        ttl_seconds: Optional[int] = None,
        enabled: Optional[bool] = None,
        owns_client: bool = False,
    ):
        self._redis_client = redis_client
        self._owns_client = owns_client
        self._ttl = ttl_seconds or settings.embedding_cache_ttl
        self._enabled = settings.embedding_cache_enabled if enabled is None else enabled

        self._hits = 0
        self._misses = 0

    def _get_cache_key(self, model: str, text: str) -> str:
        digest = hashlib.md5(f"{model}:{text}".encode("utf-8")).hexdigest()
        return f"{self.CACHE_PREFIX}{digest}"

    async def get(self, model: str, text: str) -> Optional[List[float]]:
        """Cached vector or None if absent or Redis is unavailable."""
        if not self._enabled or self._redis_client is None:
            self._misses += 1
            return None

        try:
            cache_key = self._get_cache_key(model, text)
            cached_data = await self._redis_client.get(cache_key)

            if cached_data is not None:
                vector = json.loads(cached_data)
                self._hits += 1
                logger.debug(f"Embedding cache HIT for key {cache_key[-8:]}")
                return vector

            self._misses += 1
            return None

        except RedisError as e:
            logger.warning(f"Redis error on embedding cache get: {e}")
            self._misses += 1
            return None
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to decode cached embedding: {e}")
            self._misses += 1
            return None

    async def put(self, model: str, text: str, vector: List[float]) -> bool:
        """Store a vector with TTL. Returns True on success."""
        if not self._enabled or self._redis_client is None:
            return False

        try:
            cache_key = self._get_cache_key(model, text)
            await self._redis_client.setex(cache_key, self._ttl, json.dumps(vector))
            return True
        except RedisError as e:
            logger.warning(f"Redis error on embedding cache put: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "enabled": self._enabled,
            "connected": self._redis_client is not None,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
            "ttl_seconds": self._ttl,
        }

    async def aclose(self) -> None:
        if self._redis_client is not None and self._owns_client:
            await self._redis_client.aclose()
            self._redis_client = None


class CachedEmbeddingProvider(EmbeddingProvider):
    """Memoizing wrapper: in-process LRU, then Redis, then the provider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: Optional[RedisEmbeddingCache] = None,
        memo_size: Optional[int] = None,
    ):
        self.provider = provider
        self.cache = cache
        self.model = provider.model
        self.dimension = provider.dimension
        self._memo_size = memo_size if memo_size is not None else settings.embedding_memo_size
        self._memo: "OrderedDict[str, List[float]]" = OrderedDict()

    async def embed(self, text: str) -> List[float]:
        memoized = self._memo.get(text)
        if memoized is not None:
            self._memo.move_to_end(text)
            return memoized

        vector = None
        if self.cache is not None:
            vector = await self.cache.get(self.model, text)

        if vector is None:
            vector = await self.provider.embed(text)
            if self.cache is not None:
                await self.cache.put(self.model, text, vector)

        self._remember(text, vector)
        return vector

    def _remember(self, text: str, vector: List[float]) -> None:
        if self._memo_size <= 0:
            return
        self._memo[text] = vector
        self._memo.move_to_end(text)
        while len(self._memo) > self._memo_size:
            self._memo.popitem(last=False)

    async def health_check(self) -> bool:
        return await self.provider.health_check()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "memo_entries": len(self._memo),
            "memo_size": self._memo_size,
            "redis": self.cache.get_stats() if self.cache is not None else None,
        }

    async def aclose(self) -> None:
        await self.provider.aclose()
        if self.cache is not None:
            await self.cache.aclose()
