"""Second-stage reranking of hybrid search candidates.

Typical usage:
    1. Retrieve up to 25 candidates with hybrid search
    2. Rerank them against the query with a cross-encoder
    3. Return the top-N reranked results for prompt assembly

Backends:
    - CohereRerankClient: hosted rerank API (Cohere-compatible request/response)
    - CrossEncoderRerankClient: local sentence-transformers cross-encoder,
      optionally Platt-calibrated with ``ScoreCalibrator``

Reranking never fails a request. When no backend is configured or the
backend errors, ``Reranker`` returns the first N inputs in their original
order with strictly decreasing synthetic scores, and records the event as a
separate ``rerank_fallback`` metric.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx
import numpy as np
from scipy.special import expit  # sigmoid function

from context_rag.circuit_breaker import CircuitBreakerOpen, rerank_breaker
from context_rag.config import settings
from context_rag.errors import ConfigurationError, RerankError
from context_rag.monitoring import PerformanceMonitor
from context_rag.retrieval.base import RerankResult, RetrievalCandidate

logger = logging.getLogger(__name__)

Rankable = Union[RetrievalCandidate, RerankResult]

# Output size of multi-stage reranking
MULTI_STAGE_FINAL_TOP_N = 5


class ScoreCalibrator:
    """Platt scaling calibrator for converting raw cross-encoder scores to probabilities.

        P(relevant) = sigmoid(a * score + b)

    Attributes:
        a: Slope parameter for Platt scaling (default: 1.0)
        b: Intercept parameter for Platt scaling (default: 0.0)
    """

    def __init__(self, a: float = 1.0, b: float = 0.0):
        self.a = a
        self.b = b

    def calibrate(self, raw_score: float) -> float:
        return float(expit(self.a * raw_score + self.b))

    def calibrate_batch(self, scores: List[float]) -> List[float]:
        """Calibrate a batch of scores using vectorized operations."""
        if not scores:
            return []
        arr = np.array(scores, dtype=np.float64)
        return expit(self.a * arr + self.b).tolist()

    def get_params(self) -> dict:
        return {"a": self.a, "b": self.b}

    def __repr__(self) -> str:
        return f"ScoreCalibrator(a={self.a:.4f}, b={self.b:.4f})"


class RerankClient(ABC):
    """A relevance scorer for (query, document) pairs."""

    name: str = "rerank"

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def rerank(self, query: str, documents: List[str], top_n: int) -> List[Tuple[int, float]]:
        """Score documents against the query.

        Returns:
            (input index, relevance score) pairs, most relevant first,
            at most ``top_n`` of them
        """
        pass

    async def health_check(self) -> bool:
        return self.is_configured

    async def aclose(self) -> None:
        return None


class CohereRerankClient(RerankClient):
    """Client for a Cohere-compatible ``/rerank`` endpoint."""

    name = "cohere"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.cohere_api_key
        self.model = model or settings.rerank_model
        self.url = url or settings.rerank_api_url
        self.timeout_seconds = timeout_seconds or settings.rerank_timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._breaker = rerank_breaker(exceptions=(RerankError,))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def rerank(self, query: str, documents: List[str], top_n: int) -> List[Tuple[int, float]]:
        if not self.is_configured:
            raise RerankError("COHERE_API_KEY is not configured", operation="rerank")
        try:
            return await self._breaker.call_async(self._request, query, documents, top_n)
        except CircuitBreakerOpen as e:
            raise RerankError(str(e), operation="rerank") from e

    async def _request(self, query: str, documents: List[str], top_n: int) -> List[Tuple[int, float]]:
        payload = {
            "model": self.model,
            "query": query,
            "documents": documents,
            "top_n": top_n,
            "return_documents": False,
        }
        try:
            response = await self._get_client().post(
                self.url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise RerankError(f"Rerank request failed: {e}", operation="rerank") from e

        if not response.is_success:
            raise RerankError(
                f"Rerank API returned HTTP {response.status_code}",
                operation="rerank",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )

        try:
            results = response.json()["results"]
            ranked = [(int(r["index"]), float(r["relevance_score"])) for r in results]
        except (ValueError, KeyError, TypeError) as e:
            raise RerankError(f"Malformed rerank response: {e}", operation="rerank") from e

        ranked = [(i, s) for i, s in ranked if 0 <= i < len(documents)]
        ranked.sort(key=lambda pair: pair[1], reverse=True)
        return ranked[:top_n]

    async def health_check(self) -> bool:
        """Send a one-document rerank request outside the breaker."""
        if not self.is_configured:
            return False
        try:
            response = await self._get_client().post(
                self.url,
                json={"model": self.model, "query": "ping", "documents": ["ping"], "top_n": 1},
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Rerank API health check failed: {e}")
            return False

    def get_status(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "model": self.model,
            "configured": self.is_configured,
            "circuit_breaker": self._breaker.get_status(),
        }

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class CrossEncoderRerankClient(RerankClient):
    """Local cross-encoder scoring, run in a worker thread.

    Requires the ``cross-encoder`` extra (sentence-transformers).
    """

    name = "cross_encoder"

    def __init__(
        self,
        model_name: Optional[str] = None,
        device: Optional[str] = None,
        batch_size: int = 32,
        calibrator: Optional[ScoreCalibrator] = None,
        model: Any = None,
    ):
        self.model_name = model_name or settings.reranker_model
        self.device = device or settings.reranker_device
        self.batch_size = batch_size

        if model is None:
            try:
                from sentence_transformers import CrossEncoder
            except ImportError as e:
                raise ConfigurationError(
                    "sentence-transformers is required for RERANKER_PROVIDER=cross_encoder; "
                    "install the 'cross-encoder' extra",
                    operation="reranker_init",
                ) from e
            logger.info(f"Loading cross-encoder model '{self.model_name}' on device '{self.device}'")
            model = CrossEncoder(self.model_name, device=self.device)
        self.model = model

        if calibrator is not None:
            self.calibrator = calibrator
        elif settings.reranker_calibration_enabled:
            self.calibrator = ScoreCalibrator(
                a=settings.reranker_calibration_a,
                b=settings.reranker_calibration_b,
            )
        else:
            self.calibrator = None

    def _score(self, query: str, documents: List[str]) -> List[float]:
        pairs = [(query, doc) for doc in documents]
        raw = self.model.predict(pairs, batch_size=self.batch_size)
        scores = [float(s) for s in np.asarray(raw).ravel()]
        if self.calibrator is not None:
            scores = self.calibrator.calibrate_batch(scores)
        return scores

    async def rerank(self, query: str, documents: List[str], top_n: int) -> List[Tuple[int, float]]:
        try:
            scores = await asyncio.to_thread(self._score, query, documents)
        except Exception as e:
            raise RerankError(f"Cross-encoder scoring failed: {e}", operation="rerank") from e
        ranked = sorted(enumerate(scores), key=lambda pair: pair[1], reverse=True)
        return ranked[:top_n]


def create_rerank_client(provider: Optional[str] = None) -> Optional[RerankClient]:
    """Build the configured backend, or None for positional ranking only."""
    provider = (provider or settings.reranker_provider).lower()
    if provider == "cohere":
        return CohereRerankClient()
    if provider == "cross_encoder":
        return CrossEncoderRerankClient()
    if provider == "none":
        return None
    raise ConfigurationError(f"Unknown reranker provider: {provider}", operation="reranker_init")


class Reranker:
    """Reorders candidates by query relevance and truncates to top N."""

    def __init__(self, client: Optional[RerankClient], monitor: PerformanceMonitor):
        self.client = client
        self.monitor = monitor

    @property
    def backend_name(self) -> str:
        if self.client is None or not self.client.is_configured:
            return "fallback"
        return self.client.name

    async def rerank(self, query: str, candidates: Sequence[Rankable], top_n: int = 5) -> List[RerankResult]:
        """Rerank candidates; never raises on backend failure.

        Args:
            query: The user query
            candidates: Hybrid search candidates (or earlier rerank results)
            top_n: Number of results to return

        Returns:
            At most ``top_n`` results with original and new ranks
        """
        return await self.monitor.track(
            "rerank",
            lambda: self._rerank(query, list(candidates), top_n),
            metadata={"candidates": len(candidates), "top_n": top_n, "backend": self.backend_name},
        )

    async def _rerank(self, query: str, candidates: List[Rankable], top_n: int) -> List[RerankResult]:
        if not candidates or top_n <= 0:
            return []

        if self.client is None or not self.client.is_configured:
            logger.debug("No rerank backend configured, using positional fallback")
            return self._fallback_with_metric(candidates, top_n, reason="unconfigured")

        try:
            ranked = await self.client.rerank(query, [c.content for c in candidates], top_n)
        except Exception as e:
            logger.warning(f"Rerank backend '{self.client.name}' failed, using fallback: {e}")
            return self._fallback_with_metric(candidates, top_n, reason=str(e))

        results = []
        for new_rank, (index, score) in enumerate(ranked):
            candidate = candidates[index]
            metadata = dict(candidate.metadata)
            metadata["reranker"] = self.client.name
            metadata["pre_rerank_score"] = candidate.score
            results.append(
                RerankResult(
                    id=candidate.id,
                    content=candidate.content,
                    score=score,
                    original_rank=index,
                    new_rank=new_rank,
                    metadata=metadata,
                    user_id=candidate.user_id,
                )
            )

        if results:
            logger.debug(
                f"Reranked {len(candidates)} candidates -> {len(results)} "
                f"(top score {results[0].score:.3f})"
            )
        return results

    def _fallback_with_metric(self, candidates: List[Rankable], top_n: int, reason: str) -> List[RerankResult]:
        self.monitor.record(
            "rerank_fallback",
            0.0,
            True,
            {"candidates": len(candidates), "top_n": top_n, "reason": reason[:200]},
        )
        return self.fallback_rerank(candidates, top_n)

    @staticmethod
    def fallback_rerank(candidates: Sequence[Rankable], top_n: int) -> List[RerankResult]:
        """First ``top_n`` candidates in input order, scored 1 - i/top_n."""
        results = []
        for index, candidate in enumerate(candidates[:top_n]):
            metadata = dict(candidate.metadata)
            metadata["reranker"] = "fallback"
            metadata["pre_rerank_score"] = candidate.score
            results.append(
                RerankResult(
                    id=candidate.id,
                    content=candidate.content,
                    score=1.0 - index / top_n,
                    original_rank=index,
                    new_rank=index,
                    metadata=metadata,
                    user_id=candidate.user_id,
                )
            )
        return results

    async def multi_stage_rerank(
        self,
        query: str,
        candidates: Sequence[Rankable],
        stages: int = 2,
    ) -> List[RerankResult]:
        """Rerank large candidate sets in successive batches.

        The candidates are split into ``stages`` batches. Each stage reranks
        the survivors of the previous stage together with the next batch and
        keeps one batch worth of results. The final output holds at most 5
        results, and ``original_rank`` always refers to the position in
        ``candidates``.
        """
        candidates = list(candidates)
        if not candidates:
            return []

        stages = max(1, stages)
        batch_size = math.ceil(len(candidates) / stages)
        positions = {c.id: i for i, c in enumerate(candidates)}

        survivors: List[Rankable] = []
        for stage in range(stages):
            batch = candidates[stage * batch_size:(stage + 1) * batch_size]
            if not batch and stage > 0:
                break
            pool = survivors + batch
            survivors = await self.rerank(query, pool, top_n=batch_size)

        final = survivors[:MULTI_STAGE_FINAL_TOP_N]
        for new_rank, result in enumerate(final):
            result.original_rank = positions.get(result.id, result.original_rank)
            result.new_rank = new_rank
        return final

    async def health_check(self) -> bool:
        if self.client is None:
            return True
        try:
            return await self.client.health_check()
        except Exception as e:
            logger.warning(f"Rerank health check failed: {e}")
            return False

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
