"""Circuit breaker for the embedding and rerank HTTP APIs.

States:
- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are rejected with ``CircuitBreakerOpen`` until the reset
  timeout elapses
- HALF_OPEN: trial calls pass through; enough successes close the circuit,
  any failure reopens it

Every API client builds its own breaker (``embedding_breaker``,
``rerank_breaker``). Breakers are used from a single event loop and keep no
locks.

Usage:
    breaker = rerank_breaker(exceptions=(RerankError,))
    ranked = await breaker.call_async(self._post_rerank, payload)
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Breaker settings.

    Attributes:
        name: Label used in logs and status output
        failure_threshold: Consecutive failures that open the circuit
        success_threshold: Half-open successes that close it again
        reset_timeout_seconds: Time spent open before a trial call is allowed
        retry_attempts: Attempts per call; 1 disables retries
        retry_min_wait: Lower bound of the exponential backoff (seconds)
        retry_max_wait: Upper bound of the exponential backoff (seconds)
        retry_multiplier: Backoff multiplier
        exceptions: Exception types that count as failures and are retried
    """
    name: str
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout_seconds: float = 30.0
    retry_attempts: int = 1
    retry_min_wait: float = 0.5
    retry_max_wait: float = 5.0
    retry_multiplier: float = 2.0
    exceptions: tuple = field(default_factory=lambda: (Exception,))


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    current_failures: int = 0
    current_successes: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    state_changes: int = 0


class CircuitBreakerOpen(Exception):
    """Raised instead of calling a service whose circuit is open."""

    def __init__(self, breaker_name: str, time_until_retry: float):
        self.breaker_name = breaker_name
        self.time_until_retry = time_until_retry
        super().__init__(
            f"Circuit breaker '{breaker_name}' is OPEN. "
            f"Retry in {time_until_retry:.1f} seconds."
        )


class CircuitBreaker:
    """Async circuit breaker with tenacity retries inside each call.

    Only exceptions listed in ``config.exceptions`` are retried and counted
    as failures; anything else propagates and leaves the state untouched.
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._stats = CircuitBreakerStats()

    def _seconds_until_retry(self) -> float:
        return max(0.0, self.config.reset_timeout_seconds - (self._clock() - self._opened_at))

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._seconds_until_retry() <= 0:
            self._set_state(CircuitState.HALF_OPEN)
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(**vars(self._stats))

    def _set_state(self, new_state: CircuitState) -> None:
        logger.warning(f"Circuit breaker '{self.config.name}': {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._stats.state_changes += 1
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        self._stats.current_successes = 0

    def _on_success(self) -> None:
        stats = self._stats
        stats.successful_calls += 1
        stats.last_success_time = time.time()
        stats.current_failures = 0
        stats.current_successes += 1
        if self._state is CircuitState.HALF_OPEN and stats.current_successes >= self.config.success_threshold:
            self._set_state(CircuitState.CLOSED)

    def _on_failure(self, error: BaseException) -> None:
        stats = self._stats
        stats.failed_calls += 1
        stats.last_failure_time = time.time()
        stats.current_failures += 1
        stats.current_successes = 0
        logger.warning(
            f"Circuit breaker '{self.config.name}' failure "
            f"{stats.current_failures}/{self.config.failure_threshold}: {error}"
        )
        if self._state is CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and stats.current_failures >= self.config.failure_threshold:
            self._set_state(CircuitState.OPEN)

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func(*args, **kwargs)`` under breaker protection.

        Raises:
            CircuitBreakerOpen: The circuit is open; ``func`` was not called
            Exception: Whatever ``func`` raised on its last attempt
        """
        self._stats.total_calls += 1
        if self.state is CircuitState.OPEN:
            self._stats.rejected_calls += 1
            raise CircuitBreakerOpen(self.config.name, self._seconds_until_retry())

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(
                multiplier=self.config.retry_multiplier,
                min=self.config.retry_min_wait,
                max=self.config.retry_max_wait,
            ),
            retry=retry_if_exception_type(self.config.exceptions),
            reraise=True,
        )
        try:
            result = await retrying(func, *args, **kwargs)
        except self.config.exceptions as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        logger.info(f"Circuit breaker '{self.config.name}' reset")

    def get_status(self) -> Dict[str, Any]:
        state = self.state
        return {
            "name": self.config.name,
            "state": state.value,
            "stats": {
                "total_calls": self._stats.total_calls,
                "successful_calls": self._stats.successful_calls,
                "failed_calls": self._stats.failed_calls,
                "rejected_calls": self._stats.rejected_calls,
                "current_failures": self._stats.current_failures,
            },
            "time_until_retry": self._seconds_until_retry() if state is CircuitState.OPEN else None,
            "state_changes": self._stats.state_changes,
        }


def embedding_breaker(exceptions: tuple = (Exception,)) -> CircuitBreaker:
    """Breaker for the embedding API; one attempt per call, no retries."""
    return CircuitBreaker(
        CircuitBreakerConfig(
            name="embedding_api",
            failure_threshold=5,
            reset_timeout_seconds=30.0,
            retry_attempts=1,
            exceptions=exceptions,
        )
    )


def rerank_breaker(exceptions: tuple = (Exception,)) -> CircuitBreaker:
    """Breaker for the hosted rerank API; opens after 3 consecutive failures."""
    return CircuitBreaker(
        CircuitBreakerConfig(
            name="rerank_api",
            failure_threshold=3,
            reset_timeout_seconds=60.0,
            retry_attempts=1,
            exceptions=exceptions,
        )
    )
