"""Exception hierarchy for the retrieval core.

Every error carries the operation that raised it and an optional details bag,
so callers can log a single line and still keep the structured context.
"""

from typing import Any, Dict, Optional


class ContextRAGError(Exception):
    """Base exception for retrieval-core failures."""

    def __init__(self, message: str, operation: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.details = details or {}

    def __str__(self) -> str:
        if self.operation:
            return f"[{self.operation}] {self.message}"
        return self.message


class ConfigurationError(ContextRAGError):
    """Raised at first use when a required credential or setting is missing."""
    pass


class EmbeddingProviderError(ContextRAGError):
    """Raised when the embedding API fails or returns an unusable vector."""
    pass


class RerankError(ContextRAGError):
    """Raised by rerank backends; the reranker converts it into a fallback."""
    pass


class RetrievalError(ContextRAGError):
    """Raised when a context request cannot be served.

    ``reason`` is a short machine-readable code such as ``embedding_failed``
    or ``datastore_unavailable``.
    """

    def __init__(
        self,
        message: str,
        reason: str = "unknown",
        operation: str = "get_context",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, operation, details)
        self.reason = reason
