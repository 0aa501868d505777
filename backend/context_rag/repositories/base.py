"""Base repository pattern implementation.

Repositories wrap every driver error in a ``RepositoryError`` subclass so
callers can degrade on data-store failures without catching SQLAlchemy or
asyncpg exceptions directly.

Each operation opens its own short-lived session from the injected factory.
The hybrid search runs its two legs concurrently, and an AsyncSession must
never be shared between concurrent tasks.

Usage:
    class MyRepository(AsyncSessionRepository):
        async def count(self) -> int:
            async with self.session() as session:
                ...
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository operations."""

    def __init__(self, message: str, operation: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.details = details or {}

    def __str__(self) -> str:
        if self.operation:
            return f"[{self.operation}] {self.message}"
        return self.message


class QueryError(RepositoryError):
    """Raised when a query fails to execute."""
    pass


@dataclass
class RepositoryContext:
    """Context information attached to repository log records."""
    operation_id: Optional[str] = None
    trace_id: Optional[str] = None


class BaseRepository(ABC):
    """Abstract base class for repositories.

    Provides logging helpers with repository context and requires a
    health check so the monitor can probe every data store uniformly.
    """

    def __init__(self, context: Optional[RepositoryContext] = None):
        self._context = context or RepositoryContext()
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def context(self) -> RepositoryContext:
        return self._context

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the data store is healthy and responsive."""
        pass

    def _log_operation(self, operation: str, **kwargs) -> None:
        """Log repository operation with context."""
        extra = {
            "operation": operation,
            "repository": self.__class__.__name__,
            **kwargs,
        }
        if self._context.operation_id:
            extra["operation_id"] = self._context.operation_id
        if self._context.trace_id:
            extra["trace_id"] = self._context.trace_id

        self._logger.debug(f"Repository operation: {operation}", extra=extra)

    def _log_error(self, operation: str, error: Exception, **kwargs) -> None:
        """Log repository error with context."""
        extra = {
            "operation": operation,
            "repository": self.__class__.__name__,
            "error_type": type(error).__name__,
            **kwargs,
        }
        if self._context.operation_id:
            extra["operation_id"] = self._context.operation_id

        self._logger.error(
            f"Repository error in {operation}: {error}",
            extra=extra,
            exc_info=True,
        )


class AsyncSessionRepository(BaseRepository):
    """Base repository for SQLAlchemy async session-based data access."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        context: Optional[RepositoryContext] = None,
    ):
        super().__init__(context)
        self._session_factory = session_factory

    def _get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            # Import here to avoid circular imports
            from context_rag.database import get_session_factory
            self._session_factory = get_session_factory()
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session that commits on success and rolls back on error."""
        async with self._get_session_factory()() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        """Check database connection health."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            self._log_error("health_check", e)
            return False
