"""PostgreSQL engine ownership for the context store.

Knowledge items, the durable semantic cache, user profiles and persisted
performance metrics share one PostgreSQL database with the pgvector
extension. A ``Database`` owns one async engine and its session factory;
repositories receive the factory, so several pipelines (or a test and a
script) never share connection state by accident.

Usage:
    db = Database()
    await db.create_schema()

    repo = KnowledgeRepository(session_factory=db.session_factory)
    ...
    await db.dispose()
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from context_rag.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the context store tables."""
    pass


def build_database_url(
    host: Optional[str] = None,
    port: Optional[int] = None,
    user: Optional[str] = None,
    password: Optional[str] = None,
    database: Optional[str] = None,
) -> str:
    """asyncpg URL, each part defaulting to the POSTGRES_* settings."""
    return (
        f"postgresql+asyncpg://{user or settings.postgres_user}:"
        f"{password if password is not None else settings.postgres_password}"
        f"@{host or settings.postgres_host}:{port or settings.postgres_port}"
        f"/{database or settings.postgres_db}"
    )


def _pool_options(pool_size: int) -> Dict[str, Any]:
    if pool_size <= 0:
        # Scripts and one-shot jobs hold a single connection at a time
        return {"poolclass": NullPool}
    return {
        "pool_size": pool_size,
        "max_overflow": settings.postgres_max_overflow,
        "pool_timeout": settings.postgres_pool_timeout,
        "pool_recycle": settings.postgres_pool_recycle,
        "pool_pre_ping": True,
    }


class Database:
    """One async engine plus its session factory, created on first use."""

    def __init__(self, url: Optional[str] = None, pool_size: Optional[int] = None, echo: Optional[bool] = None):
        self.url = url or build_database_url()
        self.pool_size = settings.postgres_pool_size if pool_size is None else pool_size
        self.echo = settings.postgres_echo_sql if echo is None else echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url, echo=self.echo, **_pool_options(self.pool_size))
            logger.info(f"PostgreSQL engine created (pool_size={self.pool_size})")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    async def create_schema(self) -> None:
        """Create the vector extension, tables and indexes. Idempotent."""
        # Registers the tables on Base.metadata
        from context_rag import db_models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Context store schema initialized")

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"PostgreSQL connection check failed: {e}")
            return False

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("PostgreSQL connections closed")


_default: Optional[Database] = None


def get_database() -> Database:
    """Process-wide Database built from settings.

    Repositories constructed without a session factory fall back to this.
    """
    global _default
    if _default is None:
        _default = Database()
    return _default


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_database().session_factory
