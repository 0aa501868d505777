"""Repository for persisted performance metrics."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, desc, func, select

from context_rag.db_models import PerformanceMetric
from context_rag.repositories.base import AsyncSessionRepository, QueryError, RepositoryContext

logger = logging.getLogger(__name__)


class PerformanceMetricRepository(AsyncSessionRepository):
    """Append-only storage for monitor records."""

    def __init__(self, session_factory=None, context: Optional[RepositoryContext] = None):
        super().__init__(session_factory, context)

    async def record(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        metadata = metadata or {}
        query_length = metadata.get("query_length")
        row = PerformanceMetric(
            operation=operation,
            duration_ms=duration_ms,
            success=success,
            user_id=metadata.get("user_id"),
            query_length=query_length if isinstance(query_length, int) else None,
            metric_metadata=metadata,
        )
        try:
            async with self.session() as session:
                session.add(row)
        except Exception as e:
            # Monitoring callers swallow this; keep the log at debug level
            logger.debug(f"Failed to persist metric for {operation}: {e}")
            raise QueryError(str(e), "record")

    async def get_database_stats(self, recent_limit: int = 10) -> Dict[str, Any]:
        """Total rows, the newest records and the average duration per operation."""
        self._log_operation("get_database_stats")

        try:
            async with self.session() as session:
                total = (await session.execute(select(func.count(PerformanceMetric.id)))).scalar() or 0

                recent_rows = (
                    await session.execute(
                        select(PerformanceMetric)
                        .order_by(desc(PerformanceMetric.timestamp))
                        .limit(recent_limit)
                    )
                ).scalars().all()

                averages = (
                    await session.execute(
                        select(
                            PerformanceMetric.operation,
                            func.avg(PerformanceMetric.duration_ms),
                            func.count(PerformanceMetric.id),
                        ).group_by(PerformanceMetric.operation)
                    )
                ).all()

            return {
                "total_metrics": int(total),
                "recent_metrics": [
                    {
                        "operation": row.operation,
                        "duration_ms": row.duration_ms,
                        "success": row.success,
                        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
                    }
                    for row in recent_rows
                ],
                "avg_duration_by_operation": {
                    op: {"avg_ms": round(float(avg or 0.0), 2), "count": int(count)}
                    for op, avg, count in averages
                },
            }
        except Exception as e:
            self._log_error("get_database_stats", e)
            raise QueryError(str(e), "get_database_stats")

    async def delete_older_than(self, days: int) -> int:
        self._log_operation("delete_older_than", days=days)

        try:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)
            async with self.session() as session:
                result = await session.execute(
                    delete(PerformanceMetric).where(PerformanceMetric.timestamp < cutoff)
                )
                return result.rowcount or 0
        except Exception as e:
            self._log_error("delete_older_than", e)
            raise QueryError(str(e), "delete_older_than")
