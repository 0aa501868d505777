"""Tests for SQL built by KnowledgeRepository, compiled for PostgreSQL."""

from datetime import datetime, timezone

from sqlalchemy.dialects import postgresql

from context_rag.repositories.knowledge import KnowledgeRepository


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestRecentTopicsQuery:
    def test_ordered_newest_first_before_limit(self):
        cutoff = datetime(2026, 1, 1, tzinfo=timezone.utc)
        sql = _sql(KnowledgeRepository._recent_topics_stmt("user-a", cutoff, 5))

        assert "unnest(knowledge_items.topics)" in sql
        assert "GROUP BY" in sql
        order_by = sql.index("ORDER BY")
        assert sql.index("max(", order_by) < sql.index("DESC", order_by)
        assert order_by < sql.index("LIMIT")

    def test_scoped_to_user_and_window(self):
        cutoff = datetime(2026, 1, 1, tzinfo=timezone.utc)
        stmt = KnowledgeRepository._recent_topics_stmt("user-a", cutoff, 5)
        params = stmt.compile(dialect=postgresql.dialect()).params

        assert "user-a" in params.values()
        assert cutoff in params.values()
