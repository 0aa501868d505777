"""Tests for the generated full-text column of the knowledge store schema."""

import pytest

from context_rag.config import settings
from context_rag.db_models import KnowledgeItem, search_vector_expression
from context_rag.errors import ConfigurationError


class TestSearchVectorExpression:
    def test_uses_given_configuration(self):
        assert search_vector_expression("german") == "to_tsvector('german', coalesce(content, ''))"

    def test_column_matches_configured_language(self):
        computed = KnowledgeItem.__table__.c.search_vector.computed

        assert f"to_tsvector('{settings.fulltext_language}'," in str(computed.sqltext)

    @pytest.mark.parametrize("language", ["english'); drop table knowledge_items; --", "", "English"])
    def test_rejects_invalid_configuration_names(self, language):
        with pytest.raises(ConfigurationError):
            search_vector_expression(language)
