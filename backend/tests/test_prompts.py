"""Tests for prompt assembly."""

from context_rag.prompts import (
    INSTRUCTIONS,
    NO_CONTEXT_MESSAGE,
    UNAVAILABLE_MESSAGE,
    build_enhanced_prompt,
)
from context_rag.retrieval.base import RAGContext, RerankResult, UserContext


def _doc(i, content):
    return RerankResult(id=f"doc-{i}", content=content, score=0.9, original_rank=i, new_rank=i)


def _context(docs=(), user_context=None):
    return RAGContext(
        query="cheap tech sites",
        relevant_docs=list(docs),
        user_context=user_context or UserContext(),
    )


class TestBuildEnhancedPrompt:
    """Tests for build_enhanced_prompt."""

    def test_documents_numbered_for_citation(self):
        context = _context([_doc(0, "Pricing guide"), _doc(1, "  Tech publisher list  ")])

        prompt = build_enhanced_prompt("cheap tech sites", context)

        assert "[1] Pricing guide" in prompt
        assert "[2] Tech publisher list" in prompt
        assert prompt.index("[1]") < prompt.index("[2]")

    def test_section_order(self):
        context = _context(
            [_doc(0, "Pricing guide")],
            UserContext(preferences={"tone": "brief"}, recent_topics=["pricing"], conversation_history=["hi"]),
        )

        prompt = build_enhanced_prompt("cheap tech sites", context)

        markers = [
            "CONTEXT FROM KNOWLEDGE BASE:",
            "USER CONTEXT:",
            "RECENT CONVERSATION HISTORY:",
            "USER QUERY: cheap tech sites",
            INSTRUCTIONS,
        ]
        positions = [prompt.index(marker) for marker in markers]
        assert positions == sorted(positions)

    def test_user_context_lines(self):
        context = _context(
            [_doc(0, "Pricing guide")],
            UserContext(preferences={"tone": "brief", "budget": 100}, recent_topics=["pricing", "seo"]),
        )

        prompt = build_enhanced_prompt("q", context)

        assert 'User Preferences: {"budget": 100, "tone": "brief"}' in prompt
        assert "Recent Topics: pricing, seo" in prompt

    def test_empty_user_context_omitted(self):
        prompt = build_enhanced_prompt("q", _context([_doc(0, "Pricing guide")]))

        assert "USER CONTEXT:" not in prompt
        assert "RECENT CONVERSATION HISTORY:" not in prompt

    def test_history_limited_to_three_lines(self):
        history = ["first", "second", "third", "fourth"]
        prompt = build_enhanced_prompt("q", _context([], UserContext(conversation_history=history)))

        assert "- first\n- second\n- third" in prompt
        assert "- fourth" not in prompt

    def test_no_documents(self):
        prompt = build_enhanced_prompt("q", _context())
        assert NO_CONTEXT_MESSAGE in prompt

    def test_context_unavailable(self):
        prompt = build_enhanced_prompt("q", None)

        assert UNAVAILABLE_MESSAGE in prompt
        assert "USER QUERY: q" in prompt

    def test_deterministic(self):
        context = _context([_doc(0, "Pricing guide")], UserContext(preferences={"b": 1, "a": 2}))
        assert build_enhanced_prompt("q", context) == build_enhanced_prompt("q", context)
