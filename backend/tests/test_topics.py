"""Tests for keyword topic tagging."""

from context_rag.topics import extract_topics, tokenize


def test_tokenize_lowercases_and_splits():
    assert tokenize("Cheap TECH-sites, 2024!") == ["cheap", "tech", "sites", "2024"]


def test_topics_ranked_by_mentions():
    topics = extract_topics("Cheap prices and low cost for tech sites")
    assert topics[0] == "pricing"
    assert set(topics) == {"pricing", "technology", "publishers"}


def test_ties_broken_alphabetically():
    assert extract_topics("seo backlinks") == ["link_building", "seo"]


def test_stop_terms_ignored():
    assert extract_topics("how can you help") == []


def test_max_topics():
    text = "price seo backlink article site order tech marketing"
    assert len(extract_topics(text, max_topics=3)) == 3


def test_empty_text():
    assert extract_topics("") == []
