"""Lightweight topic tagging for stored knowledge items.

Topics feed the "recent topics" block of the user context and the topic
filter of hybrid search. Tagging is keyword based and deterministic: each
topic has a vocabulary, and a text is tagged with every topic whose
vocabulary it mentions, most mentions first.
"""

import re
from collections import Counter
from typing import Dict, List, Set

TOPIC_VOCABULARY: Dict[str, Set[str]] = {
    "pricing": {
        "price", "prices", "pricing", "cost", "costs", "cheap", "cheaper", "budget",
        "expensive", "afford", "affordable", "discount", "fee", "fees", "rate", "rates",
    },
    "seo": {
        "seo", "serp", "ranking", "rankings", "rank", "keyword", "keywords",
        "organic", "authority", "dr", "da", "traffic",
    },
    "link_building": {
        "backlink", "backlinks", "link", "links", "linkbuilding", "outreach",
        "dofollow", "nofollow", "anchor", "guest",
    },
    "content": {
        "content", "article", "articles", "blog", "post", "posts", "copy",
        "copywriting", "writing", "writer",
    },
    "publishers": {
        "publisher", "publishers", "site", "sites", "website", "websites",
        "domain", "domains", "niche", "niches",
    },
    "orders": {
        "order", "orders", "checkout", "cart", "invoice", "payment", "refund", "delivery",
    },
    "technology": {
        "tech", "technology", "software", "saas", "ai", "crypto", "app", "apps",
    },
    "marketing": {
        "marketing", "campaign", "campaigns", "brand", "branding", "audience", "conversion",
    },
}

STOP_TERMS = {
    'the', 'a', 'an', 'is', 'are', 'was', 'were', 'be', 'been', 'being',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'can', 'must', 'need', 'want', 'like',
    'what', 'how', 'why', 'when', 'where', 'which', 'who', 'whom',
    'yes', 'no', 'not', 'just', 'only', 'also', 'very', 'too', 'so',
    'and', 'but', 'or', 'if', 'then', 'else', 'for', 'with', 'without',
    'about', 'from', 'into', 'through', 'during', 'before', 'after',
    'this', 'that', 'these', 'those', 'you', 'your', 'our', 'their',
    'please', 'thanks', 'help', 'show', 'tell', 'give', 'some', 'any',
}

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


def extract_topics(text: str, max_topics: int = 5) -> List[str]:
    """Topic labels mentioned in ``text``, most mentions first.

    Ties are broken alphabetically so the same text always yields the same list.
    """
    tokens = [t for t in tokenize(text) if t not in STOP_TERMS]
    if not tokens:
        return []

    counts = Counter(tokens)
    scores = {}
    for topic, vocabulary in TOPIC_VOCABULARY.items():
        hits = sum(counts[word] for word in vocabulary if word in counts)
        if hits:
            scores[topic] = hits

    ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    return [topic for topic, _ in ranked[:max_topics]]
