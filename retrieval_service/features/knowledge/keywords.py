"""
Keyword utilities: frequent-term extraction, highlights and lexical scoring.
"""

import re
from collections import Counter
from typing import Dict, Iterable, List

from retrieval_service.features.knowledge.chunker import strip_tags

STOP_WORDS = frozenset({
    "about", "above", "after", "again", "against", "also", "because", "been",
    "before", "being", "below", "between", "both", "could", "does", "doing",
    "down", "during", "each", "from", "further", "have", "having", "here",
    "into", "just", "more", "most", "only", "other", "over", "same", "should",
    "some", "such", "than", "that", "their", "theirs", "them", "then",
    "there", "these", "they", "this", "those", "through", "under", "until",
    "very", "were", "what", "when", "where", "which", "while", "will", "with",
    "would", "your", "yours",
})

MIN_KEYWORD_LENGTH = 4
MIN_QUERY_TERM_LENGTH = 3

# Keyword relevance weights
TITLE_OCCURRENCE_WEIGHT = 2
CONTENT_OCCURRENCE_WEIGHT = 1
PHRASE_IN_TITLE_BONUS = 5
PHRASE_IN_CONTENT_BONUS = 3
RELEVANCE_SCALE = 10.0


def _word_counts(content: str) -> Counter:
    text = strip_tags(content).lower()
    text = re.sub(r"[^\w\s]", " ", text)
    words = [
        word for word in text.split()
        if len(word) >= MIN_KEYWORD_LENGTH and word not in STOP_WORDS and not word.isdigit()
    ]
    return Counter(words)


def extract_keywords(content: str, limit: int = 10) -> List[str]:
    """Most frequent words of at least four letters, stop words removed."""
    return [word for word, _ in _word_counts(content).most_common(limit)]


def keyword_importance(content: str, limit: int = 10) -> Dict[str, float]:
    """Top keywords mapped to frequency / max frequency."""
    top = _word_counts(content).most_common(limit)
    if not top:
        return {}
    max_count = top[0][1]
    return {word: round(count / max_count, 4) for word, count in top}


def query_terms(query: str) -> List[str]:
    """Whitespace tokens of the query longer than two characters."""
    return [term for term in query.lower().split() if len(term) >= MIN_QUERY_TERM_LENGTH]


def keyword_relevance(query: str, title: str, content: str) -> float:
    """
    Lexical relevance of an entry to ``query`` in [0, 1].

    Every term occurrence counts twice in the title and once in the content;
    the whole query appearing verbatim adds a bonus.
    """
    title_lower = (title or "").lower()
    content_lower = (content or "").lower()
    phrase = query.strip().lower()

    score = 0.0
    for term in query_terms(query):
        score += title_lower.count(term) * TITLE_OCCURRENCE_WEIGHT
        score += content_lower.count(term) * CONTENT_OCCURRENCE_WEIGHT

    if phrase and phrase in title_lower:
        score += PHRASE_IN_TITLE_BONUS
    if phrase and phrase in content_lower:
        score += PHRASE_IN_CONTENT_BONUS

    return min(1.0, score / RELEVANCE_SCALE)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def summarize(content: str, length: int = 200) -> str:
    """First ``length`` characters of the tag-stripped content."""
    text = " ".join(strip_tags(content).split())
    if len(text) <= length:
        return text
    return text[:length].rstrip() + "..."
