"""
Stdlib text similarity for deterministic recall scoring.

Provides normalized tokenization and the overlap measures the recall
engine combines into a relevance score:
- **Prompt coverage**: share of prompt tokens found in a record.
- **Token budget**: the word-count cost of rendering a record.

Everything here is pure and deterministic: the same inputs always yield
the same floats.
"""

from __future__ import annotations

import re
from typing import FrozenSet, Iterable

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

# Word characters only; punctuation and whitespace are separators
_SPLIT_RE = re.compile(r"[^\w]+", re.UNICODE)

EN_STOP_WORDS = frozenset({
    "the", "a", "an", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "shall",
    "it", "its", "this", "that", "these", "those",
    "i", "me", "my", "we", "our", "you", "your", "he", "him", "his",
    "she", "her", "they", "them", "their",
    "not", "no", "nor", "so", "but", "or", "and", "if", "then",
    "about", "up", "out", "into", "over", "after", "before",
})


def normalize(text: str) -> str:
    """Lowercase and collapse every non-word run into a single space."""
    return _SPLIT_RE.sub(" ", text.lower()).strip()


def tokenize(text: str, *, drop_stop_words: bool = False) -> FrozenSet[str]:
    """Split text into a set of lowercase word tokens.

    Underscores count as separators so ``snake_case`` names contribute their
    parts. Returns an empty set for empty input.
    """
    norm = normalize(text.replace("_", " "))
    if not norm:
        return frozenset()
    tokens = frozenset(norm.split())
    if drop_stop_words:
        kept = tokens - EN_STOP_WORDS
        # never let stop-word stripping erase a query entirely
        return kept or tokens
    return tokens


def tokenize_all(texts: Iterable[str]) -> FrozenSet[str]:
    """Union of tokenize() over several strings (e.g. content + tags)."""
    out: set = set()
    for t in texts:
        out |= tokenize(t)
    return frozenset(out)


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def coverage(query: FrozenSet[str], doc: FrozenSet[str]) -> float:
    """Share of query tokens present in doc: |Q ∩ D| / |Q|.

    Returns 0.0 if either side is empty.
    """
    if not query or not doc:
        return 0.0
    return len(query & doc) / len(query)


def estimate_tokens(text: str) -> int:
    """Budget cost of a record's content: whitespace-separated word count."""
    return len(text.split())
