"""Text helpers shared by keyword retrieval and chunk writers."""

import re
from collections import Counter
from typing import List

_WORD_SPLIT = re.compile(r"\W+")

STOPWORDS = frozenset(
    [
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
        "being", "have", "has", "had", "do", "does", "did", "will", "would",
        "could", "should", "may", "might", "must", "can", "this", "that",
        "these", "those", "i", "you", "he", "she", "it", "we", "they",
    ]
)


def query_terms(question: str, min_length: int = 3) -> List[str]:
    """Lowercased, de-duplicated words of at least ``min_length`` characters, in order."""
    seen = set()
    terms: List[str] = []
    for word in _WORD_SPLIT.split(question.lower()):
        if len(word) >= min_length and word not in seen:
            seen.add(word)
            terms.append(word)
    return terms


def count_word_matches(term: str, text: str) -> int:
    """Case-insensitive whole-word occurrences of ``term`` in ``text``."""
    return len(re.findall(rf"\b{re.escape(term)}\b", text, flags=re.IGNORECASE))


def extract_terms(text: str, max_terms: int = 10) -> List[str]:
    """Most frequent non-stopword words longer than three characters.

    Ingestion stores these on each chunk so keyword search can match without
    scanning the full text.
    """
    words = [
        w for w in _WORD_SPLIT.split(text.lower()) if len(w) > 3 and w not in STOPWORDS
    ]
    return [word for word, _ in Counter(words).most_common(max_terms)]
