"""Text similarity helpers shared by the merger and the evaluator."""

import re

from rapidfuzz.distance import Levenshtein

PRONOUNS = frozenset({
    "it", "its", "they", "them", "their", "theirs",
    "this", "that", "these", "those",
    "he", "she", "him", "her", "his", "hers",
})

_CONTENT_WORD = re.compile(r"""[^\s,.?!'"()]+""")


def content_words(text: str) -> set[str]:
    """Extract lowercase words with pronouns removed."""
    return {w for w in _CONTENT_WORD.findall(text.lower()) if w not in PRONOUNS}


def levenshtein_similarity(text1: str, text2: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]."""
    if not text1 and not text2:
        return 1.0
    if not text1 or not text2:
        return 0.0

    s1 = text1.lower().strip()
    s2 = text2.lower().strip()
    if s1 == s2:
        return 1.0
    return Levenshtein.normalized_similarity(s1, s2)


def containment_similarity(text1: str, text2: str) -> float:
    """
    Fraction of the shorter text's content words found in the longer one.

    Handles pronoun-resolved rewrites where one side says "it" and the
    other spells out what "it" refers to.
    """
    if not text1 or not text2:
        return 0.0

    words1 = content_words(text1)
    words2 = content_words(text2)
    if not words1 or not words2:
        return 0.0

    shorter, longer = (words1, words2) if len(words1) <= len(words2) else (words2, words1)
    return len(shorter & longer) / len(shorter)


def match_similarity(text1: str, text2: str) -> float:
    """Best of Levenshtein similarity and word containment."""
    return max(levenshtein_similarity(text1, text2), containment_similarity(text1, text2))


def span_overlap(span1: tuple[int, int], span2: tuple[int, int]) -> float:
    """Intersection over union of two character spans."""
    overlap = max(min(span1[1], span2[1]) - max(span1[0], span2[0]), 0)
    union = max(span1[1], span2[1]) - min(span1[0], span2[0])
    if union <= 0:
        return 0.0
    return overlap / union
