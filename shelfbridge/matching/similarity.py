"""
Similarity measures used by the scorer and edition selector
"""

import re
from typing import Optional, Set

from rapidfuzz.distance import Levenshtein

_PUNCTUATION = re.compile(r"[^\w\s]")


def _tokens(text: str) -> Set[str]:
    words = _PUNCTUATION.sub("", text.lower()).split()
    return {word for word in words if len(word) > 2}


def token_overlap(text1: str, text2: str) -> float:
    """Jaccard index of the words longer than two characters"""
    tokens1 = _tokens(text1)
    tokens2 = _tokens(text2)
    union = tokens1 | tokens2
    if not union:
        return 0.0
    return len(tokens1 & tokens2) / len(union)


def text_similarity(text1: Optional[str], text2: Optional[str]) -> float:
    """
    Similarity of two strings between 0.0 and 1.0

    Combines the normalized Levenshtein similarity (40%) with word overlap
    (60%), which tolerates reordered or extra words such as subtitles.
    """
    if not text1 or not text2:
        return 0.0
    if text1.lower().strip() == text2.lower().strip():
        return 1.0

    edit = Levenshtein.normalized_similarity(text1.lower(), text2.lower())
    overlap = token_overlap(text1, text2)
    return max(edit * 0.4 + overlap * 0.6, 0.0)


def duration_similarity(seconds1: Optional[float], seconds2: Optional[float]) -> float:
    """Score 0-100 for how close two durations are; 50 when either is unknown"""
    if not seconds1 or not seconds2:
        return 50.0

    longest = max(seconds1, seconds2)
    shortest = min(seconds1, seconds2)
    difference = (longest - shortest) / longest * 100

    if difference <= 3:
        return 100.0
    if difference <= 5:
        return 95.0
    if difference <= 10:
        return 85.0
    if difference <= 20:
        return 70.0
    if difference <= 30:
        return 50.0
    return 20.0
