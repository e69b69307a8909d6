"""
Text normalization for title, author and series comparison
"""

import re
from typing import Optional

_LEADING_ARTICLE = re.compile(r"^(a|an|the)\s+", re.IGNORECASE)
_AUTHOR_SUFFIX = re.compile(r"\s+(jr\.?|sr\.?|iii?|iv|ph\.?d\.?|m\.?d\.?)$", re.IGNORECASE)
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def _clean(text: str) -> str:
    text = _PUNCTUATION.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_title(title: Optional[str]) -> str:
    """Lower-case, drop a leading article and punctuation, collapse whitespace"""
    if not title:
        return ""
    return _clean(_LEADING_ARTICLE.sub("", title.lower().strip()))


def normalize_author(author: Optional[str]) -> str:
    """Like normalize_title, but strips Jr/Sr/III/PhD style suffixes instead of articles"""
    if not author:
        return ""
    return _clean(_AUTHOR_SUFFIX.sub("", author.lower().strip()))


def normalize_series(series: Optional[str]) -> str:
    if not series:
        return ""
    return _clean(series.lower())
