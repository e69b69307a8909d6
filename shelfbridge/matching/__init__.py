"""
Book matching: identifier lookup, cross-edition search and two-stage
title/author identification
"""

from .book_matcher import BookMatcher, create_identifier_lookup
from .edition_selector import is_audio_edition, select_best_edition
from .scorer import calculate_book_identification_score

__all__ = [
    "BookMatcher",
    "create_identifier_lookup",
    "calculate_book_identification_score",
    "is_audio_edition",
    "select_best_edition",
]
