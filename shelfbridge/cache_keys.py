"""
Cache key selection

One priority order (ASIN > ISBN > title/author) decides which key a book is
looked up and stored under, so the early check and the commit always agree.
"""

import re
from typing import List, Optional

from .models import BookIdentifier, IdentifierType, LibraryItem
from .utils import normalize_asin, normalize_isbn

_FALLBACK_KEY_STRIP = re.compile(r"[^a-z0-9:]")


def fallback_key(title: Optional[str], author: Optional[str]) -> str:
    """
    Build the title/author key for books without an ASIN or ISBN

    >>> fallback_key("Leviathan Wakes", "James S. A. Corey")
    'leviathanwakes:jamessacorey'
    >>> fallback_key(None, None)
    'unknown:unknown'
    """
    raw = f"{title or 'unknown'}:{author or 'unknown'}".lower()
    return _FALLBACK_KEY_STRIP.sub("", raw)


def possible_identifiers(
    asin: Optional[str], isbn: Optional[str], title: Optional[str], author: Optional[str]
) -> List[BookIdentifier]:
    """Every usable key for a book, highest priority first"""
    identifiers = []
    clean_asin = normalize_asin(asin)
    if clean_asin:
        identifiers.append(BookIdentifier(clean_asin, IdentifierType.ASIN))
    clean_isbn = normalize_isbn(isbn)
    if clean_isbn:
        identifiers.append(BookIdentifier(clean_isbn, IdentifierType.ISBN))
    identifiers.append(BookIdentifier(fallback_key(title, author), IdentifierType.TITLE_AUTHOR))
    return sorted(identifiers, key=lambda identifier: identifier.type.priority)


def select_identifier(
    asin: Optional[str], isbn: Optional[str], title: Optional[str], author: Optional[str]
) -> BookIdentifier:
    """The canonical key for a book"""
    return possible_identifiers(asin, isbn, title, author)[0]


def identifier_for_item(item: LibraryItem) -> BookIdentifier:
    return select_identifier(item.asin, item.isbn, item.title, item.author)
