"""
Book Matcher - Resolves an Audiobookshelf item to a Hardcover book and edition

Tiers, tried in order until one succeeds:

1. Direct identifier hit (ASIN, then ISBN) in the user's Hardcover library
2. Cross-edition search: the identifier exists in Hardcover, possibly on a
   different edition of a book the user already owns
3. Two-stage title/author search: find the book, then pick its edition
"""

import logging
from typing import Any, Dict, List, Optional

from ..errors import AmbiguousMatchError
from ..models import LibraryItem, MatchResult
from ..utils import normalize_asin, normalize_isbn
from .edition_selector import select_best_edition
from .scorer import calculate_book_identification_score

logger = logging.getLogger(__name__)

TIER_IDENTIFIER = 1
TIER_CROSS_EDITION = 2
TIER_TITLE_AUTHOR = 3


def create_identifier_lookup(user_books: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    Create lookup for both ASIN and ISBN identifiers

    Maps every normalized identifier of every edition in the user's library
    to the owning user_book and that edition.
    """
    identifier_lookup: Dict[str, Dict[str, Any]] = {}

    for user_book in user_books:
        editions = (user_book.get("book") or {}).get("editions") or []

        for edition in editions:
            asin = normalize_asin(edition.get("asin"))
            if asin:
                identifier_lookup[asin] = {"user_book": user_book, "edition": edition, "identifier_type": "asin"}

            for isbn_raw in (edition.get("isbn_10"), edition.get("isbn_13")):
                isbn = normalize_isbn(isbn_raw)
                if isbn:
                    identifier_lookup[isbn] = {"user_book": user_book, "edition": edition, "identifier_type": "isbn"}

    logger.info(f"Created identifier lookup with {len(identifier_lookup)} entries")
    return identifier_lookup


class BookMatcher:
    """Finds the Hardcover book and edition for a library item"""

    def __init__(self, hardcover_client: Any, config: Optional[Dict[str, Any]] = None) -> None:
        self.hardcover = hardcover_client
        settings = (config or {}).get("title_author_matching") or {}
        self.title_author_enabled = settings.get("enabled", True)
        threshold = settings.get("confidence_threshold", 0.70)
        # Accept both 0.7 and 70
        self.confidence_threshold = threshold * 100 if threshold <= 1 else threshold
        self.max_search_results = settings.get("max_search_results", 5)

        self.identifier_lookup: Dict[str, Dict[str, Any]] = {}
        self.user_books_by_book_id: Dict[Any, Dict[str, Any]] = {}
        self.user_books_by_edition_id: Dict[Any, Dict[str, Any]] = {}

    def set_user_library(self, user_books: List[Dict[str, Any]]) -> None:
        """Index the user's Hardcover library for lookups"""
        self.identifier_lookup = create_identifier_lookup(user_books)
        self.user_books_by_book_id = {}
        self.user_books_by_edition_id = {}
        for user_book in user_books:
            book = user_book.get("book") or {}
            if book.get("id") is not None:
                self.user_books_by_book_id[book["id"]] = user_book
            for edition in book.get("editions") or []:
                self.user_books_by_edition_id[edition.get("id")] = user_book

    def find_user_book_by_edition_id(self, edition_id: Any) -> Optional[Dict[str, Any]]:
        return self.user_books_by_edition_id.get(edition_id)

    def find_edition(self, edition_id: Any) -> Optional[Dict[str, Any]]:
        """Return the complete library edition record for an edition id"""
        user_book = self.find_user_book_by_edition_id(edition_id)
        if not user_book:
            return None
        for edition in user_book["book"].get("editions") or []:
            if edition.get("id") == edition_id:
                return edition
        return None

    def lookup_identifier(self, item: LibraryItem) -> Optional[MatchResult]:
        """Tier 1: ASIN, then ISBN, against the user's library editions"""
        for identifier, match_type in ((item.normalized_asin, "asin"), (item.isbn, "isbn")):
            if not identifier:
                continue
            hit = self.identifier_lookup.get(identifier)
            if hit:
                return MatchResult(
                    user_book=hit["user_book"],
                    book=hit["user_book"].get("book") or {},
                    edition=hit["edition"],
                    match_type=match_type,
                    tier=TIER_IDENTIFIER,
                )
        return None

    def find_match(self, item: LibraryItem) -> Optional[MatchResult]:
        """
        Resolve a library item to a Hardcover book and edition

        Returns None when nothing matches. Raises AmbiguousMatchError when the
        best title/author candidate is below the confidence threshold.
        """
        title = item.display_title

        match = self.lookup_identifier(item)
        if match:
            logger.debug(f"🔍 {match.match_type.upper()} match in library for '{title}'")
            return match

        if self.hardcover is None:
            logger.debug(f"No Hardcover client, cannot search for '{title}'")
            return None

        for identifier, kind in ((item.normalized_asin, "asin"), (item.isbn, "isbn")):
            if not identifier:
                continue
            try:
                match = self._find_cross_edition(identifier, kind)
            except Exception as e:
                logger.warning(f"{kind.upper()} search failed for '{title}': {str(e)}")
                continue
            if match:
                logger.info(f"🔍 {match.match_type} match for '{title}' (edition {match.edition_id})")
                return match

        if self.title_author_enabled and item.title:
            return self._find_by_title_author(item)

        logger.debug(f"No match found for '{title}'")
        return None

    def _find_cross_edition(self, identifier: str, kind: str) -> Optional[MatchResult]:
        """
        Tier 2: search Hardcover by identifier

        The search returns edition stubs. When the edition's book is in the
        user's library the complete edition record is taken from the library
        copy, so fields such as audio_seconds are always present.
        """
        if kind == "asin":
            candidates = self.hardcover.search_books_by_asin(identifier) or []
        else:
            candidates = self.hardcover.search_books_by_isbn(identifier) or []

        for candidate in candidates:
            book_id = candidate.get("book_id") or (candidate.get("book") or {}).get("id")
            user_book = self.user_books_by_book_id.get(book_id)
            if not user_book:
                continue

            edition = self._library_edition(user_book, candidate.get("id"))
            if not edition:
                continue
            return MatchResult(
                user_book=user_book,
                book=user_book.get("book") or {},
                edition=edition,
                match_type=f"{kind}_cross_edition",
                tier=TIER_CROSS_EDITION,
            )

        if candidates:
            candidate = candidates[0]
            return MatchResult(
                user_book=None,
                book=candidate.get("book") or {"id": candidate.get("book_id")},
                edition=candidate,
                match_type=f"{kind}_search",
                tier=TIER_CROSS_EDITION,
                is_search_result=True,
            )
        return None

    def _library_edition(self, user_book: Dict[str, Any], edition_id: Any) -> Optional[Dict[str, Any]]:
        editions = (user_book.get("book") or {}).get("editions") or []
        if not editions:
            return None
        for wanted in (edition_id, user_book.get("edition_id")):
            if wanted is None:
                continue
            for edition in editions:
                if edition.get("id") == wanted:
                    return edition
        return editions[0]

    def _find_by_title_author(self, item: LibraryItem) -> Optional[MatchResult]:
        """Tier 3: pick the book by identification score, then its best edition"""
        title = item.display_title
        results = self.hardcover.search_books_by_title_author(item.title, item.author, self.max_search_results) or []
        if not results:
            logger.debug(f"Title/author search returned nothing for '{title}'")
            return None

        target_metadata = {
            "series": item.series,
            "series_sequence": item.series_sequence,
            "published_year": item.published_year,
        }
        best = None
        best_score = None
        for result in results:
            score = calculate_book_identification_score(result, item.title, item.author, target_metadata)
            if best_score is None or score.total_score > best_score.total_score:
                best = result
                best_score = score

        if best is None or best_score.total_score < self.confidence_threshold:
            top = best_score.total_score if best_score else 0.0
            raise AmbiguousMatchError(
                f"Low-confidence title/author match ({top:.1f} < {self.confidence_threshold:.0f})",
                title=title,
                score=top,
            )

        book_id = best.get("id")
        user_book = self.user_books_by_book_id.get(book_id)
        if user_book:
            editions = (user_book.get("book") or {}).get("editions") or []
            book = user_book.get("book") or {}
        else:
            editions = self.hardcover.get_book_editions(book_id) or []
            book = best

        edition = select_best_edition(editions, item.media_kind, item.duration)
        if not edition:
            logger.info(f"Book {book_id} matched '{title}' but has no editions")
            return None

        logger.info(
            f"🔍 Title/author match for '{title}': book {book_id}, edition {edition.get('id')} "
            f"(score {best_score.total_score:.1f}, {best_score.confidence.value})"
        )
        return MatchResult(
            user_book=user_book,
            book=book,
            edition=edition,
            match_type="title_author_two_stage",
            tier=TIER_TITLE_AUTHOR,
            is_search_result=user_book is None,
            confidence=best_score.total_score,
        )
