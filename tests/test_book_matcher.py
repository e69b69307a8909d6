"""Tests for BookMatcher and edition selection"""

from unittest.mock import MagicMock

import pytest

from shelfbridge.errors import AmbiguousMatchError
from shelfbridge.matching.book_matcher import (
    TIER_CROSS_EDITION,
    TIER_IDENTIFIER,
    TIER_TITLE_AUTHOR,
    BookMatcher,
    create_identifier_lookup,
)
from shelfbridge.matching.edition_selector import edition_format, format_score, select_best_edition


@pytest.fixture
def library(make_edition, make_user_book):
    audio = make_edition(301, asin="B00TEST123", audio_seconds=72000, reading_format="Listened")
    print_edition = make_edition(302, isbn_13="9780316129084", pages=592, reading_format="Read")
    return [make_user_book(11, 101, [audio, print_edition])]


class TestIdentifierLookup:
    """Test create_identifier_lookup"""

    def test_indexes_every_edition(self, library) -> None:
        """ASIN and ISBN of every edition map to the owning user_book"""
        lookup = create_identifier_lookup(library)
        assert lookup["B00TEST123"]["edition"]["id"] == 301
        assert lookup["9780316129084"]["edition"]["id"] == 302
        assert lookup["9780316129084"]["user_book"]["id"] == 11

    def test_identifiers_are_normalized(self, make_edition, make_user_book) -> None:
        """Hyphenated ISBNs and lower-case ASINs are normalized"""
        edition = make_edition(5, asin="b00test123", isbn_13="978-0-316-12908-4")
        lookup = create_identifier_lookup([make_user_book(1, 2, [edition])])
        assert "B00TEST123" in lookup
        assert "9780316129084" in lookup


class TestDirectLookup:
    """Tier 1 identifier hits"""

    def test_asin_hit_returns_complete_edition(self, library, make_item) -> None:
        """The ASIN hit carries the library edition including audio_seconds"""
        matcher = BookMatcher(None)
        matcher.set_user_library(library)
        match = matcher.find_match(make_item(asin="B00TEST123"))
        assert match.tier == TIER_IDENTIFIER
        assert match.match_type == "asin"
        assert match.edition["audio_seconds"] == 72000
        assert match.user_book_id == 11

    def test_asin_wins_over_isbn(self, library, make_item) -> None:
        """When both identifiers hit, the ASIN edition is used"""
        matcher = BookMatcher(None)
        matcher.set_user_library(library)
        match = matcher.lookup_identifier(make_item(asin="B00TEST123", isbn_13="9780316129084"))
        assert match.edition_id == 301

    def test_isbn_hit(self, library, make_item) -> None:
        """An ISBN-only item matches the print edition"""
        matcher = BookMatcher(None)
        matcher.set_user_library(library)
        match = matcher.lookup_identifier(make_item(isbn_13="9780316129084"))
        assert match.match_type == "isbn"
        assert match.edition_id == 302

    def test_no_client_no_identifier(self, library, make_item) -> None:
        """Without a client a miss returns None instead of raising"""
        matcher = BookMatcher(None)
        matcher.set_user_library(library)
        assert matcher.find_match(make_item(title="Unknown Book", asin="B0MISSING1")) is None

    def test_find_edition(self, library) -> None:
        """Edition ids resolve against the library snapshot"""
        matcher = BookMatcher(None)
        matcher.set_user_library(library)
        assert matcher.find_edition(302)["pages"] == 592
        assert matcher.find_edition(999) is None
        assert matcher.find_user_book_by_edition_id(301)["id"] == 11


class TestCrossEdition:
    """Tier 2 identifier searches"""

    def test_search_hit_in_library(self, library, make_item) -> None:
        """A searched edition of an owned book uses the library copy of that edition"""
        hardcover = MagicMock()
        hardcover.search_books_by_asin.return_value = [{"id": 301, "book_id": 101, "asin": "B00OTHER99"}]
        matcher = BookMatcher(hardcover, {"title_author_matching": {"enabled": False}})
        matcher.set_user_library(library)

        match = matcher.find_match(make_item(asin="B00OTHER99"))
        assert match.tier == TIER_CROSS_EDITION
        assert match.match_type == "asin_cross_edition"
        assert match.edition["audio_seconds"] == 72000
        assert match.is_search_result is False

    def test_search_hit_outside_library(self, library, make_item) -> None:
        """A catalog hit for a book the user does not own is a search result"""
        hardcover = MagicMock()
        hardcover.search_books_by_isbn.return_value = [
            {"id": 900, "book_id": 555, "pages": 300, "book": {"id": 555, "title": "Caliban's War"}}
        ]
        matcher = BookMatcher(hardcover, {"title_author_matching": {"enabled": False}})
        matcher.set_user_library(library)

        match = matcher.find_match(make_item(title="Caliban's War", isbn_13="9780316129060"))
        assert match.is_search_result is True
        assert match.user_book is None
        assert match.match_type == "isbn_search"
        assert match.book["id"] == 555

    def test_search_failure_falls_through(self, library, make_item) -> None:
        """A failing identifier search moves on to the next strategy"""
        hardcover = MagicMock()
        hardcover.search_books_by_asin.side_effect = RuntimeError("boom")
        matcher = BookMatcher(hardcover, {"title_author_matching": {"enabled": False}})
        matcher.set_user_library(library)
        assert matcher.find_match(make_item(asin="B00OTHER99")) is None


class TestTitleAuthor:
    """Tier 3 two-stage matching"""

    def test_match_in_library(self, library, make_item) -> None:
        """The winning book's edition comes from the library copy"""
        hardcover = MagicMock()
        hardcover.search_books_by_title_author.return_value = [
            {"id": 101, "title": "Leviathan Wakes", "author_names": ["James S. A. Corey"], "users_count": 5000},
            {"id": 102, "title": "Leviathan Falls", "author_names": ["James S. A. Corey"], "users_count": 900},
        ]
        matcher = BookMatcher(hardcover)
        matcher.set_user_library(library)

        match = matcher.find_match(make_item())
        assert match.tier == TIER_TITLE_AUTHOR
        assert match.match_type == "title_author_two_stage"
        assert match.user_book_id == 11
        assert match.edition_id == 301
        hardcover.get_book_editions.assert_not_called()

    def test_match_outside_library_fetches_editions(self, make_item) -> None:
        """Editions of a book outside the library are fetched from Hardcover"""
        hardcover = MagicMock()
        hardcover.search_books_by_title_author.return_value = [
            {"id": 555, "title": "Leviathan Wakes", "author_names": ["James S. A. Corey"], "users_count": 5000}
        ]
        hardcover.get_book_editions.return_value = [{"id": 1, "pages": 592}, {"id": 2, "audio_seconds": 70000}]
        matcher = BookMatcher(hardcover)
        matcher.set_user_library([])

        match = matcher.find_match(make_item())
        assert match.is_search_result is True
        assert match.edition_id == 2
        hardcover.get_book_editions.assert_called_once_with(555)

    def test_low_confidence_is_ambiguous(self, make_item) -> None:
        """A best candidate below the threshold raises AmbiguousMatchError"""
        hardcover = MagicMock()
        hardcover.search_books_by_title_author.return_value = [
            {"id": 1, "title": "Cooking Basics", "author_names": ["Chef Someone"]}
        ]
        matcher = BookMatcher(hardcover)
        matcher.set_user_library([])

        with pytest.raises(AmbiguousMatchError) as exc_info:
            matcher.find_match(make_item())
        assert exc_info.value.score < 70

    def test_disabled(self, make_item) -> None:
        """Disabled title/author matching never searches"""
        hardcover = MagicMock()
        matcher = BookMatcher(hardcover, {"title_author_matching": {"enabled": False}})
        matcher.set_user_library([])
        assert matcher.find_match(make_item()) is None
        hardcover.search_books_by_title_author.assert_not_called()


class TestEditionSelector:
    """Test stage 2 edition selection"""

    def test_audio_item_prefers_audio_edition(self, make_edition) -> None:
        """Format dominates popularity for audio items"""
        ebook = make_edition(1, pages=400, reading_format="Ebook", users_count=500)
        audio = make_edition(2, audio_seconds=72000, users_count=50)
        assert select_best_edition([ebook, audio], "audio", 72000)["id"] == 2

    def test_text_item_prefers_ebook(self, make_edition) -> None:
        """Text items prefer an ebook edition"""
        ebook = make_edition(1, pages=400, reading_format="Ebook")
        audio = make_edition(2, audio_seconds=72000)
        assert select_best_edition([audio, ebook], "text")["id"] == 1

    def test_no_editions(self) -> None:
        """Nothing to choose from"""
        assert select_best_edition([], "audio") is None

    def test_edition_format(self, make_edition) -> None:
        """Format classification from audio_seconds and format labels"""
        assert edition_format(make_edition(1, audio_seconds=100)) == "audio"
        assert edition_format(make_edition(1, reading_format="Listened")) == "audio"
        assert edition_format(make_edition(1, reading_format="Ebook")) == "ebook"
        assert edition_format({"id": 1, "physical_format": "Paperback"}) == "physical"
        assert edition_format({"id": 1, "reading_format": "Scroll"}) == "unknown"
        assert edition_format({"id": 1}) is None
        assert format_score("audio", {"id": 1}) == 20.0
