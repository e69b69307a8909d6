"""Shared fixtures for the sync engine tests"""

from typing import Any, Dict, List, Optional

import pytest

from shelfbridge.cache import ProgressCache
from shelfbridge.models import LibraryItem


def build_edition(
    edition_id: int,
    asin: Optional[str] = None,
    isbn_13: Optional[str] = None,
    isbn_10: Optional[str] = None,
    pages: Optional[int] = None,
    audio_seconds: Optional[int] = None,
    reading_format: Optional[str] = None,
    users_count: int = 0,
) -> Dict[str, Any]:
    return {
        "id": edition_id,
        "asin": asin,
        "isbn_13": isbn_13,
        "isbn_10": isbn_10,
        "pages": pages,
        "audio_seconds": audio_seconds,
        "physical_format": None,
        "reading_format": {"format": reading_format} if reading_format else None,
        "users_count": users_count,
        "release_year": None,
    }


def build_user_book(
    user_book_id: int,
    book_id: int,
    editions: List[Dict[str, Any]],
    status_id: int = 2,
    title: str = "Leviathan Wakes",
    author: str = "James S. A. Corey",
) -> Dict[str, Any]:
    return {
        "id": user_book_id,
        "status_id": status_id,
        "edition_id": editions[0]["id"] if editions else None,
        "book": {
            "id": book_id,
            "title": title,
            "contributions": [{"author": {"id": 1, "name": author}}],
            "editions": editions,
        },
    }


@pytest.fixture
def cache(tmp_path) -> ProgressCache:
    return ProgressCache(str(tmp_path / "data" / ".book_cache.db"))


@pytest.fixture
def make_item():
    def _make(**overrides: Any) -> LibraryItem:
        values: Dict[str, Any] = {
            "id": "li_leviathan",
            "title": "Leviathan Wakes",
            "author": "James S. A. Corey",
            "progress_percent": 42.0,
            "duration": 72000.0,
            "media_kind": "audio",
        }
        values.update(overrides)
        return LibraryItem(**values)

    return _make


@pytest.fixture
def make_edition():
    return build_edition


@pytest.fixture
def make_user_book():
    return build_user_book
