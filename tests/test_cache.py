"""Tests for the SQLite progress cache"""

import json
import sqlite3
from datetime import datetime

import pytest

from shelfbridge.cache import SCHEMA_VERSION, ProgressCache
from shelfbridge.errors import CacheCommitError, CacheUnavailableError

USER = "alice"
ASIN = "B00TEST123"


def store(cache, progress=42.0, edition_id=301, status_id=2, title="Leviathan Wakes", **kwargs):
    cache.store_book_sync_data(
        USER, ASIN, title, edition_id, "asin", "James S. A. Corey", progress, status_id=status_id, **kwargs
    )


class TestBasicOperations:
    """Test reads and writes of book records"""

    def test_store_and_read(self, cache) -> None:
        """A committed sync is read back with every field"""
        store(cache, started_at="2024-01-01T10:00:00+00:00")
        record = cache.get_cached_book_info(USER, ASIN, "Leviathan Wakes", "asin")
        assert record.progress_percent == 42.0
        assert record.edition_id == 301
        assert record.status_id == 2
        assert record.author == "James S. A. Corey"
        assert record.started_at == "2024-01-01T10:00:00+00:00"
        assert record.last_sync == record.last_hardcover_sync
        assert record.session_is_active is False

    def test_title_is_normalized(self, cache) -> None:
        """Lookups ignore title case and surrounding whitespace"""
        store(cache, title="  Leviathan Wakes ")
        assert cache.get_last_progress(USER, ASIN, "leviathan wakes", "asin") == 42.0

    def test_key_includes_user_and_type(self, cache) -> None:
        """Another user or identifier type is a different record"""
        store(cache)
        assert cache.get_cached_book_info("bob", ASIN, "Leviathan Wakes", "asin") is None
        assert cache.get_cached_book_info(USER, ASIN, "Leviathan Wakes", "isbn") is None

    def test_update_keeps_unset_fields(self, cache) -> None:
        """Omitted edition, author and status keep their cached values"""
        store(cache)
        cache.store_book_sync_data(USER, ASIN, "Leviathan Wakes", None, "asin", None, 55.0)
        record = cache.get_cached_book_info(USER, ASIN, "Leviathan Wakes", "asin")
        assert record.progress_percent == 55.0
        assert record.edition_id == 301
        assert record.status_id == 2
        assert record.author == "James S. A. Corey"

    def test_edition_mapping_keeps_progress(self, cache) -> None:
        """store_edition_mapping never touches progress"""
        store(cache)
        cache.store_edition_mapping(USER, ASIN, "Leviathan Wakes", 999, "asin")
        assert cache.get_edition_for_book(USER, ASIN, "Leviathan Wakes", "asin") == 999
        assert cache.get_last_progress(USER, ASIN, "Leviathan Wakes", "asin") == 42.0

    def test_store_progress_inserts(self, cache) -> None:
        """store_progress creates the record when missing"""
        cache.store_progress(USER, "9780316129084", "Leviathan Wakes", 12.5, "isbn")
        assert cache.get_last_progress(USER, "9780316129084", "Leviathan Wakes", "isbn") == 12.5


class TestChangeDetection:
    """Test has_progress_changed and needs_sync_check"""

    def test_has_progress_changed(self, cache) -> None:
        """Tolerance is 0.1 percentage points and a miss counts as changed"""
        assert cache.has_progress_changed(USER, ASIN, "Leviathan Wakes", 42.0, "asin") is True
        store(cache)
        assert cache.has_progress_changed(USER, ASIN, "Leviathan Wakes", 42.05, "asin") is False
        assert cache.has_progress_changed(USER, ASIN, "Leviathan Wakes", 42.2, "asin") is True

    def test_miss_needs_sync(self, cache) -> None:
        """No cached record always syncs"""
        check = cache.needs_sync_check(USER, ASIN, "Leviathan Wakes", 42.0, "asin")
        assert check.needs_sync is True
        assert check.reason == "no cached data"
        assert check.cached is None

    def test_unchanged(self, cache) -> None:
        """Same progress, status and edition need nothing"""
        store(cache)
        check = cache.needs_sync_check(USER, ASIN, "Leviathan Wakes", 42.0, "asin", 301, 2)
        assert check.needs_sync is False
        assert check.reason == "Progress unchanged"

    def test_want_to_read_status(self, cache) -> None:
        """A book still in Want to Read needs sync even at the same progress"""
        store(cache, status_id=1)
        check = cache.needs_sync_check(USER, ASIN, "Leviathan Wakes", 42.0, "asin", 301)
        assert check.needs_sync is True
        assert check.status_changed is True
        assert check.progress_changed is False

    def test_live_status_overrides_cached(self, cache) -> None:
        """The live status is used when known"""
        store(cache, status_id=1)
        check = cache.needs_sync_check(USER, ASIN, "Leviathan Wakes", 42.0, "asin", 301, 2)
        assert check.needs_sync is False

    def test_edition_changed(self, cache) -> None:
        """A different current edition needs sync"""
        store(cache)
        check = cache.needs_sync_check(USER, ASIN, "Leviathan Wakes", 42.0, "asin", 302, 2)
        assert check.needs_sync is True
        assert check.edition_changed is True

    def test_triggers_are_independent(self, cache) -> None:
        """Progress, status and edition are reported together"""
        store(cache, status_id=1)
        check = cache.needs_sync_check(USER, ASIN, "Leviathan Wakes", 50.0, "asin", 302)
        assert (check.progress_changed, check.status_changed, check.edition_changed) == (True, True, True)


class TestSessions:
    """Test the session columns"""

    def test_session_lifecycle(self, cache) -> None:
        """Update, list and clear a session"""
        store(cache)
        now = datetime(2024, 5, 1, 12, 0, 0)
        cache.update_session_progress(USER, ASIN, "Leviathan Wakes", "asin", 44.0, now=now)

        session = cache.get_session(USER, ASIN, "Leviathan Wakes", "asin")
        assert session.session_pending_progress == 44.0
        assert session.session_last_change == now.isoformat()
        assert session.progress_percent == 42.0
        assert [record.identifier for record in cache.get_active_sessions(USER)] == [ASIN]

        cache.clear_session(USER, ASIN, "Leviathan Wakes", "asin")
        assert cache.get_session(USER, ASIN, "Leviathan Wakes", "asin") is None
        assert cache.get_active_sessions(USER) == []

    def test_commit_clears_session(self, cache) -> None:
        """A committed sync ends the session in the same write"""
        store(cache)
        cache.update_session_progress(USER, ASIN, "Leviathan Wakes", "asin", 44.0)
        store(cache, progress=44.0)
        record = cache.get_cached_book_info(USER, ASIN, "Leviathan Wakes", "asin")
        assert record.session_is_active is False
        assert record.session_pending_progress is None
        assert record.progress_percent == 44.0

    def test_session_without_record(self, cache) -> None:
        """A session can start before any committed sync"""
        cache.update_session_progress(USER, ASIN, "Leviathan Wakes", "asin", 10.0)
        session = cache.get_session(USER, ASIN, "Leviathan Wakes", "asin")
        assert session.progress_percent is None
        assert session.session_pending_progress == 10.0


class TestMigrations:
    """Test schema creation and upgrades"""

    def test_new_database_is_current(self, cache) -> None:
        """A fresh cache is created at the latest schema version"""
        conn = sqlite3.connect(cache.cache_file)
        try:
            assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
        finally:
            conn.close()

    def test_upgrade_keeps_rows(self, tmp_path) -> None:
        """Columns are added to an old database without losing data"""
        path = str(tmp_path / "old.db")
        conn = sqlite3.connect(path)
        conn.execute(
            """
            CREATE TABLE books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                identifier TEXT NOT NULL,
                identifier_type TEXT NOT NULL,
                title TEXT NOT NULL,
                edition_id INTEGER,
                author TEXT,
                progress_percent REAL,
                last_sync TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, identifier, title)
            )
            """
        )
        conn.execute(
            "INSERT INTO books (user_id, identifier, identifier_type, title, edition_id, progress_percent) "
            "VALUES ('alice', 'B00TEST123', 'asin', 'leviathan wakes', 301, 33.0)"
        )
        conn.commit()
        conn.close()

        cache = ProgressCache(path)
        record = cache.get_cached_book_info(USER, ASIN, "Leviathan Wakes", "asin")
        assert record.progress_percent == 33.0
        assert record.status_id is None
        assert record.session_is_active is False

        # Opening again is a no-op
        ProgressCache(path)

    def test_unusable_path(self, tmp_path) -> None:
        """A cache that cannot be opened raises CacheUnavailableError"""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        with pytest.raises(CacheUnavailableError):
            ProgressCache(str(blocker / "cache.db"))


class TestManagement:
    """Test statistics, export and cleanup"""

    def test_stats(self, cache) -> None:
        """Counts of books, editions, progress and sessions"""
        store(cache)
        cache.update_session_progress(USER, "9780316129084", "Caliban's War", "isbn", 3.0)
        stats = cache.get_cache_stats()
        assert stats["total_books"] == 2
        assert stats["books_with_editions"] == 1
        assert stats["books_with_progress"] == 1
        assert stats["active_sessions"] == 1
        assert stats["cache_file_size"] > 0

    def test_export(self, cache, tmp_path) -> None:
        """Every record is written to the JSON file"""
        store(cache)
        target = tmp_path / "export.json"
        assert cache.export_to_json(str(target)) == 1
        data = json.loads(target.read_text())
        assert list(data.values())[0]["edition_id"] == 301

    def test_clear_edition_mappings(self, cache) -> None:
        """Edition ids are forgotten for one user only"""
        store(cache)
        cache.store_book_sync_data("bob", ASIN, "Leviathan Wakes", 301, "asin", None, 10.0)
        assert cache.clear_edition_mappings(USER) == 1
        assert cache.get_edition_for_book(USER, ASIN, "Leviathan Wakes", "asin") is None
        assert cache.get_edition_for_book("bob", ASIN, "Leviathan Wakes", "asin") == 301

    def test_books_by_author(self, cache) -> None:
        """Books are listed per user and author"""
        store(cache)
        books = cache.get_books_by_author(USER, "James S. A. Corey")
        assert [book["title"] for book in books] == ["leviathan wakes"]

    def test_clear_cache(self, cache) -> None:
        """Clearing removes every record"""
        store(cache)
        cache.clear_cache()
        assert cache.get_cache_stats()["total_books"] == 0

    def test_commit_error(self, cache, monkeypatch) -> None:
        """A failing write raises CacheCommitError"""

        def broken_connect(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr("shelfbridge.cache.sqlite3.connect", broken_connect)
        with pytest.raises(CacheCommitError):
            store(cache)
