"""Tests for the command line summary and connection check"""

import importlib
import logging
import re
from unittest.mock import MagicMock

main = importlib.import_module("shelfbridge.main")


def run_result(**overrides):
    result = {
        "success": True,
        "books_processed": 3,
        "books_synced": 1,
        "books_completed": 0,
        "books_auto_added": 0,
        "books_delayed": 0,
        "books_skipped": 2,
        "books_failed": 0,
        "duplicates_removed": 0,
        "sessions_flushed": 0,
        "sessions_failed": 0,
        "errors": [],
        "details": [],
    }
    result.update(overrides)
    return result


def fake_manager(result):
    manager = MagicMock()
    manager.user_id = "alice"
    manager.sync_progress.return_value = result
    return manager


class TestSyncSummary:
    """Test sync_once and sync_all"""

    def test_summary_reports_duration(self, caplog) -> None:
        """The run duration is logged in human-readable form"""
        caplog.set_level(logging.INFO)
        result = main.sync_once(fake_manager(run_result()))
        assert result["books_synced"] == 1
        assert re.search(r"Duration: \d+\.\d[smh]$", caplog.text, re.MULTILINE)
        assert "No errors encountered" in caplog.text

    def test_failed_sessions_are_warned(self, caplog) -> None:
        """Sessions that could not be flushed show up in the summary"""
        caplog.set_level(logging.INFO)
        result = run_result(
            success=True,
            books_failed=1,
            sessions_failed=1,
            errors=["leviathan wakes: Session flush failed: stale edition"],
        )
        main.sync_once(fake_manager(result))
        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert any("Sessions failed to flush: 1" in message for message in warnings)
        assert "leviathan wakes: Session flush failed" in caplog.text

    def test_sync_all_fails_on_errors(self) -> None:
        """Any user with errors makes the whole run fail"""
        clean = fake_manager(run_result())
        broken = fake_manager(run_result(errors=["boom"]))
        assert main.sync_all([clean]) is True
        assert main.sync_all([clean, broken]) is False


class TestConnectionCheck:
    """Test test_connections"""

    def test_lists_libraries_on_success(self, caplog) -> None:
        """A working Audiobookshelf connection lists the visible libraries"""
        caplog.set_level(logging.INFO)
        manager = fake_manager(run_result())
        manager.audiobookshelf.test_connection.return_value = True
        manager.audiobookshelf.get_libraries.return_value = [{"id": "lib1", "name": "Audiobooks"}]
        manager.hardcover.test_connection.return_value = True

        assert main.test_connections(manager) is True
        manager.audiobookshelf.get_libraries.assert_called_once_with()
        assert "Found 1 libraries: Audiobooks" in caplog.text

    def test_failed_connection_skips_library_listing(self) -> None:
        """Libraries are not requested when the connection fails"""
        manager = fake_manager(run_result())
        manager.audiobookshelf.test_connection.return_value = False
        manager.hardcover.test_connection.return_value = True

        assert main.test_connections(manager) is False
        manager.audiobookshelf.get_libraries.assert_not_called()
