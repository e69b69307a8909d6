"""Tests for compensating transactions"""

from unittest.mock import MagicMock

import pytest

from shelfbridge.transaction import ReversibleAction, Transaction


class TestTransaction:
    """Test Transaction rollback and commit"""

    def test_rollback_runs_in_reverse(self) -> None:
        """Undo steps run newest first"""
        calls = []
        tx = Transaction("book")
        tx.add(ReversibleAction("first", undo=lambda: calls.append("first")))
        tx.add(ReversibleAction("second", undo=lambda: calls.append("second")))
        assert tx.rollback() == []
        assert calls == ["second", "first"]

    def test_rollback_continues_after_failure(self) -> None:
        """A failing undo is reported and the rest still run"""
        later = MagicMock()
        tx = Transaction("book")
        tx.add(ReversibleAction("first", undo=later))
        tx.add(ReversibleAction("second", undo=MagicMock(side_effect=RuntimeError("nope"))))
        errors = tx.rollback()
        assert len(errors) == 1
        later.assert_called_once()

    def test_irreversible_action_logs_cleanup(self, caplog) -> None:
        """Actions without undo ask for manual cleanup"""
        tx = Transaction("'Leviathan Wakes'")
        tx.add(ReversibleAction("add book", manual_cleanup="remove it from your library"))
        assert tx.rollback() == []
        assert "Manual cleanup needed: remove it from your library" in caplog.text

    def test_commit_discards_actions(self) -> None:
        """Committed transactions keep nothing and refuse new actions"""
        undo = MagicMock()
        tx = Transaction("book")
        tx.add(ReversibleAction("first", undo=undo))
        tx.commit()
        assert tx.rollback() == []
        undo.assert_not_called()
        with pytest.raises(RuntimeError):
            tx.add(ReversibleAction("late"))
