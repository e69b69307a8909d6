"""
Compensating actions for multi-step syncs

Hardcover has no transactions. When a book's cache commit fails after the
external writes went through, the recorded actions are undone in reverse
order so Hardcover and the cache do not silently diverge.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional


@dataclass
class ReversibleAction:
    """One external write and how to undo it.

    ``undo`` is None when Hardcover offers no way to reverse the write; rolling
    back such an action logs ``manual_cleanup`` for the user instead.
    """

    description: str
    undo: Optional[Callable[[], Any]] = None
    manual_cleanup: Optional[str] = None


class Transaction:
    """Unit of work collecting reversible actions"""

    def __init__(self, label: str, logger: Optional[logging.Logger] = None) -> None:
        self.label = label
        self.logger = logger or logging.getLogger(__name__)
        self.actions: List[ReversibleAction] = []
        self.committed = False

    def add(self, action: ReversibleAction) -> None:
        if self.committed:
            raise RuntimeError(f"Cannot add action to {self.label}: already committed")
        self.actions.append(action)

    def commit(self) -> None:
        self.committed = True
        self.actions = []

    def rollback(self) -> List[Exception]:
        """
        Undo recorded actions, newest first

        Every action is attempted even if an earlier one fails. Returns the
        errors raised by undo callbacks; each one is also logged.
        """
        errors: List[Exception] = []
        for action in reversed(self.actions):
            if action.undo is None:
                self.logger.warning(
                    f"⚠️ Cannot undo '{action.description}' for {self.label}. "
                    f"Manual cleanup needed: {action.manual_cleanup or action.description}"
                )
                continue
            try:
                action.undo()
                self.logger.info(f"↩ Rolled back '{action.description}' for {self.label}")
            except Exception as e:
                self.logger.error(f"Rollback of '{action.description}' failed for {self.label}: {str(e)}")
                errors.append(e)

        self.actions = []
        self.committed = True
        return errors
