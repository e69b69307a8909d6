"""
Session Manager - Delayed progress updates

While someone is actively listening, Audiobookshelf reports a slightly
different position on every run. Small changes are buffered in a session on
the cache record instead of being written to Hardcover each time. A session
is flushed when the change becomes significant, the book is finished, the
last Hardcover write is older than ``max_delay``, or nothing new has been
observed for ``session_timeout`` seconds.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .cache import ProgressCache
from .errors import CacheCommitError
from .models import CacheRecord
from .progress import is_complete

DEFAULT_DELAYED_UPDATES = {
    "enabled": False,
    "session_timeout": 900,
    "max_delay": 3600,
    "immediate_completion": True,
    "significant_change_threshold": 5.0,
}


def seconds_since(timestamp: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    if not timestamp:
        return None
    return ((now or datetime.now()) - datetime.fromisoformat(timestamp)).total_seconds()


def is_session_expired(
    session_last_change: Optional[str], session_timeout: float, now: Optional[datetime] = None
) -> bool:
    """A session expires once nothing changed for ``session_timeout`` seconds"""
    elapsed = seconds_since(session_last_change, now)
    return elapsed is not None and elapsed >= session_timeout


@dataclass
class UpdateDecision:
    should_delay: bool
    reason: str
    is_completion: bool = False
    forced: bool = False
    previous_progress: Optional[float] = None


class SessionManager:
    """Decides between immediate and delayed sync and owns session lifecycle"""

    def __init__(self, cache: ProgressCache, delayed_updates_config: Optional[Dict[str, Any]] = None) -> None:
        self.cache = cache
        self.logger = logging.getLogger(__name__)
        self.config = dict(DEFAULT_DELAYED_UPDATES)
        self.config.update(delayed_updates_config or {})
        self._validate_config()

        self.logger.debug(f"SessionManager initialized: {self.get_config_summary()}")

    def _validate_config(self) -> None:
        session_timeout = self.config["session_timeout"]
        max_delay = self.config["max_delay"]

        if not 60 <= session_timeout <= 7200:
            raise ValueError(f"Invalid session_timeout: {session_timeout}. Must be between 60 and 7200 seconds.")
        if not 300 <= max_delay <= 86400:
            raise ValueError(f"Invalid max_delay: {max_delay}. Must be between 300 and 86400 seconds.")
        if session_timeout >= max_delay:
            raise ValueError(f"session_timeout ({session_timeout}) must be less than max_delay ({max_delay})")

    @property
    def enabled(self) -> bool:
        return self.config["enabled"] is True

    @property
    def session_timeout(self) -> float:
        return self.config["session_timeout"]

    def should_delay_update(
        self,
        user_id: str,
        identifier: str,
        title: Optional[str],
        progress_percent: float,
        identifier_type: str = "isbn",
        is_finished: bool = False,
        now: Optional[datetime] = None,
    ) -> UpdateDecision:
        """
        Decide whether a progress observation can wait in a session

        Checked in order: feature disabled, completion, no cached record,
        max delay exceeded, significant change. Anything else is delayed.
        """
        if not self.enabled:
            return UpdateDecision(should_delay=False, reason="delayed_updates_disabled")

        if self.config["immediate_completion"] and is_complete(progress_percent, is_finished):
            return UpdateDecision(should_delay=False, reason="book_completion", is_completion=True)

        record = self.cache.get_cached_book_info(user_id, identifier, title, identifier_type)
        if record is None:
            return UpdateDecision(should_delay=False, reason="no_previous_progress")

        elapsed = seconds_since(record.last_hardcover_sync, now)
        if elapsed is not None and elapsed >= self.config["max_delay"]:
            self.logger.debug(f"Max delay exceeded for {title}: last Hardcover sync {elapsed:.0f}s ago")
            return UpdateDecision(should_delay=False, reason="max_delay_exceeded", forced=True)

        if record.session_is_active and record.session_pending_progress is not None:
            last_known = record.session_pending_progress
        else:
            last_known = record.progress_percent or 0.0

        change = abs(progress_percent - last_known)
        if change >= self.config["significant_change_threshold"]:
            return UpdateDecision(
                should_delay=False, reason="significant_progress_change", previous_progress=last_known
            )
        return UpdateDecision(should_delay=True, reason="active_session", previous_progress=last_known)

    def update_session(
        self,
        user_id: str,
        identifier: str,
        title: Optional[str],
        progress_percent: float,
        identifier_type: str = "isbn",
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Buffer an observation in the book's session

        An observation equal to the pending value is not a change and does not
        extend the session. Returns True when the session was written.
        """
        if not self.enabled:
            return False

        session = self.cache.get_session(user_id, identifier, title, identifier_type)
        if session and session.session_pending_progress is not None:
            if abs(session.session_pending_progress - progress_percent) <= 0.1:
                self.logger.debug(f"Session for {title} unchanged at {progress_percent:.1f}%")
                return False

        self.cache.update_session_progress(user_id, identifier, title, identifier_type, progress_percent, now=now)
        self.logger.debug(f"Updated session for {title}: {progress_percent:.1f}%")
        return True

    def complete_session(
        self, user_id: str, identifier: str, title: Optional[str], identifier_type: str = "isbn"
    ) -> bool:
        if not self.enabled:
            return False
        try:
            self.cache.clear_session(user_id, identifier, title, identifier_type)
        except CacheCommitError as e:
            self.logger.error(f"Error completing session for {title}: {str(e)}")
            return False
        self.logger.debug(f"Completed session for {title}")
        return True

    def get_expired_sessions(self, user_id: str, now: Optional[datetime] = None) -> List[CacheRecord]:
        """
        Sessions idle for at least ``session_timeout`` seconds

        Raises:
            CacheUnavailableError: If the cache cannot be queried
        """
        if not self.enabled:
            return []

        expired = [
            record
            for record in self.cache.get_active_sessions(user_id)
            if is_session_expired(record.session_last_change, self.session_timeout, now)
        ]
        if expired:
            self.logger.debug(f"Found {len(expired)} expired sessions for user {user_id}")
        return expired

    def process_expired_sessions(
        self, user_id: str, sync_callback: Callable[[CacheRecord], Any], now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """
        Flush every expired session through ``sync_callback``

        The callback performs the Hardcover write and cache commit. A failing
        session is counted and left pending for the next run.
        """
        if not self.enabled:
            return {"processed": 0, "errors": 0, "total": 0}

        expired = self.get_expired_sessions(user_id, now)
        processed = 0
        errors = 0
        for session in expired:
            try:
                self.logger.debug(f"Processing expired session for {session.title}")
                sync_callback(session)
                self.complete_session(session.user_id, session.identifier, session.title, session.identifier_type)
                processed += 1
            except Exception as e:
                self.logger.error(f"Error processing expired session for {session.title}: {str(e)}")
                errors += 1

        if expired:
            self.logger.info(f"Processed expired sessions for user {user_id}: {processed} flushed, {errors} errors")
        return {"processed": processed, "errors": errors, "total": len(expired)}

    def get_config_summary(self) -> Dict[str, Any]:
        return {
            "enabled": self.config["enabled"],
            "session_timeout_minutes": round(self.config["session_timeout"] / 60),
            "max_delay_minutes": round(self.config["max_delay"] / 60),
            "immediate_completion": self.config["immediate_completion"],
        }
