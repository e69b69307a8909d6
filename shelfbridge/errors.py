"""
Exceptions raised by the sync engine

Every per-book error is caught by the SyncManager and reported in the run
result; none of them aborts a run on its own.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for sync engine errors"""

    def __init__(self, message: str, title: Optional[str] = None) -> None:
        super().__init__(message)
        self.title = title


class NotFoundError(SyncError):
    """No catalog entry matches the library item"""


class AmbiguousMatchError(SyncError):
    """Best title/author candidate scored below the confidence threshold"""

    def __init__(self, message: str, title: Optional[str] = None, score: float = 0.0) -> None:
        super().__init__(message, title)
        self.score = score


class InvalidInputError(SyncError):
    """Library item has missing or unparseable progress"""


class StaleCacheReferenceError(SyncError):
    """Cached edition id no longer exists in the user's library"""

    def __init__(self, message: str, title: Optional[str] = None, edition_id: Optional[int] = None) -> None:
        super().__init__(message, title)
        self.edition_id = edition_id


class ExternalWriteError(SyncError):
    """Hardcover rejected a write or the request failed"""


class CacheCommitError(SyncError):
    """Cache write failed after an external write succeeded"""


class CacheUnavailableError(SyncError):
    """The cache database cannot be opened or queried"""


class ConcurrencyError(SyncError):
    """Another worker is already processing the same library item"""
