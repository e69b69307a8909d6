"""
Progress Cache - SQLite store of what was last synced to Hardcover

One row per (user, identifier, title). Besides the last committed progress,
status and edition, each row carries the delayed-update session columns.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from .errors import CacheCommitError, CacheUnavailableError
from .models import CacheRecord, SyncCheck

WANT_TO_READ = 1
PROGRESS_TOLERANCE = 0.1

# (schema version, columns added by that version). Additive only.
MIGRATIONS = [
    (
        1,
        [
            ("status_id", "INTEGER"),
            ("started_at", "TEXT"),
            ("finished_at", "TEXT"),
            ("last_listened_at", "TEXT"),
        ],
    ),
    (
        2,
        [
            ("session_pending_progress", "REAL"),
            ("session_last_change", "TEXT"),
            ("session_is_active", "INTEGER DEFAULT 0"),
            ("last_hardcover_sync", "TEXT"),
        ],
    ),
]
SCHEMA_VERSION = MIGRATIONS[-1][0]

KEY_CLAUSE = "user_id = ? AND identifier = ? AND identifier_type = ? AND title = ?"


def _timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).isoformat()


class ProgressCache:
    """SQLite-based cache of synced progress, edition mappings and sessions"""

    def __init__(self, cache_file: str = "data/.book_cache.db") -> None:
        self.cache_file = cache_file
        self.logger = logging.getLogger(__name__)
        self.logger.debug(f"ProgressCache: database file {os.path.abspath(self.cache_file)}")
        try:
            self._init_database()
        except (sqlite3.Error, OSError) as e:
            self.logger.error(f"Failed to initialize database at {self.cache_file}: {str(e)}")
            raise CacheUnavailableError(f"Cannot open cache {self.cache_file}: {str(e)}")

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection for one operation; commits on success, rolls back on error"""
        conn = sqlite3.connect(self.cache_file, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_database(self) -> None:
        cache_dir = os.path.dirname(self.cache_file)
        if cache_dir and not os.path.exists(cache_dir):
            os.makedirs(cache_dir, exist_ok=True)
            self.logger.info(f"Created cache directory: {cache_dir}")

        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS books (
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
            """)
            self._migrate(conn)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_user_id ON books(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_identifier ON books(identifier)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_edition_id ON books(edition_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_author ON books(author)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_session ON books(user_id, session_is_active)")

    def _migrate(self, conn: sqlite3.Connection) -> None:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        existing = {row["name"] for row in conn.execute("PRAGMA table_info(books)")}

        for target, columns in MIGRATIONS:
            if target <= version:
                continue
            for name, column_type in columns:
                if name in existing:
                    continue
                try:
                    conn.execute(f"ALTER TABLE books ADD COLUMN {name} {column_type}")
                    existing.add(name)
                except sqlite3.OperationalError:
                    pass  # Column already exists
            conn.execute(f"PRAGMA user_version = {target}")
            self.logger.info(f"Cache schema migrated to version {target}")

    @staticmethod
    def _normalize_title(title: Optional[str]) -> str:
        return (title or "").lower().strip()

    def _key(self, user_id: str, identifier: str, title: Optional[str], identifier_type: str) -> tuple:
        return (user_id, identifier, identifier_type, self._normalize_title(title))

    # Read helpers

    def get_cached_book_info(
        self, user_id: str, identifier: str, title: Optional[str], identifier_type: str = "isbn"
    ) -> Optional[CacheRecord]:
        """
        Get the cached record for a book

        Returns:
            CacheRecord if found, None on a miss or a database error
        """
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT * FROM books WHERE {KEY_CLAUSE}",
                    self._key(user_id, identifier, title, identifier_type),
                ).fetchone()
        except sqlite3.Error as e:
            self.logger.error(f"Error reading cache for {title}: {str(e)}")
            return None

        if row is None:
            return None
        return CacheRecord.from_row(row)

    def get_edition_for_book(
        self, user_id: str, identifier: str, title: Optional[str], identifier_type: str = "isbn"
    ) -> Optional[int]:
        record = self.get_cached_book_info(user_id, identifier, title, identifier_type)
        if record and record.edition_id:
            self.logger.debug(
                f"Cache hit for {title}: edition {record.edition_id} (using {identifier_type.upper()})"
            )
            return int(record.edition_id)
        return None

    def get_last_progress(
        self, user_id: str, identifier: str, title: Optional[str], identifier_type: str = "isbn"
    ) -> Optional[float]:
        record = self.get_cached_book_info(user_id, identifier, title, identifier_type)
        if record and record.progress_percent is not None:
            return float(record.progress_percent)
        return None

    def has_progress_changed(
        self,
        user_id: str,
        identifier: str,
        title: Optional[str],
        current_progress: float,
        identifier_type: str = "isbn",
    ) -> bool:
        """
        Check if progress has changed since last sync

        A cache miss counts as changed. Differences up to 0.1 percentage
        points are treated as unchanged.
        """
        last_progress = self.get_last_progress(user_id, identifier, title, identifier_type)
        if last_progress is None:
            self.logger.debug(f"🔍 No previous progress found for {title} ({identifier_type}: {identifier})")
            return True

        progress_diff = abs(current_progress - last_progress)
        return progress_diff > PROGRESS_TOLERANCE

    def needs_sync_check(
        self,
        user_id: str,
        identifier: str,
        title: Optional[str],
        current_progress: float,
        identifier_type: str = "isbn",
        current_edition_id: Optional[int] = None,
        current_status_id: Optional[int] = None,
    ) -> SyncCheck:
        """
        Decide whether a book has to go through the full sync

        Three triggers are evaluated independently: progress moved beyond the
        tolerance, the book sits in "Want to Read" (so the status still needs
        moving), and the edition differs from the cached one.
        """
        cached = self.get_cached_book_info(user_id, identifier, title, identifier_type)
        if cached is None:
            return SyncCheck(needs_sync=True, reason="no cached data")

        if cached.progress_percent is None:
            progress_changed = True
        else:
            progress_changed = abs(current_progress - cached.progress_percent) > PROGRESS_TOLERANCE

        status_id = current_status_id if current_status_id is not None else cached.status_id
        status_changed = status_id == WANT_TO_READ

        edition_changed = (
            current_edition_id is not None
            and cached.edition_id is not None
            and int(current_edition_id) != int(cached.edition_id)
        )

        reasons = []
        if progress_changed:
            reasons.append(f"progress changed ({cached.progress_percent} -> {current_progress:.1f}%)")
        if status_changed:
            reasons.append("status is Want to Read")
        if edition_changed:
            reasons.append(f"edition changed ({cached.edition_id} -> {current_edition_id})")

        return SyncCheck(
            needs_sync=bool(reasons),
            reason=", ".join(reasons) if reasons else "Progress unchanged",
            progress_changed=progress_changed,
            status_changed=status_changed,
            edition_changed=edition_changed,
            cached=cached,
        )

    # Commit path

    def store_book_sync_data(
        self,
        user_id: str,
        identifier: str,
        title: Optional[str],
        edition_id: Optional[int],
        identifier_type: str,
        author: Optional[str],
        progress_percent: float,
        status_id: Optional[int] = None,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
        last_listened_at: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Record a successful sync and end any session, in one transaction

        Raises:
            CacheCommitError: If the write fails
        """
        current_time = _timestamp(now)
        key = self._key(user_id, identifier, title, identifier_type)
        try:
            with self._get_connection() as conn:
                exists = conn.execute(f"SELECT 1 FROM books WHERE {KEY_CLAUSE}", key).fetchone()
                if exists:
                    conn.execute(
                        f"""
                        UPDATE books SET
                            edition_id = COALESCE(?, edition_id),
                            author = COALESCE(?, author),
                            progress_percent = ?,
                            status_id = COALESCE(?, status_id),
                            started_at = COALESCE(?, started_at),
                            finished_at = COALESCE(?, finished_at),
                            last_listened_at = COALESCE(?, last_listened_at),
                            last_sync = ?,
                            last_hardcover_sync = ?,
                            updated_at = ?,
                            session_pending_progress = NULL,
                            session_last_change = NULL,
                            session_is_active = 0
                        WHERE {KEY_CLAUSE}
                        """,
                        (
                            edition_id,
                            author,
                            progress_percent,
                            status_id,
                            started_at,
                            finished_at,
                            last_listened_at,
                            current_time,
                            current_time,
                            current_time,
                        )
                        + key,
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO books (
                            user_id, identifier, identifier_type, title, edition_id, author,
                            progress_percent, status_id, started_at, finished_at, last_listened_at,
                            last_sync, last_hardcover_sync, updated_at, session_is_active
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                        """,
                        (
                            user_id,
                            identifier,
                            identifier_type,
                            self._normalize_title(title),
                            edition_id,
                            author,
                            progress_percent,
                            status_id,
                            started_at,
                            finished_at,
                            last_listened_at,
                            current_time,
                            current_time,
                            current_time,
                        ),
                    )
        except sqlite3.Error as e:
            raise CacheCommitError(f"Failed to store sync data: {str(e)}", title=title)

        self.logger.debug(
            f"[CACHE WRITE] {user_id} {identifier_type}:{identifier} '{title}' -> "
            f"{progress_percent:.1f}% (edition {edition_id}, status {status_id})"
        )

    def store_progress(
        self,
        user_id: str,
        identifier: str,
        title: Optional[str],
        progress_percent: float,
        identifier_type: str = "isbn",
        now: Optional[datetime] = None,
    ) -> None:
        """Store progress only, keeping every other column"""
        current_time = _timestamp(now)
        key = self._key(user_id, identifier, title, identifier_type)
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE books SET progress_percent = ?, last_sync = ?, updated_at = ? WHERE {KEY_CLAUSE}",
                    (progress_percent, current_time, current_time) + key,
                )
                if cursor.rowcount == 0:
                    conn.execute(
                        """
                        INSERT INTO books (user_id, identifier, identifier_type, title, progress_percent, last_sync, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        key + (progress_percent, current_time, current_time),
                    )
        except sqlite3.Error as e:
            raise CacheCommitError(f"Failed to store progress: {str(e)}", title=title)

    def store_edition_mapping(
        self,
        user_id: str,
        identifier: str,
        title: Optional[str],
        edition_id: int,
        identifier_type: str = "isbn",
        author: Optional[str] = None,
    ) -> None:
        """
        Store edition mapping in cache

        Only updates edition_id, author and updated_at if the row exists and
        never touches progress.
        """
        current_time = _timestamp()
        key = self._key(user_id, identifier, title, identifier_type)
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE books SET edition_id = ?, author = COALESCE(?, author), updated_at = ? WHERE {KEY_CLAUSE}",
                    (edition_id, author, current_time) + key,
                )
                if cursor.rowcount == 0:
                    conn.execute(
                        """
                        INSERT INTO books (user_id, identifier, identifier_type, title, edition_id, author, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        key + (edition_id, author, current_time),
                    )
            self.logger.debug(f"Cached edition mapping for {title}: {identifier} ({identifier_type.upper()}) -> {edition_id}")
        except sqlite3.Error as e:
            self.logger.error(f"Error storing edition mapping for {title}: {str(e)}")

    # Sessions

    def update_session_progress(
        self,
        user_id: str,
        identifier: str,
        title: Optional[str],
        identifier_type: str,
        progress_percent: float,
        now: Optional[datetime] = None,
    ) -> None:
        """Buffer a progress observation and stamp the session's last change"""
        current_time = _timestamp(now)
        key = self._key(user_id, identifier, title, identifier_type)
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE books SET session_pending_progress = ?, session_last_change = ?,
                        session_is_active = 1, updated_at = ?
                    WHERE {KEY_CLAUSE}
                    """,
                    (progress_percent, current_time, current_time) + key,
                )
                if cursor.rowcount == 0:
                    conn.execute(
                        """
                        INSERT INTO books (user_id, identifier, identifier_type, title,
                            session_pending_progress, session_last_change, session_is_active, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                        """,
                        key + (progress_percent, current_time, current_time),
                    )
        except sqlite3.Error as e:
            raise CacheCommitError(f"Failed to update session: {str(e)}", title=title)

    def get_session(
        self, user_id: str, identifier: str, title: Optional[str], identifier_type: str = "isbn"
    ) -> Optional[CacheRecord]:
        """Return the record if it has an active session"""
        record = self.get_cached_book_info(user_id, identifier, title, identifier_type)
        if record and record.session_is_active:
            return record
        return None

    def get_active_sessions(self, user_id: str) -> List[CacheRecord]:
        """
        All records of a user with an active session

        Raises:
            CacheUnavailableError: If the database cannot be queried
        """
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM books WHERE user_id = ? AND session_is_active = 1 ORDER BY session_last_change",
                    (user_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise CacheUnavailableError(f"Cannot read sessions: {str(e)}")
        return [CacheRecord.from_row(row) for row in rows]

    def clear_session(
        self, user_id: str, identifier: str, title: Optional[str], identifier_type: str = "isbn"
    ) -> None:
        key = self._key(user_id, identifier, title, identifier_type)
        try:
            with self._get_connection() as conn:
                conn.execute(
                    f"""
                    UPDATE books SET session_pending_progress = NULL, session_last_change = NULL,
                        session_is_active = 0
                    WHERE {KEY_CLAUSE}
                    """,
                    key,
                )
        except sqlite3.Error as e:
            raise CacheCommitError(f"Failed to clear session: {str(e)}", title=title)

    # Cache management methods

    def clear_cache(self) -> None:
        """Clear all cached data"""
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM books")
            self.logger.info("Book cache cleared")
        except sqlite3.Error as e:
            self.logger.error(f"Error clearing cache: {str(e)}")

    def clear_edition_mappings(self, user_id: Optional[str] = None) -> int:
        """Forget cached editions so the next sync matches books again"""
        try:
            with self._get_connection() as conn:
                if user_id is None:
                    cursor = conn.execute("UPDATE books SET edition_id = NULL WHERE edition_id IS NOT NULL")
                else:
                    cursor = conn.execute(
                        "UPDATE books SET edition_id = NULL WHERE user_id = ? AND edition_id IS NOT NULL",
                        (user_id,),
                    )
                cleared = cursor.rowcount
            self.logger.info(f"Cleared {cleared} edition mappings")
            return cleared
        except sqlite3.Error as e:
            self.logger.error(f"Error clearing edition mappings: {str(e)}")
            return 0

    def get_cache_stats(self) -> Dict[str, int]:
        """Get cache statistics"""
        stats = {
            "total_books": 0,
            "books_with_editions": 0,
            "books_with_progress": 0,
            "active_sessions": 0,
            "cache_file_size": 0,
        }
        try:
            with self._get_connection() as conn:
                stats["total_books"] = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
                stats["books_with_editions"] = conn.execute(
                    "SELECT COUNT(*) FROM books WHERE edition_id IS NOT NULL"
                ).fetchone()[0]
                stats["books_with_progress"] = conn.execute(
                    "SELECT COUNT(*) FROM books WHERE progress_percent IS NOT NULL"
                ).fetchone()[0]
                stats["active_sessions"] = conn.execute(
                    "SELECT COUNT(*) FROM books WHERE session_is_active = 1"
                ).fetchone()[0]
        except sqlite3.Error as e:
            self.logger.error(f"Error getting cache stats: {str(e)}")

        if os.path.exists(self.cache_file):
            stats["cache_file_size"] = os.path.getsize(self.cache_file)
        return stats

    def export_to_json(self, filename: str = "book_cache_export.json") -> int:
        """
        Export cache data to JSON for backup/debugging

        Returns:
            Number of exported records
        """
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY user_id, identifier, title").fetchall()

        export_data: Dict[str, Any] = {}
        for row in rows:
            record = dict(row)
            key = f"{record['user_id']}:{record['identifier_type']}:{record['identifier']}_{record['title']}"
            export_data[key] = record

        with open(filename, "w") as f:
            json.dump(export_data, f, indent=2)

        self.logger.info(f"Cache exported to {filename} ({len(export_data)} records)")
        return len(export_data)

    def get_books_by_author(self, user_id: str, author_name: str) -> List[Dict[str, Any]]:
        """
        Get all books by a specific author

        Returns:
            List of book records with identifier, title, edition and progress
        """
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    """
                    SELECT identifier, identifier_type, title, author, edition_id, progress_percent, last_sync
                    FROM books
                    WHERE user_id = ? AND author = ?
                    ORDER BY title
                    """,
                    (user_id, author_name),
                ).fetchall()
        except sqlite3.Error as e:
            self.logger.error(f"Error getting books by author {author_name}: {str(e)}")
            return []

        books = [dict(row) for row in rows]
        self.logger.debug(f"Found {len(books)} books by {author_name}")
        return books
