"""
Sync Manager - Coordinates synchronization between Audiobookshelf and Hardcover

One SyncManager serves one user. A run fetches the user's Audiobookshelf
progress and Hardcover library, flushes expired listening sessions, then
pushes every changed book through the pipeline:

    early cache check -> session decision -> match -> write -> cache commit
"""

import concurrent.futures
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from tqdm import tqdm

from .audiobookshelf_client import AudiobookshelfClient
from .cache import ProgressCache
from .cache_keys import identifier_for_item
from .config import merge_with_defaults
from .errors import (
    AmbiguousMatchError,
    CacheCommitError,
    CacheUnavailableError,
    ConcurrencyError,
    InvalidInputError,
    NotFoundError,
    StaleCacheReferenceError,
    SyncError,
)
from .hardcover_client import HardcoverClient
from .matching.book_matcher import TIER_IDENTIFIER, BookMatcher
from .matching.edition_selector import edition_format, is_audio_edition
from .matching.normalization import normalize_author, normalize_title
from .models import BookIdentifier, CacheRecord, LibraryItem, MatchResult, SyncCheck
from .progress import analyze_regression, is_complete
from .session_manager import SessionManager
from .transaction import ReversibleAction, Transaction
from .utils import calculate_current_page, calculate_current_seconds

WANT_TO_READ = 1
CURRENTLY_READING = 2
READ = 3

# Per-book errors that mean "nothing to do", as opposed to a failed sync
SKIP_ERRORS = (InvalidInputError, NotFoundError, AmbiguousMatchError, ConcurrencyError)

STATUS_MARKERS = {
    "synced": "✓ Synced",
    "completed": "✓ Completed",
    "auto_added": "✓ Added",
    "would_sync": "✓ Would sync",
    "would_complete": "✓ Would complete",
    "would_auto_add": "✓ Would add",
    "skipped": "⏭ Skipped",
    "delayed": "⏳ Delayed",
    "failed": "✗ Failed",
}


def _outcome(status: str, title: str, reason: str, **extra: Any) -> Dict[str, Any]:
    result = {"status": status, "title": title, "reason": reason}
    result.update(extra)
    return result


class SyncManager:
    """Manages synchronization between Audiobookshelf and Hardcover for one user"""

    def __init__(
        self,
        user: Dict[str, Any],
        global_config: Dict[str, Any],
        dry_run: bool = False,
        audiobookshelf: Optional[Any] = None,
        hardcover: Optional[Any] = None,
        cache: Optional[ProgressCache] = None,
    ) -> None:
        self.user = user
        self.user_id = user["id"]
        self.settings = merge_with_defaults(global_config)
        self.dry_run = dry_run or self.settings["dry_run"]
        self.logger = logging.getLogger(f"SyncManager.{self.user_id}")

        self.min_progress_threshold = self.settings["min_progress_threshold"]
        self.enable_parallel = self.settings["parallel"]
        self.max_workers = self.settings["workers"]
        self.reread_config = self.settings["reread_detection"]

        self.audiobookshelf = audiobookshelf or AudiobookshelfClient(
            user["abs_url"], user["abs_token"], timezone=self.settings["timezone"]
        )
        self.hardcover = hardcover or HardcoverClient(
            user["hardcover_token"],
            rate_limit=self.settings["hardcover_rate_limit"],
            max_concurrent=self.settings["hardcover_max_concurrent"],
        )
        self.cache = cache or ProgressCache(self.settings["cache_file"])
        self.session_manager = SessionManager(self.cache, self.settings["delayed_updates"])
        self.matcher = BookMatcher(self.hardcover, self.settings)

        self._in_flight: set = set()
        self._in_flight_lock = threading.Lock()
        self._sessions_available = True
        self.timing_data: Dict[str, float] = {}

        self.logger.info(
            f"SyncManager initialized for user {self.user_id} (dry_run: {self.dry_run}, "
            f"min_threshold: {self.min_progress_threshold}%, parallel: {self.enable_parallel}, "
            f"workers: {self.max_workers})"
        )

    @property
    def delayed_updates_active(self) -> bool:
        return self.session_manager.enabled and self._sessions_available

    def sync_progress(self) -> Dict[str, Any]:
        """
        Main synchronization method
        Returns dictionary with sync results
        """
        self.logger.info(f"Starting progress synchronization for user {self.user_id}...")
        self.timing_data = {}
        self._sessions_available = True

        result: Dict[str, Any] = {
            "success": False,
            "books_processed": 0,
            "books_synced": 0,
            "books_completed": 0,
            "books_auto_added": 0,
            "books_skipped": 0,
            "books_delayed": 0,
            "books_failed": 0,
            "duplicates_removed": 0,
            "sessions_flushed": 0,
            "sessions_failed": 0,
            "errors": [],
            "details": [],
        }

        try:
            start = time.time()
            items = self.audiobookshelf.get_reading_progress()
            self.timing_data["fetch_audiobookshelf"] = time.time() - start

            start = time.time()
            self.logger.info("Fetching user's library from Hardcover...")
            user_books = self.hardcover.get_user_books()
            self.matcher.set_user_library(user_books)
            self.timing_data["fetch_hardcover"] = time.time() - start
            self.logger.info(f"Found {len(user_books)} books in Hardcover library")

            flushed, flush_failures = self._flush_expired_sessions()
            result["sessions_flushed"] = flushed
            for failure in flush_failures:
                result["sessions_failed"] += 1
                result["books_failed"] += 1
                result["errors"].append(f"{failure['title']}: {failure['reason']}")
                result["details"].append(failure)
                self.logger.error(f"✗ Session flush failed: {failure['title']} - {failure['reason']}")

            if not items:
                self.logger.warning("No reading progress found in Audiobookshelf")
                result["success"] = True
                return result

            items, duplicates = self.deduplicate(items)
            result["duplicates_removed"] = duplicates
            if duplicates:
                self.logger.info(f"Removed {duplicates} duplicate library items")

            start = time.time()
            if self.enable_parallel and len(items) > 1:
                self.logger.info(f"Processing {len(items)} books in parallel with {self.max_workers} workers")
                sync_results = self._sync_books_parallel(items)
            else:
                self.logger.info(f"Processing {len(items)} books sequentially")
                sync_results = self._sync_books_sequential(items)
            self.timing_data["sync_loop"] = time.time() - start

            for sync_result in sync_results:
                self._record_result(result, sync_result)

            result["success"] = True
            self.print_timing_summary()
            self.logger.info(
                f"Synchronization completed: {result['books_synced']} synced, "
                f"{result['books_completed']} completed, {result['books_auto_added']} auto-added, "
                f"{result['books_delayed']} delayed, {result['books_skipped']} skipped, "
                f"{result['books_failed']} failed"
            )

        except Exception as e:
            error_msg = f"Synchronization failed: {str(e)}"
            self.logger.error(error_msg)
            result["errors"].append(error_msg)

        return result

    def _record_result(self, result: Dict[str, Any], sync_result: Dict[str, Any]) -> None:
        status = sync_result["status"]
        title = sync_result["title"]
        result["books_processed"] += 1

        if status in ("synced", "would_sync"):
            result["books_synced"] += 1
            self.logger.info(f"✓ Synced: {title}")
        elif status in ("completed", "would_complete"):
            result["books_completed"] += 1
            self.logger.info(f"✓ Completed: {title}")
        elif status in ("auto_added", "would_auto_add"):
            result["books_auto_added"] += 1
            self.logger.info(f"✓ Auto-added: {title}")
        elif status == "delayed":
            result["books_delayed"] += 1
            self.logger.info(f"⏳ Delayed: {title} - {sync_result['reason']}")
        elif status == "skipped":
            result["books_skipped"] += 1
            self.logger.info(f"⏭ Skipped: {title} - {sync_result['reason']}")
        else:
            result["books_failed"] += 1
            result["errors"].append(f"{title}: {sync_result['reason']}")
            self.logger.error(f"✗ Failed: {title} - {sync_result['reason']}")

        result["details"].append(sync_result)

    @staticmethod
    def deduplicate(items: List[LibraryItem]) -> Tuple[List[LibraryItem], int]:
        """
        Drop repeated library items

        An item is a duplicate when its id, its content key (inode/path) or
        its normalized title and author were already seen. The first
        occurrence wins.
        """
        seen_ids = set()
        seen_content = set()
        seen_names = set()
        unique = []
        for item in items:
            name = (normalize_title(item.title), normalize_author(item.author))
            if (
                item.id in seen_ids
                or (item.content_key and item.content_key in seen_content)
                or (item.title and name in seen_names)
            ):
                continue
            seen_ids.add(item.id)
            if item.content_key:
                seen_content.add(item.content_key)
            if item.title:
                seen_names.add(name)
            unique.append(item)
        return unique, len(items) - len(unique)

    def _sync_books_sequential(self, items: List[LibraryItem]) -> List[Dict[str, Any]]:
        """Process books one by one with per-book timing"""
        sync_results = []
        with tqdm(total=len(items), desc="Syncing books", unit="book") as pbar:
            for item in items:
                title = item.display_title
                pbar.set_description(f"Syncing: {title[:30]}{'...' if len(title) > 30 else ''}")
                sync_result = self._timed_sync(item)
                sync_results.append(sync_result)
                pbar.set_postfix({"status": STATUS_MARKERS.get(sync_result["status"], sync_result["status"])})
                pbar.update(1)
        return sync_results

    def _sync_books_parallel(self, items: List[LibraryItem]) -> List[Dict[str, Any]]:
        """Process books in chunks of ``workers`` on a thread pool"""
        sync_results = []
        with tqdm(total=len(items), desc="Syncing books (parallel)", unit="book") as pbar:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                for offset in range(0, len(items), self.max_workers):
                    chunk = items[offset : offset + self.max_workers]
                    future_to_item = {executor.submit(self._timed_sync, item): item for item in chunk}

                    for future in concurrent.futures.as_completed(future_to_item):
                        item = future_to_item[future]
                        try:
                            sync_result = future.result()
                        except Exception as e:
                            sync_result = _outcome("failed", item.display_title, f"Error processing book: {str(e)}")
                        sync_results.append(sync_result)
                        pbar.set_postfix({"status": STATUS_MARKERS.get(sync_result["status"], sync_result["status"])})
                        pbar.update(1)
        return sync_results

    def _timed_sync(self, item: LibraryItem) -> Dict[str, Any]:
        start = time.time()
        sync_result = self.sync_single_book(item)
        duration = time.time() - start
        self.timing_data[f"book_{item.display_title[:20]}"] = duration
        self.logger.debug(f"Book '{item.display_title}' processed in {duration:.2f}s")
        return sync_result

    def sync_single_book(self, item: LibraryItem) -> Dict[str, Any]:
        """
        Sync one library item and report the outcome

        Never raises. Per-book errors become ``skipped`` or ``failed``
        outcomes. A second request for an item that is already being
        processed is skipped.
        """
        title = item.display_title
        acquired = False
        try:
            with self._in_flight_lock:
                if item.id in self._in_flight:
                    raise ConcurrencyError("already being processed", title=title)
                self._in_flight.add(item.id)
                acquired = True
            return self._process_book(item)
        except SKIP_ERRORS as e:
            return _outcome("skipped", title, str(e))
        except SyncError as e:
            return _outcome("failed", title, str(e), error_type=type(e).__name__)
        except Exception as e:
            self.logger.error(f"Error syncing {title}: {str(e)}")
            return _outcome("failed", title, f"Error syncing {title}: {str(e)}", error_type=type(e).__name__)
        finally:
            if acquired:
                with self._in_flight_lock:
                    self._in_flight.discard(item.id)

    def _process_book(self, item: LibraryItem) -> Dict[str, Any]:
        title = item.display_title
        progress = item.progress_percent
        if progress is None:
            raise InvalidInputError("Missing or invalid progress", title=title)

        complete = is_complete(progress, item.is_finished)
        if progress < self.min_progress_threshold and not complete:
            return _outcome(
                "skipped", title, f"Progress {progress:.1f}% below threshold {self.min_progress_threshold}%"
            )

        identifier = identifier_for_item(item)
        direct = self.matcher.lookup_identifier(item)
        cached = self.cache.get_cached_book_info(self.user_id, identifier.value, item.title, identifier.type_name)

        if not self.settings["force_sync"]:
            check = self._early_check(item, identifier, direct, cached)
            if not check.needs_sync:
                return _outcome("skipped", title, "Progress unchanged")
            self.logger.debug(f"'{title}' needs sync: {check.reason}")

            delayed = self._maybe_delay(item, identifier, check)
            if delayed:
                return delayed
        else:
            check = None

        match = self._resolve_match(item, direct, cached)
        return self._apply_match(item, identifier, match, cached, check)

    def _early_check(
        self,
        item: LibraryItem,
        identifier: BookIdentifier,
        direct: Optional[MatchResult],
        cached: Optional[CacheRecord],
    ) -> SyncCheck:
        """Compare the observation with the cache using the live edition and status"""
        if direct:
            edition_id = direct.edition_id
            status_id = direct.user_book.get("status_id")
        else:
            edition_id = cached.edition_id if cached else None
            user_book = self.matcher.find_user_book_by_edition_id(edition_id) if edition_id else None
            status_id = user_book.get("status_id") if user_book else None

        return self.cache.needs_sync_check(
            self.user_id,
            identifier.value,
            item.title,
            item.progress_percent,
            identifier.type_name,
            current_edition_id=edition_id,
            current_status_id=status_id,
        )

    def _maybe_delay(
        self, item: LibraryItem, identifier: BookIdentifier, check: SyncCheck
    ) -> Optional[Dict[str, Any]]:
        """Buffer the observation in a session, or return None to sync now"""
        if not self.delayed_updates_active:
            return None

        # Status and edition changes are not progress deltas and never wait
        if check.status_changed or check.edition_changed:
            self.logger.debug(f"Immediate sync for '{item.display_title}': {check.reason}")
            return None

        decision = self.session_manager.should_delay_update(
            self.user_id,
            identifier.value,
            item.title,
            item.progress_percent,
            identifier.type_name,
            is_finished=item.is_finished,
        )
        if not decision.should_delay:
            self.logger.debug(f"Immediate sync for '{item.display_title}': {decision.reason}")
            return None

        if self.dry_run:
            return _outcome("delayed", item.display_title, f"Would buffer {item.progress_percent:.1f}% in session")

        self.session_manager.update_session(
            self.user_id, identifier.value, item.title, item.progress_percent, identifier.type_name
        )
        return _outcome(
            "delayed",
            item.display_title,
            f"Buffered {item.progress_percent:.1f}% in active session",
            previous_progress=decision.previous_progress,
        )

    def _resolve_match(
        self, item: LibraryItem, direct: Optional[MatchResult], cached: Optional[CacheRecord]
    ) -> MatchResult:
        """
        Direct identifier hit, else the cached edition, else a full match

        Raises:
            StaleCacheReferenceError: Cached edition is gone from the library
            NotFoundError: Nothing in Hardcover matches the item
        """
        title = item.display_title
        if direct:
            return direct

        if cached and cached.edition_id:
            edition = self.matcher.find_edition(cached.edition_id)
            if edition is None:
                raise StaleCacheReferenceError(
                    f"Cached edition {cached.edition_id} is no longer in the Hardcover library",
                    title=title,
                    edition_id=cached.edition_id,
                )
            user_book = self.matcher.find_user_book_by_edition_id(cached.edition_id)
            self.logger.debug(f"Using cached edition {cached.edition_id} for '{title}'")
            return MatchResult(
                user_book=user_book,
                book=user_book.get("book") or {},
                edition=edition,
                match_type="cache",
                tier=0,
            )

        match = self.matcher.find_match(item)
        if match is None:
            raise NotFoundError("No matching book found in Hardcover", title=title)
        return match

    def _format_mismatch(self, item: LibraryItem, match: MatchResult) -> Optional[str]:
        """Describe a search match whose edition format differs from the item's media"""
        if match.tier in (0, TIER_IDENTIFIER):
            return None
        found = edition_format(match.edition)
        if found in (None, "unknown"):
            return None
        if item.is_audio and found != "audio":
            return f"audiobook matched to {found} edition"
        if not item.is_audio and found == "audio":
            return "ebook matched to audio edition"
        return None

    def _apply_match(
        self,
        item: LibraryItem,
        identifier: BookIdentifier,
        match: MatchResult,
        cached: Optional[CacheRecord],
        check: Optional[SyncCheck],
    ) -> Dict[str, Any]:
        title = item.display_title
        progress = item.progress_percent
        complete = is_complete(progress, item.is_finished)
        extra: Dict[str, Any] = {"match_type": match.match_type, "edition_id": match.edition_id}

        mismatch = self._format_mismatch(item, match)
        if mismatch:
            if not self.settings["cross_format_sync"]:
                return _outcome("skipped", title, f"Edition format mismatch ({mismatch}), cross_format_sync disabled")
            extra["matching_method"] = "cross_format"

        if match.is_search_result and not self.settings["auto_add_books"]:
            return _outcome("skipped", title, "Book not in Hardcover library (auto_add_books disabled)", **extra)

        edition = match.edition
        use_seconds = is_audio_edition(edition) and bool(edition.get("audio_seconds"))
        total = edition.get("audio_seconds") if use_seconds else edition.get("pages")
        if not total:
            return _outcome("skipped", title, "No page count or duration available", **extra)

        previous = cached.progress_percent if cached else None
        if self.settings["prevent_progress_regression"] and not complete:
            regression = analyze_regression(previous, progress, self.reread_config)
            if regression.should_block:
                self.logger.warning(f"🛡️ Blocked regression for '{title}': {regression.reason}")
                return _outcome("skipped", title, f"Progress regression blocked: {regression.reason}", **extra)
            if regression.should_warn:
                self.logger.warning(f"⚠️ '{title}': {regression.reason}")

        if self.dry_run:
            return self._dry_run_outcome(title, match, complete, progress, **extra)

        tx = Transaction(f"'{title}'", self.logger)
        auto_added = False
        if match.is_search_result:
            user_book = self._add_to_library(tx, title, match)
            auto_added = True
        else:
            user_book = match.user_book

        write_progress = check is None or check.progress_changed or check.edition_changed or not cached
        action, new_status = self._push_progress(
            tx,
            title,
            user_book,
            edition,
            use_seconds,
            total,
            progress,
            cached_status=cached.status_id if cached else None,
            is_finished=item.is_finished,
            current_time=item.current_time,
            started_at=item.started_at,
            finished_at=item.finished_at,
            write_progress=write_progress,
        )

        self._commit(
            tx,
            title,
            identifier,
            item.title,
            item.author,
            match.edition_id,
            progress,
            new_status,
            started_at=item.started_at,
            finished_at=item.finished_at if new_status == READ else None,
            last_listened_at=item.last_listened_at,
        )

        if auto_added:
            return _outcome("auto_added", title, f"Added to library and {action}", **extra)
        if action == "already read":
            return _outcome("skipped", title, "Already marked as read", **extra)
        if new_status == READ:
            return _outcome("completed", title, action, **extra)
        return _outcome("synced", title, f"{action} ({progress:.1f}%)", **extra)

    def _dry_run_outcome(
        self, title: str, match: MatchResult, complete: bool, progress: float, **extra: Any
    ) -> Dict[str, Any]:
        if match.is_search_result:
            self.logger.info(f"[DRY RUN] Would add '{title}' to library (book {match.book.get('id')})")
            return _outcome("would_auto_add", title, f"Would add to library at {progress:.1f}%", **extra)
        if complete:
            self.logger.info(f"[DRY RUN] Would mark '{title}' as read")
            return _outcome("would_complete", title, "Would mark as read", **extra)
        self.logger.info(f"[DRY RUN] Would sync '{title}' to {progress:.1f}%")
        return _outcome("would_sync", title, f"Would sync progress ({progress:.1f}%)", **extra)

    def _add_to_library(self, tx: Transaction, title: str, match: MatchResult) -> Dict[str, Any]:
        book_id = match.book.get("id") or match.edition.get("book_id")
        self.logger.info(f"➕ Auto-adding '{title}' (book {book_id}, edition {match.edition_id})")
        user_book = self.hardcover.add_book_to_library(book_id, CURRENTLY_READING, match.edition_id)
        tx.add(
            ReversibleAction(
                f"add book {book_id} to library",
                undo=None,
                manual_cleanup=f"remove '{title}' from your Hardcover library",
            )
        )
        return user_book

    def _push_progress(
        self,
        tx: Transaction,
        title: str,
        user_book: Dict[str, Any],
        edition: Dict[str, Any],
        use_seconds: bool,
        total: int,
        progress: float,
        cached_status: Optional[int] = None,
        is_finished: bool = False,
        current_time: Optional[float] = None,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
        write_progress: bool = True,
    ) -> Tuple[str, int]:
        """
        Write completion or progress for one book and register the undo steps

        Returns the action taken and the book's status afterwards.
        """
        user_book_id = user_book["id"]
        edition_id = edition.get("id")
        prior_status = user_book.get("status_id") or cached_status

        if is_complete(progress, is_finished):
            if prior_status == READ:
                return "already read", READ
            self.hardcover.mark_book_completed(user_book_id, edition_id, total, use_seconds, finished_at, started_at)
            tx.add(self._status_undo("mark completed", user_book_id, prior_status))
            self.logger.info(f"🏁 Marked '{title}' as read")
            return "marked as read", READ

        status = prior_status or CURRENTLY_READING
        if prior_status in (WANT_TO_READ, READ):
            # Want to Read -> Currently Reading, or Read -> Currently Reading for a re-read
            self.hardcover.update_book_status(user_book_id, CURRENTLY_READING)
            tx.add(self._status_undo("move to Currently Reading", user_book_id, prior_status))
            self.logger.info(f"🔄 Moved '{title}' to Currently Reading")
            status = CURRENTLY_READING
            if not write_progress:
                return "moved to Currently Reading", status

        if use_seconds:
            if current_time:
                current_value = int(min(current_time, total))
            else:
                current_value = calculate_current_seconds(progress, total)
        else:
            current_value = calculate_current_page(progress, total)

        record = self.hardcover.update_reading_progress(
            user_book_id, current_value, progress, edition_id, use_seconds, started_at, self.reread_config
        )
        previous_read = record.get("previous_read")
        if previous_read and not record.get("created_new"):
            previous_value = previous_read.get("progress_seconds" if use_seconds else "progress_pages")
            tx.add(
                ReversibleAction(
                    "update reading progress",
                    undo=lambda: self.hardcover.update_read(
                        previous_read["id"],
                        previous_value,
                        previous_read.get("edition_id") or edition_id,
                        use_seconds,
                    ),
                )
            )
        else:
            tx.add(
                ReversibleAction(
                    "create read record",
                    undo=None,
                    manual_cleanup=f"delete the new read of '{title}' in Hardcover",
                )
            )
        unit = "seconds" if use_seconds else "pages"
        self.logger.debug(f"Wrote {current_value} {unit} for '{title}' ({progress:.1f}%)")
        return "synced progress", status

    def _status_undo(self, description: str, user_book_id: int, prior_status: Optional[int]) -> ReversibleAction:
        if prior_status is None:
            return ReversibleAction(description, undo=None, manual_cleanup="restore the previous reading status")
        return ReversibleAction(
            description, undo=lambda: self.hardcover.update_book_status(user_book_id, prior_status)
        )

    def _commit(
        self,
        tx: Transaction,
        label: str,
        identifier: BookIdentifier,
        title: Optional[str],
        author: Optional[str],
        edition_id: Optional[int],
        progress: float,
        status_id: Optional[int],
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
        last_listened_at: Optional[str] = None,
    ) -> None:
        """Commit the cache; undo the external writes if that fails"""
        try:
            self.cache.store_book_sync_data(
                self.user_id,
                identifier.value,
                title,
                edition_id,
                identifier.type_name,
                author,
                progress,
                status_id=status_id,
                started_at=started_at,
                finished_at=finished_at,
                last_listened_at=last_listened_at,
            )
        except CacheCommitError:
            self.logger.error(f"Cache commit failed for {label}, rolling back Hardcover changes")
            rollback_errors = tx.rollback()
            if rollback_errors:
                self.logger.error(f"{len(rollback_errors)} rollback step(s) failed for {label}")
            raise
        tx.commit()

    def _flush_expired_sessions(self) -> Tuple[int, List[Dict[str, Any]]]:
        """
        Flush idle sessions before new observations are processed

        Returns the number of flushed sessions and a ``failed`` outcome for
        every session that could not be flushed. Failed sessions stay
        pending for the next run.
        """
        failures: List[Dict[str, Any]] = []
        if not self.session_manager.enabled:
            return 0, failures

        def flush(record: CacheRecord) -> None:
            try:
                self._flush_session(record)
            except Exception as e:
                failures.append(
                    _outcome(
                        "failed",
                        record.title,
                        f"Session flush failed: {str(e)}",
                        error_type=type(e).__name__,
                        identifier=str(record.key),
                    )
                )
                raise

        try:
            if self.dry_run:
                expired = self.session_manager.get_expired_sessions(self.user_id)
                for record in expired:
                    self.logger.info(
                        f"[DRY RUN] Would flush session for '{record.title}' at {record.session_pending_progress}%"
                    )
                return 0, failures
            summary = self.session_manager.process_expired_sessions(self.user_id, flush)
        except CacheUnavailableError as e:
            self.logger.warning(f"⚠️ Session cache unavailable, syncing immediately this run: {str(e)}")
            self._sessions_available = False
            return 0, failures
        return summary["processed"], failures

    def _flush_session(self, record: CacheRecord) -> None:
        """
        Write a buffered session to Hardcover and commit it

        Raises:
            StaleCacheReferenceError: The session's edition left the library
        """
        title = record.title
        edition = self.matcher.find_edition(record.edition_id) if record.edition_id else None
        user_book = self.matcher.find_user_book_by_edition_id(record.edition_id) if edition else None
        if edition is None or user_book is None:
            raise StaleCacheReferenceError(
                f"Cannot flush session: edition {record.edition_id} not in library",
                title=title,
                edition_id=record.edition_id,
            )

        use_seconds = is_audio_edition(edition) and bool(edition.get("audio_seconds"))
        total = edition.get("audio_seconds") if use_seconds else edition.get("pages")
        if not total:
            raise InvalidInputError("No page count or duration available", title=title)

        progress = record.session_pending_progress
        tx = Transaction(f"session '{title}'", self.logger)
        action, status = self._push_progress(
            tx, title, user_book, edition, use_seconds, total, progress, cached_status=record.status_id
        )
        self._commit(
            tx,
            f"session '{title}'",
            record.key,
            record.title,
            record.author,
            record.edition_id,
            progress,
            status,
            started_at=record.started_at,
            last_listened_at=record.last_listened_at,
        )
        self.logger.info(f"⏳ Flushed session for '{title}': {action} ({progress:.1f}%)")

    def get_cache_stats(self) -> Dict[str, int]:
        return self.cache.get_cache_stats()

    def clear_cache(self) -> None:
        self.cache.clear_cache()

    def export_to_json(self, filename: str = "book_cache_export.json") -> int:
        return self.cache.export_to_json(filename)

    def get_books_by_author(self, author_name: str) -> List[Dict[str, Any]]:
        return self.cache.get_books_by_author(self.user_id, author_name)

    def print_timing_summary(self) -> None:
        """Print a summary of timing data"""
        if not self.timing_data:
            self.logger.info("No timing data available")
            return

        self.logger.info("=" * 50)
        self.logger.info("📊 TIMING SUMMARY")
        self.logger.info("=" * 50)

        sorted_timing = sorted(self.timing_data.items(), key=lambda x: x[1], reverse=True)
        total_time = sum(self.timing_data.values())

        for operation, duration in sorted_timing:
            percentage = (duration / total_time) * 100 if total_time > 0 else 0
            self.logger.info(f"{operation:30} {duration:8.3f}s ({percentage:5.1f}%)")

        self.logger.info(f"{'TOTAL':30} {total_time:8.3f}s")
        self.logger.info("=" * 50)
