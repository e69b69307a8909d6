#!/usr/bin/env python3
"""
ShelfBridge - Audiobookshelf to Hardcover reading progress sync

Usage:
    python -m shelfbridge.main sync [--dry-run] [--force] [--user ID]
    python -m shelfbridge.main test | config | cache-stats | clear-cache | export-cache | cron
"""

import argparse
import logging
import sys
import time
from datetime import datetime
from typing import Any, Dict, List

import pytz
from croniter import croniter

from .config import Config
from .sync_manager import SyncManager
from .utils import format_duration


def setup_logging(verbose: bool = False, log_file: str = "shelfbridge.log") -> None:
    """Setup logging configuration with controlled verbosity"""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    detailed_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    clean_format = "%(asctime)s - %(levelname)s - %(message)s"

    # File handler (always detailed for debugging)
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(detailed_format))

    # Console handler (clean unless verbose)
    console_handler = logging.StreamHandler(sys.stdout)
    if verbose:
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter(detailed_format))
    else:
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter(clean_format))

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    if not verbose:
        logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
        logging.getLogger("requests").setLevel(logging.WARNING)
        logging.getLogger("shelfbridge.audiobookshelf_client").setLevel(logging.WARNING)
        logging.getLogger("shelfbridge.hardcover_client").setLevel(logging.WARNING)


def build_managers(config: Config, args: argparse.Namespace) -> List[SyncManager]:
    """One SyncManager per selected user"""
    global_config = dict(config.get_global())
    if getattr(args, "force", False):
        global_config["force_sync"] = True
    users = [config.get_user(args.user)] if args.user else config.get_users()
    return [SyncManager(user, global_config, dry_run=args.dry_run) for user in users]


def sync_once(sync_manager: SyncManager) -> Dict[str, Any]:
    """Perform a one-time synchronization for one user"""
    logger = logging.getLogger(__name__)
    logger.info(f"Starting sync for user {sync_manager.user_id}...")

    start_time = time.time()
    result = sync_manager.sync_progress()
    duration = time.time() - start_time

    logger.info("=" * 50)
    logger.info(f"📚 SYNC SUMMARY ({sync_manager.user_id})")
    logger.info("=" * 50)
    logger.info(f"⏱️  Duration: {format_duration(duration)}")
    logger.info(f"📖 Books processed: {result['books_processed']}")
    logger.info(f"✅ Books synced: {result['books_synced']}")
    logger.info(f"🎯 Books completed: {result['books_completed']}")
    logger.info(f"➕ Books auto-added: {result['books_auto_added']}")
    logger.info(f"⏳ Books delayed: {result['books_delayed']}")
    logger.info(f"⏭ Books skipped: {result['books_skipped']}")
    if result["duplicates_removed"]:
        logger.info(f"🔁 Duplicates removed: {result['duplicates_removed']}")
    if result["sessions_flushed"]:
        logger.info(f"💾 Sessions flushed: {result['sessions_flushed']}")
    if result["sessions_failed"]:
        logger.warning(f"⚠️ Sessions failed to flush: {result['sessions_failed']}")

    if result["errors"]:
        logger.warning(f"❌ Errors encountered: {len(result['errors'])}")
        for error in result["errors"]:
            logger.error(f"  - {error}")
    else:
        logger.info("🎉 No errors encountered!")
    logger.info("=" * 50)

    return result


def sync_all(managers: List[SyncManager]) -> bool:
    """Sync every user; True when no run reported errors"""
    ok = True
    for sync_manager in managers:
        result = sync_once(sync_manager)
        if result["errors"] or not result["success"]:
            ok = False
    return ok


def test_connections(sync_manager: SyncManager) -> bool:
    """Test connections to both APIs"""
    logger = logging.getLogger(__name__)
    logger.info(f"🔍 Testing API connections for user {sync_manager.user_id}...")

    abs_status = False
    hc_status = False

    try:
        logger.info("📚 Testing Audiobookshelf connection...")
        abs_status = sync_manager.audiobookshelf.test_connection()
        if abs_status:
            logger.info("✅ Audiobookshelf connection: Success")
            libraries = sync_manager.audiobookshelf.get_libraries()
            logger.info(f"📚 Found {len(libraries)} libraries: {', '.join(lib.get('name', '?') for lib in libraries)}")
        else:
            logger.error("❌ Audiobookshelf connection: Failed")
    except Exception as e:
        logger.error(f"❌ Audiobookshelf connection failed: {str(e)}")

    try:
        logger.info("📖 Testing Hardcover connection...")
        hc_status = sync_manager.hardcover.test_connection()
        if hc_status:
            logger.info("✅ Hardcover connection: Success")
        else:
            logger.error("❌ Hardcover connection: Failed")
    except Exception as e:
        logger.error(f"❌ Hardcover connection failed: {str(e)}")

    logger.info("=" * 40)
    if abs_status and hc_status:
        logger.info("🎉 All connections successful!")
    else:
        logger.error("❌ Some connections failed!")
    logger.info("=" * 40)

    return abs_status and hc_status


def show_config(config: Config) -> bool:
    """Show configuration status"""
    logger = logging.getLogger(__name__)
    global_config = config.get_global()

    logger.info("=== Configuration Status ===")
    for key in [
        "min_progress_threshold",
        "parallel",
        "workers",
        "timezone",
        "sync_schedule",
        "dry_run",
        "force_sync",
        "auto_add_books",
        "cross_format_sync",
        "prevent_progress_regression",
        "cache_file",
    ]:
        logger.info(f"  {key}: {global_config[key]}")
    delayed = global_config["delayed_updates"]
    logger.info(
        f"  delayed_updates: {'enabled' if delayed['enabled'] else 'disabled'} "
        f"(timeout {delayed['session_timeout']}s, max delay {delayed['max_delay']}s)"
    )

    logger.info("Users:")
    for user in config.get_users():
        logger.info(f"  ✓ {user['id']}: {user['abs_url']}")
    return True


def show_cache_stats(sync_manager: SyncManager) -> None:
    stats = sync_manager.get_cache_stats()
    print("\n📊 Cache Statistics:")
    print(f"   Total books: {stats['total_books']}")
    print(f"   Books with editions: {stats['books_with_editions']}")
    print(f"   Books with progress: {stats['books_with_progress']}")
    print(f"   Active sessions: {stats['active_sessions']}")
    print(f"   Cache file size: {stats['cache_file_size']} bytes")


def confirm(prompt: str, assume_yes: bool = False) -> bool:
    if assume_yes:
        return True
    return input(f"{prompt} (y/N): ").strip().lower() in ["y", "yes"]


def run_cron_mode(managers: List[SyncManager], config: Config) -> None:
    """Run the sync tool in cron mode, continuously syncing based on schedule"""
    logger = logging.getLogger(__name__)

    cron_config = config.get_cron_config()
    schedule = cron_config["schedule"]
    timezone_name = cron_config["timezone"]

    try:
        tz = pytz.timezone(timezone_name)
        logger.info(f"Using timezone: {timezone_name}")
    except pytz.exceptions.UnknownTimeZoneError:
        logger.error(f"Unknown timezone: {timezone_name}. Using UTC.")
        tz = pytz.UTC

    try:
        cron = croniter(schedule, datetime.now(tz))
        next_run = cron.get_next(datetime)
        logger.info(f"Cron schedule: {schedule}")
    except (ValueError, KeyError) as e:
        logger.error(f"Invalid cron schedule '{schedule}': {str(e)}")
        return

    logger.info("🕐 Starting cron mode - sync will run automatically based on schedule")
    logger.info(f"⏰ Next sync at {next_run.strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info("Press Ctrl+C to stop")

    try:
        while True:
            time_until_next = (next_run - datetime.now(tz)).total_seconds()

            if time_until_next > 0:
                # Only log if <10 minutes to go
                if time_until_next <= 600:
                    logger.info(f"⏰ Next sync in {time_until_next:.0f} seconds")
                time.sleep(min(time_until_next, 60))
                continue

            logger.info("🔄 Running scheduled sync...")
            try:
                if sync_all(managers):
                    logger.info("✅ Scheduled sync completed successfully")
                else:
                    logger.warning("Scheduled sync completed with errors")
            except Exception as e:
                logger.error(f"Scheduled sync failed: {str(e)}")

            next_run = croniter(schedule, datetime.now(tz)).get_next(datetime)
            logger.info(f"⏰ Next sync at {next_run.strftime('%Y-%m-%d %H:%M:%S')}")

    except KeyboardInterrupt:
        logger.info("🛑 Cron mode stopped by user")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync reading progress between Audiobookshelf and Hardcover")
    parser.add_argument(
        "command",
        choices=["sync", "test", "config", "cache-stats", "clear-cache", "clear-editions", "export-cache", "cron"],
        help="Command to execute",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be synced without making changes")
    parser.add_argument("--force", action="store_true", help="Ignore the cache and re-sync every book")
    parser.add_argument("--user", help="Only act on this user id")
    parser.add_argument("--config", default="config/config.yaml", help="Path to the YAML configuration file")
    parser.add_argument("--output", default="book_cache_export.json", help="File written by export-cache")
    parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    return parser


def main() -> None:
    """Main CLI entry point"""
    args = create_parser().parse_args()

    setup_logging(verbose=args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = Config(args.config)

        if args.command == "config":
            show_config(config)
            return

        managers = build_managers(config, args)

        if args.command == "test":
            results = [test_connections(sync_manager) for sync_manager in managers]
            sys.exit(0 if all(results) else 1)

        elif args.command == "sync":
            ok = sync_all(managers)
            if not ok:
                print("\n❌ Sync completed with errors. Check logs for details.")
            sys.exit(0 if ok else 1)

        elif args.command == "cache-stats":
            # All users share one cache file
            show_cache_stats(managers[0])

        elif args.command == "clear-cache":
            if confirm("🗑️  Are you sure you want to clear the book cache?", args.yes):
                managers[0].clear_cache()
                print("✅ Book cache cleared successfully!")
                print("📝 Next sync will be a full resync.")
            else:
                print("❌ Book cache clear cancelled.")

        elif args.command == "clear-editions":
            if confirm("🔄 Clear edition mappings? Progress data is kept.", args.yes):
                affected = sum(m.cache.clear_edition_mappings(m.user_id) for m in managers)
                print(f"✅ Edition mappings cleared for {affected} books!")
            else:
                print("❌ Edition mapping clear cancelled.")

        elif args.command == "export-cache":
            count = managers[0].export_to_json(args.output)
            print(f"✅ Exported {count} books to {args.output}")

        elif args.command == "cron":
            run_cron_mode(managers, config)

    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Application error: {str(e)}")
        if args.verbose:
            logger.exception("Full error details:")
        sys.exit(1)


if __name__ == "__main__":
    main()
