"""
Utility functions for the sync tool
"""

import logging
import math
import re
from datetime import datetime
from typing import Any, Optional

import pytz

logger = logging.getLogger(__name__)


def normalize_isbn(isbn: Optional[str]) -> Optional[str]:
    """
    Normalize ISBN by removing hyphens, spaces, and other non-digit characters
    Returns clean ISBN or None if invalid
    """
    if not isbn:
        return None

    # X is only valid as an ISBN-10 check digit
    clean_isbn = re.sub(r"[^0-9X]", "", str(isbn).upper())

    if len(clean_isbn) not in [10, 13]:
        return None

    return clean_isbn


def normalize_asin(asin: Optional[str]) -> Optional[str]:
    """
    Normalize an Amazon ASIN

    ASINs are 10 alphanumeric characters starting with a letter. All-digit
    values are ISBN-10s stored in the wrong field and are rejected.
    """
    if not asin:
        return None

    clean_asin = re.sub(r"[^A-Z0-9]", "", str(asin).upper())

    if len(clean_asin) != 10:
        return None
    if not clean_asin[0].isalpha():
        return None

    return clean_asin


def validate_isbn(isbn: str) -> bool:
    """
    Validate ISBN using checksum calculation
    Supports both ISBN-10 and ISBN-13
    """
    clean_isbn = normalize_isbn(isbn)
    if not clean_isbn:
        return False

    if len(clean_isbn) == 10:
        return _validate_isbn10(clean_isbn)
    return _validate_isbn13(clean_isbn)


def _validate_isbn10(isbn: str) -> bool:
    try:
        total = 0
        for i in range(9):
            total += int(isbn[i]) * (10 - i)

        check_digit = isbn[9]
        total += 10 if check_digit == "X" else int(check_digit)

        return total % 11 == 0
    except (ValueError, IndexError):
        return False


def _validate_isbn13(isbn: str) -> bool:
    try:
        total = 0
        for i in range(12):
            digit = int(isbn[i])
            total += digit if i % 2 == 0 else digit * 3

        calculated_check = (10 - (total % 10)) % 10
        return int(isbn[12]) == calculated_check
    except (ValueError, IndexError):
        return False


def parse_progress(value: Any) -> Optional[float]:
    """
    Parse a progress percentage

    Returns None for missing or unparseable values. Numeric values are
    clamped to 0-100.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        progress = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(progress) or math.isinf(progress):
        return None
    return max(0.0, min(100.0, progress))


def calculate_progress_percentage(current_page: int, total_pages: int) -> float:
    """
    Calculate progress percentage from current page and total pages
    Returns percentage as float (0.0 to 100.0)
    """
    if total_pages <= 0:
        return 0.0

    if current_page <= 0:
        return 0.0

    if current_page >= total_pages:
        return 100.0

    return (current_page / total_pages) * 100.0


def calculate_current_page(progress_percentage: float, total_pages: int) -> int:
    """
    Calculate current page from progress percentage and total pages

    Rounds to the nearest page and keeps the result within [1, total_pages]
    so a started book never reports page zero.
    """
    if total_pages <= 0:
        return 0

    page = round((progress_percentage / 100) * total_pages)
    return max(1, min(total_pages, page))


def calculate_current_seconds(progress_percentage: float, total_seconds: float) -> int:
    """Calculate listening position in seconds, clamped to [0, total_seconds]"""
    if not total_seconds or total_seconds <= 0:
        return 0

    seconds = round((progress_percentage / 100) * total_seconds)
    return int(max(0, min(int(total_seconds), seconds)))


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def get_timezone(timezone_name: Optional[str]) -> Any:
    """Return a pytz timezone, falling back to UTC for unknown names"""
    if not timezone_name:
        return pytz.UTC
    try:
        return pytz.timezone(timezone_name)
    except pytz.exceptions.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{timezone_name}', using UTC")
        return pytz.UTC


def format_timestamp(value: Any, timezone_name: Optional[str] = None) -> Optional[str]:
    """
    Convert an Audiobookshelf timestamp to an ISO 8601 string

    Audiobookshelf reports epoch milliseconds. Numbers below 1e11 are taken
    as epoch seconds. Strings are passed through unchanged.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        moment = value if value.tzinfo else pytz.UTC.localize(value)
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if number <= 0:
            return None
        if number > 1e11:
            number = number / 1000.0
        moment = datetime.fromtimestamp(number, tz=pytz.UTC)
    return moment.astimezone(get_timezone(timezone_name)).isoformat()


def to_date(value: Optional[str]) -> Optional[str]:
    """Return the YYYY-MM-DD part of an ISO timestamp"""
    if not value:
        return None
    return str(value)[:10]
