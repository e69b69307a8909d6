"""
Edition selection for the second stage of title/author matching
"""

import logging
import math
from typing import Any, Dict, List, Optional

from .similarity import duration_similarity

logger = logging.getLogger(__name__)

FORMAT_WEIGHT = 0.40
POPULARITY_WEIGHT = 0.25
DURATION_WEIGHT = 0.20
COMPLETENESS_WEIGHT = 0.15

AUDIO_MARKERS = ("audio", "listened", "cd", "mp3", "aac")
EBOOK_MARKERS = ("ebook", "e-book", "digital", "kindle")
PHYSICAL_MARKERS = ("physical", "paperback", "hardcover", "hardback", "print", "read", "mass market")


def is_audio_edition(edition: Dict[str, Any]) -> bool:
    """Detect if an edition is an audiobook based on available fields"""
    return edition_format(edition) == "audio"


def edition_format(edition: Dict[str, Any]) -> Optional[str]:
    """
    Classify an edition as "audio", "ebook", "physical" or "unknown"

    Returns None when the edition carries no format information at all.
    ``audio_seconds`` is the most reliable signal and wins over the format
    strings.
    """
    audio_seconds = edition.get("audio_seconds")
    if audio_seconds and audio_seconds > 0:
        return "audio"

    labels = []
    reading_format = edition.get("reading_format")
    if isinstance(reading_format, dict):
        labels.append(reading_format.get("format") or "")
    elif isinstance(reading_format, str):
        labels.append(reading_format)
    labels.append(edition.get("physical_format") or "")
    labels.append(edition.get("edition_format") or "")
    text = " ".join(label for label in labels if label).lower()

    if not text:
        return None
    if any(marker in text for marker in AUDIO_MARKERS):
        return "audio"
    if any(marker in text for marker in EBOOK_MARKERS):
        return "ebook"
    if any(marker in text for marker in PHYSICAL_MARKERS):
        return "physical"
    return "unknown"


def format_score(source_kind: str, edition: Dict[str, Any]) -> float:
    kind = edition_format(edition)
    if kind is None:
        return 20.0

    wanted = "audio" if source_kind == "audio" else "ebook"
    if kind == wanted:
        return 100.0
    if kind in ("audio", "ebook"):
        return 62.5
    if kind == "physical":
        return 37.5
    return 12.5


def popularity_score(users_count: int) -> float:
    if not users_count:
        return 20.0
    return min(100.0, 20 + math.log10(users_count + 1) * 25)


def duration_score(source_kind: str, source_duration: Optional[float], edition: Dict[str, Any]) -> float:
    if source_kind != "audio":
        return 60.0
    if not edition.get("audio_seconds"):
        return 30.0
    if not source_duration:
        return 50.0
    return duration_similarity(source_duration, edition["audio_seconds"])


def completeness_score(edition: Dict[str, Any]) -> float:
    fields = [
        edition.get("pages") or edition.get("audio_seconds"),
        edition.get("isbn_10") or edition.get("isbn_13") or edition.get("asin"),
        edition.get("physical_format"),
        edition.get("reading_format"),
        edition.get("release_year") or edition.get("release_date"),
        edition.get("users_count"),
    ]
    return sum(1 for value in fields if value) / len(fields) * 100


def score_edition(
    edition: Dict[str, Any], source_kind: str, source_duration: Optional[float] = None
) -> Dict[str, float]:
    """Score one edition; returns the breakdown with a ``total`` key"""
    users_count = edition.get("users_count") or 0
    breakdown = {
        "format": format_score(source_kind, edition),
        "popularity": popularity_score(users_count),
        "duration": duration_score(source_kind, source_duration, edition),
        "completeness": completeness_score(edition),
    }
    total = (
        breakdown["format"] * FORMAT_WEIGHT
        + breakdown["popularity"] * POPULARITY_WEIGHT
        + breakdown["duration"] * DURATION_WEIGHT
        + breakdown["completeness"] * COMPLETENESS_WEIGHT
    )
    if breakdown["format"] >= 95:
        total += 3
    if users_count >= 1000:
        total += min(2.0, math.log10(users_count / 1000))

    breakdown["total"] = min(100.0, max(0.0, total))
    return breakdown


def select_best_edition(
    editions: List[Dict[str, Any]], source_kind: str, source_duration: Optional[float] = None
) -> Optional[Dict[str, Any]]:
    """
    Pick the edition that best fits the source item's media kind

    Args:
        editions: Complete edition records of one book
        source_kind: "audio" or "text"
        source_duration: Audiobookshelf duration in seconds, if known

    Returns:
        The chosen edition dict (unchanged), or None if there are no editions
    """
    if not editions:
        return None

    best = None
    best_score = -1.0
    for edition in editions:
        score = score_edition(edition, source_kind, source_duration)["total"]
        if score > best_score:
            best = edition
            best_score = score

    logger.debug(f"Selected edition {best.get('id')} ({edition_format(best)}) with score {best_score:.1f}")
    return best
