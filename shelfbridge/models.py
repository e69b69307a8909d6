"""
Data records shared by the matcher, cache and sync manager
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .utils import format_timestamp, normalize_asin, normalize_isbn, parse_progress


class IdentifierType(Enum):
    """Kind of key a book is cached under, in lookup priority order."""

    ASIN = "asin"
    ISBN = "isbn"
    TITLE_AUTHOR = "title_author"

    @property
    def priority(self) -> int:
        return _IDENTIFIER_PRIORITY[self]


_IDENTIFIER_PRIORITY = {
    IdentifierType.ASIN: 1,
    IdentifierType.ISBN: 2,
    IdentifierType.TITLE_AUTHOR: 3,
}


@dataclass(frozen=True)
class BookIdentifier:
    """A cache key together with its type."""

    value: str
    type: IdentifierType

    @property
    def type_name(self) -> str:
        return self.type.value

    def __str__(self) -> str:
        return f"{self.type.value}:{self.value}"


class Confidence(Enum):
    """Confidence bucket of an identification score."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


@dataclass
class LibraryItem:
    """A book from Audiobookshelf with the current user's progress."""

    id: str
    title: Optional[str] = None
    author: Optional[str] = None
    isbn_10: Optional[str] = None
    isbn_13: Optional[str] = None
    asin: Optional[str] = None
    progress_percent: Optional[float] = None
    current_time: Optional[float] = None
    duration: Optional[float] = None
    is_finished: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_listened_at: Optional[str] = None
    media_kind: str = "audio"
    series: Optional[str] = None
    series_sequence: Optional[str] = None
    published_year: Optional[int] = None
    narrator: Optional[str] = None
    content_key: Optional[str] = None

    @property
    def isbn(self) -> Optional[str]:
        return normalize_isbn(self.isbn_13) or normalize_isbn(self.isbn_10)

    @property
    def normalized_asin(self) -> Optional[str]:
        return normalize_asin(self.asin)

    @property
    def display_title(self) -> str:
        return self.title or "Unknown"

    @property
    def is_audio(self) -> bool:
        return self.media_kind == "audio"

    @classmethod
    def from_abs(cls, item: Dict[str, Any], timezone_name: Optional[str] = None) -> "LibraryItem":
        """
        Build a LibraryItem from an Audiobookshelf library item

        Expects the item details merged with the user's media progress as
        returned by AudiobookshelfClient (progress_percentage, current_time,
        is_finished and the progress timestamps).
        """
        media = item.get("media") or {}
        metadata = media.get("metadata") or item.get("metadata") or {}

        authors = metadata.get("authors") or []
        author = metadata.get("authorName")
        if not author and authors:
            author = ", ".join(a.get("name", "") for a in authors if a.get("name")) or None

        narrators = metadata.get("narrators") or []
        narrator = metadata.get("narratorName") or (narrators[0] if narrators else None)
        if isinstance(narrator, dict):
            narrator = narrator.get("name")

        series = None
        series_sequence = None
        series_list = metadata.get("series") or []
        if isinstance(series_list, list) and series_list:
            series = series_list[0].get("name")
            series_sequence = series_list[0].get("sequence")
        elif metadata.get("seriesName"):
            # "Expanse #1" style
            parts = str(metadata["seriesName"]).split("#", 1)
            series = parts[0].strip() or None
            series_sequence = parts[1].strip() if len(parts) > 1 else None

        published_year = None
        year_value = metadata.get("publishedYear")
        if year_value:
            try:
                published_year = int(str(year_value)[:4])
            except ValueError:
                published_year = None

        isbn_10 = None
        isbn_13 = None
        for field_name in ["isbn", "isbn13", "isbn10", "ISBN", "ISBN13", "ISBN10"]:
            clean = normalize_isbn(metadata.get(field_name))
            if not clean:
                continue
            if len(clean) == 13 and not isbn_13:
                isbn_13 = clean
            elif len(clean) == 10 and not isbn_10:
                isbn_10 = clean

        asin = None
        for field_name in ["asin", "ASIN", "amazon_asin"]:
            asin = normalize_asin(metadata.get(field_name))
            if asin:
                break

        has_audio = bool(media.get("audioFiles") or media.get("tracks") or media.get("duration"))
        is_audio = has_audio or not media.get("ebookFile")

        return cls(
            id=str(item.get("id")),
            title=metadata.get("title"),
            author=author,
            isbn_10=isbn_10,
            isbn_13=isbn_13,
            asin=asin,
            progress_percent=parse_progress(item.get("progress_percentage")),
            current_time=item.get("current_time"),
            duration=media.get("duration"),
            is_finished=bool(item.get("is_finished")),
            started_at=format_timestamp(item.get("started_at"), timezone_name),
            finished_at=format_timestamp(item.get("finished_at"), timezone_name),
            last_listened_at=format_timestamp(item.get("last_update"), timezone_name),
            media_kind="audio" if is_audio else "text",
            series=series,
            series_sequence=str(series_sequence) if series_sequence is not None else None,
            published_year=published_year,
            narrator=narrator,
            content_key=str(item.get("ino") or item.get("path") or "") or None,
        )


@dataclass
class MatchResult:
    """A resolved Hardcover book/edition for a library item."""

    user_book: Optional[Dict[str, Any]]
    book: Dict[str, Any]
    edition: Dict[str, Any]
    match_type: str
    tier: int
    is_search_result: bool = False
    confidence: float = 100.0

    @property
    def user_book_id(self) -> Optional[int]:
        return self.user_book.get("id") if self.user_book else None

    @property
    def edition_id(self) -> Optional[int]:
        return self.edition.get("id")


@dataclass
class ScoreResult:
    """Outcome of scoring one search candidate."""

    total_score: float
    confidence: Confidence
    is_book_match: bool
    breakdown: Dict[str, float] = field(default_factory=dict)
    penalties: List[str] = field(default_factory=list)


@dataclass
class CacheRecord:
    """One row of the books table."""

    user_id: str
    identifier: str
    identifier_type: str
    title: str
    edition_id: Optional[int] = None
    author: Optional[str] = None
    progress_percent: Optional[float] = None
    status_id: Optional[int] = None
    last_sync: Optional[str] = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_listened_at: Optional[str] = None
    session_pending_progress: Optional[float] = None
    session_last_change: Optional[str] = None
    session_is_active: bool = False
    last_hardcover_sync: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "CacheRecord":
        return cls(
            user_id=row["user_id"],
            identifier=row["identifier"],
            identifier_type=row["identifier_type"],
            title=row["title"],
            edition_id=row["edition_id"],
            author=row["author"],
            progress_percent=row["progress_percent"],
            status_id=row["status_id"],
            last_sync=row["last_sync"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            last_listened_at=row["last_listened_at"],
            session_pending_progress=row["session_pending_progress"],
            session_last_change=row["session_last_change"],
            session_is_active=bool(row["session_is_active"]),
            last_hardcover_sync=row["last_hardcover_sync"],
        )

    @property
    def key(self) -> BookIdentifier:
        return BookIdentifier(self.identifier, IdentifierType(self.identifier_type))


@dataclass
class SyncCheck:
    """Result of the cache early check with its independent triggers."""

    needs_sync: bool
    reason: str
    progress_changed: bool = False
    status_changed: bool = False
    edition_changed: bool = False
    cached: Optional[CacheRecord] = None
