"""
Book identification scoring

Ranks a Hardcover search result against the title, author, series and year
of an Audiobookshelf item. Used by stage 1 of title/author matching to pick
the right book before any edition is considered.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from ..models import Confidence, ScoreResult
from .normalization import normalize_author, normalize_series, normalize_title
from .similarity import text_similarity

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 0.35
AUTHOR_WEIGHT = 0.25
SERIES_WEIGHT = 0.15
ACTIVITY_WEIGHT = 0.10
YEAR_WEIGHT = 0.05

HIGH_CONFIDENCE = 75
MEDIUM_CONFIDENCE = 60
MIN_MATCH_SCORE = 45
SHORT_TITLE_LENGTH = 10


def candidate_authors(candidate: Dict[str, Any]) -> List[str]:
    """Author names of a search document or GraphQL book record"""
    names = candidate.get("author_names")
    if names:
        return [str(name) for name in names if name]

    for source in (candidate, candidate.get("book") or {}):
        contributions = source.get("contributions") or []
        authors = []
        for contribution in contributions:
            role = (contribution.get("contribution") or contribution.get("role") or "author").lower()
            if "author" not in role:
                continue
            person = contribution.get("author") or contribution.get("person") or {}
            if person.get("name"):
                authors.append(person["name"])
        if authors:
            return authors

    if candidate.get("author"):
        return [str(candidate["author"])]
    return []


def candidate_author(candidate: Dict[str, Any], target_author: Optional[str] = None) -> Optional[str]:
    """The candidate author closest to the target, or all of them joined"""
    authors = candidate_authors(candidate)
    if not authors:
        return None
    if target_author and len(authors) > 1:
        return max(authors, key=lambda name: text_similarity(normalize_author(target_author), normalize_author(name)))
    return ", ".join(authors)


def candidate_series(candidate: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    featured = candidate.get("featured_series")
    if isinstance(featured, dict):
        series = featured.get("series") or {}
        if series.get("name"):
            position = featured.get("position")
            return series["name"], str(position) if position is not None else None

    names = candidate.get("series_names")
    if names:
        return str(names[0]), None

    if isinstance(candidate.get("series"), str):
        sequence = candidate.get("series_sequence")
        return candidate["series"], str(sequence) if sequence is not None else None
    return None, None


def candidate_year(candidate: Dict[str, Any]) -> Optional[int]:
    for field_name in ("release_year", "year", "published_year"):
        value = candidate.get(field_name)
        if value:
            try:
                year = int(str(value)[:4])
            except ValueError:
                continue
            if 1000 < year < 3000:
                return year
    release_date = candidate.get("release_date")
    if release_date:
        try:
            return int(str(release_date)[:4])
        except ValueError:
            return None
    return None


def candidate_activity(candidate: Dict[str, Any]) -> float:
    for field_name in ("users_count", "activities_count", "ratings_count"):
        value = candidate.get(field_name)
        if value is not None:
            try:
                return float(value)
            except (TypeError, ValueError):
                return 0.0
    return 0.0


def series_score(
    target: Tuple[Optional[str], Optional[str]], result: Tuple[Optional[str], Optional[str]]
) -> float:
    target_name, target_sequence = target
    result_name, result_sequence = result

    if not target_name and not result_name:
        return 60.0
    if not target_name or not result_name:
        return 45.0

    similarity = text_similarity(normalize_series(target_name), normalize_series(result_name)) * 100
    if similarity < 70:
        return max(20.0, similarity * 0.5)

    bonus = 0
    if target_sequence and result_sequence:
        bonus = 20 if _same_sequence(target_sequence, result_sequence) else 5
    return min(100.0, similarity + bonus)


def _same_sequence(first: str, second: str) -> bool:
    try:
        return float(first) == float(second)
    except ValueError:
        return first.strip() == second.strip()


def year_score(target_year: Optional[int], result_year: Optional[int]) -> float:
    if not target_year and not result_year:
        return 60.0
    if not target_year or not result_year:
        return 45.0

    difference = abs(target_year - result_year)
    if difference == 0:
        return 100.0
    if difference == 1:
        return 85.0
    if difference <= 3:
        return 70.0
    if difference <= 5:
        return 50.0
    return 20.0


def activity_score(activity: float) -> float:
    if not activity:
        return 30.0
    return min(100.0, 30 + math.log10(activity + 1) * 20)


def confidence_for(score: float) -> Confidence:
    if score >= HIGH_CONFIDENCE:
        return Confidence.HIGH
    if score >= MEDIUM_CONFIDENCE:
        return Confidence.MEDIUM
    return Confidence.LOW


def calculate_book_identification_score(
    candidate: Any,
    target_title: Optional[str],
    target_author: Optional[str],
    target_metadata: Optional[Dict[str, Any]] = None,
) -> ScoreResult:
    """
    Score how likely a search result is the target book

    Args:
        candidate: Hardcover search document or book record
        target_title: Title from Audiobookshelf
        target_author: Author from Audiobookshelf
        target_metadata: Optional ``series``, ``series_sequence`` and
            ``published_year`` of the target

    Returns:
        ScoreResult with a 0-100 score, its confidence bucket and the
        per-factor breakdown
    """
    if not isinstance(candidate, dict) or not candidate.get("title"):
        return ScoreResult(total_score=0.0, confidence=Confidence.NONE, is_book_match=False)

    target_metadata = target_metadata or {}
    breakdown: Dict[str, float] = {}
    penalties: List[str] = []

    result_author = candidate_author(candidate, target_author)

    title = text_similarity(normalize_title(target_title), normalize_title(candidate["title"])) * 100
    author = text_similarity(normalize_author(target_author), normalize_author(result_author)) * 100
    series = series_score(
        (target_metadata.get("series"), target_metadata.get("series_sequence")),
        candidate_series(candidate),
    )
    activity = activity_score(candidate_activity(candidate))
    year = year_score(target_metadata.get("published_year"), candidate_year(candidate))

    breakdown.update(title=title, author=author, series=series, activity=activity, year=year)
    score = (
        title * TITLE_WEIGHT
        + author * AUTHOR_WEIGHT
        + series * SERIES_WEIGHT
        + activity * ACTIVITY_WEIGHT
        + year * YEAR_WEIGHT
    )

    if title >= 90 and author >= 90:
        bonus = min(title, author) * 0.1
        score += bonus
        breakdown["perfect_match_bonus"] = bonus
    elif title >= 80 and author >= 80:
        bonus = min(title, author) * 0.05
        score += bonus
        breakdown["high_confidence_bonus"] = bonus

    normalized_length = len(normalize_title(target_title))
    if normalized_length <= SHORT_TITLE_LENGTH:
        penalty = (SHORT_TITLE_LENGTH - normalized_length) * 2
        score -= penalty
        breakdown["short_title_penalty"] = -penalty
        penalties.append(f"short title ({normalized_length} chars)")

    if author < 30 and title > 80:
        penalty = (80 - author) * 0.15
        score -= penalty
        breakdown["author_mismatch_penalty"] = -penalty
        penalties.append("similar title, different author")

    total = min(100.0, max(0.0, score))
    logger.debug(
        f"Scored '{candidate.get('title')}' against '{target_title}': {total:.1f} "
        f"(title {title:.0f}, author {author:.0f}, series {series:.0f})"
    )
    return ScoreResult(
        total_score=total,
        confidence=confidence_for(total),
        is_book_match=total >= MIN_MATCH_SCORE,
        breakdown=breakdown,
        penalties=penalties,
    )
