"""Tests for utility functions"""

import pytest

from shelfbridge.utils import (
    calculate_current_page,
    calculate_current_seconds,
    calculate_progress_percentage,
    format_duration,
    format_timestamp,
    normalize_asin,
    normalize_isbn,
    parse_progress,
    to_date,
    validate_isbn,
)


class TestIdentifiers:
    """Test ISBN and ASIN normalization"""

    def test_normalize_isbn(self) -> None:
        """Hyphens and spaces are removed, wrong lengths rejected"""
        assert normalize_isbn("978-0-7475-3269-9") == "9780747532699"
        assert normalize_isbn("0-7475-3269-9") == "0747532699"
        assert normalize_isbn("invalid") is None
        assert normalize_isbn("") is None
        assert normalize_isbn(None) is None

    def test_validate_isbn(self) -> None:
        """Checksums for both lengths"""
        assert validate_isbn("9780747532699") is True
        assert validate_isbn("0747532699") is True
        assert validate_isbn("9780747532698") is False

    def test_normalize_asin(self) -> None:
        """ASINs are ten characters starting with a letter"""
        assert normalize_asin("b00test123") == "B00TEST123"
        assert normalize_asin("0747532699") is None
        assert normalize_asin("B00") is None


class TestProgress:
    """Test progress parsing and conversion"""

    @pytest.mark.parametrize(
        "value,expected",
        [(42.5, 42.5), ("42.5", 42.5), (0, 0.0), (150, 100.0), (-3, 0.0), (None, None), ("abc", None), (True, None), (float("nan"), None)],
    )
    def test_parse_progress(self, value, expected) -> None:
        """Numbers are clamped, garbage is None"""
        assert parse_progress(value) == expected

    def test_calculate_progress_percentage(self) -> None:
        """Pages to percent"""
        assert calculate_progress_percentage(50, 100) == 50.0
        assert calculate_progress_percentage(150, 100) == 100.0
        assert calculate_progress_percentage(0, 0) == 0.0

    def test_calculate_current_page(self) -> None:
        """Percent to page, never page zero for a started book"""
        assert calculate_current_page(50.0, 400) == 200
        assert calculate_current_page(0.1, 400) == 1
        assert calculate_current_page(100.0, 400) == 400
        assert calculate_current_page(50.0, 0) == 0

    def test_calculate_current_seconds(self) -> None:
        """Percent to seconds"""
        assert calculate_current_seconds(50.0, 72000) == 36000
        assert calculate_current_seconds(50.0, None) == 0

    def test_format_duration(self) -> None:
        """Seconds, minutes and hours"""
        assert format_duration(30) == "30.0s"
        assert format_duration(90) == "1.5m"
        assert format_duration(5400) == "1.5h"


class TestTimestamps:
    """Test Audiobookshelf timestamp conversion"""

    def test_epoch_milliseconds(self) -> None:
        """Milliseconds are converted in the requested timezone"""
        assert format_timestamp(1704067200000) == "2024-01-01T00:00:00+00:00"
        assert format_timestamp(1704067200000, "America/New_York") == "2023-12-31T19:00:00-05:00"

    def test_epoch_seconds(self) -> None:
        """Small numbers are epoch seconds"""
        assert format_timestamp(1704067200) == "2024-01-01T00:00:00+00:00"

    def test_empty_values(self) -> None:
        """Missing values stay missing"""
        assert format_timestamp(None) is None
        assert format_timestamp(0) is None
        assert to_date(None) is None
        assert to_date("2024-01-01T00:00:00+00:00") == "2024-01-01"
