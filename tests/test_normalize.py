"""
Tests for number, timestamp, symbol and side normalization
"""

from datetime import datetime, timezone

import pytest

from trade_recon.reconciliation.models import Direction, EntryMarker
from trade_recon.reconciliation.normalize import (map_direction, normalize_symbol,
                                                  parse_entry_marker, parse_number,
                                                  parse_timestamp)


class TestParseNumber:
    """Locale-tolerant number parsing"""

    @pytest.mark.parametrize("raw,expected", [
        ("1,234.56", 1234.56),
        ("1.234,56", 1234.56),
        ("1234,56", 1234.56),
        ("1 234,50", 1234.5),
        ("  -12.50 ", -12.5),
        ("\u22125.5", -5.5),
        ("0.01", 0.01),
        (3, 3.0),
        (2.5, 2.5),
    ])
    def test_parses(self, raw, expected):
        """Test number parsing"""
        assert parse_number(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", [None, "", "   ", "abc", "-", float("nan")])
    def test_unparseable_is_none(self, raw):
        """Test unparseable is none"""
        assert parse_number(raw) is None


class TestParseTimestamp:
    """Report timestamps always come back timezone-aware in UTC"""

    def test_metatrader_layout(self):
        """Test metatrader layout"""
        assert parse_timestamp("2024.01.15 10:30:00") == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_date_only(self):
        """Test date only"""
        assert parse_timestamp("2024.01.15") == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_fractional_seconds(self):
        """Test fractional seconds"""
        parsed = parse_timestamp("2024-01-15T10:30:00.250")
        assert parsed == datetime(2024, 1, 15, 10, 30, 0, 250000, tzinfo=timezone.utc)

    def test_iso_with_zulu(self):
        """Test ISO timestamp with Z suffix"""
        assert parse_timestamp("2024-01-15T10:30:00Z") == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_offset_is_converted_to_utc(self):
        """Test offset is converted to UTC"""
        parsed = parse_timestamp("2024-01-15T12:30:00+02:00")
        assert parsed == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_naive_datetime_is_utc(self):
        """Test naive datetime is taken as UTC"""
        parsed = parse_timestamp(datetime(2024, 1, 15, 10, 30))
        assert parsed.tzinfo is not None
        assert parsed.utcoffset().total_seconds() == 0

    @pytest.mark.parametrize("raw", [None, "", "not a date", "2024.13.45 10:00:00"])
    def test_unparseable_is_none(self, raw):
        """Test unparseable is none"""
        assert parse_timestamp(raw) is None


class TestSymbolsAndSides:

    @pytest.mark.parametrize("raw,expected", [
        ("eurusd", "EURUSD"),
        ("EUR/USD.m", "EURUSDM"),
        ("#US30", "US30"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize_symbol(self, raw, expected):
        """Test normalize symbol"""
        assert normalize_symbol(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("buy", Direction.LONG),
        ("Buy Limit", Direction.LONG),
        ("LONG", Direction.LONG),
        ("sell stop", Direction.SHORT),
        ("Short", Direction.SHORT),
        ("balance", None),
        ("", None),
    ])
    def test_map_direction(self, raw, expected):
        """Test map direction"""
        assert map_direction(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("in", EntryMarker.IN),
        ("out", EntryMarker.OUT),
        ("in/out", EntryMarker.BOTH),
        ("DEAL_ENTRY_IN", EntryMarker.IN),
        ("DEAL_ENTRY_OUT", EntryMarker.OUT),
        ("DEAL_ENTRY_INOUT", EntryMarker.BOTH),
        ("DEAL_ENTRY_OUT_BY", EntryMarker.OUT),
        ("", None),
        ("x", None),
    ])
    def test_parse_entry_marker(self, raw, expected):
        """Test parse entry marker"""
        assert parse_entry_marker(raw) == expected
