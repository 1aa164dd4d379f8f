"""
Locale-tolerant number, timestamp, symbol and side normalization

Shared by every report parser and by the remote bridge.
"""

import logging
import re
import warnings
from datetime import datetime, timezone
from typing import Optional

import pandas as pd

from .models import Direction, EntryMarker

logger = logging.getLogger(__name__)

_NON_NUMERIC_RE = re.compile(r"[^0-9.+\-]")
_NON_SYMBOL_RE = re.compile(r"[^A-Za-z0-9]")

# 2024.01.15 / 2024-01-15 / 2024/01/15 with an optional HH:MM[:SS[.fff]] part
_MT_DATETIME_RE = re.compile(
    r"^(\d{4})[.\-/](\d{1,2})[.\-/](\d{1,2})"
    r"(?:[ T]+(\d{1,2}):(\d{2})(?::(\d{2})(?:\.(\d{1,6}))?)?)?\s*"
)


def parse_number(value) -> Optional[float]:
    """
    Parse a broker-formatted number

    Handles thousands separators in either convention:
    "1,234.56" -> 1234.56, "1.234,56" -> 1234.56, "1234,56" -> 1234.56

    Returns:
        Parsed float, or None when the value is empty or not numeric
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if pd.notna(value) else None

    raw = re.sub(r"\s+", "", str(value)).replace("\u2212", "-")
    if not raw:
        return None

    last_comma = raw.rfind(",")
    last_dot = raw.rfind(".")
    if last_comma != -1 and last_dot != -1:
        if last_comma > last_dot:
            # dot thousands, comma decimal
            raw = raw.replace(".", "").replace(",", ".")
        else:
            raw = raw.replace(",", "")
    elif last_comma != -1:
        raw = raw.replace(",", ".")

    cleaned = _NON_NUMERIC_RE.sub("", raw)
    if not cleaned:
        return None

    try:
        parsed = float(cleaned)
    except ValueError:
        return None

    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return None
    return parsed


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a report timestamp into a UTC datetime

    MetaTrader's "YYYY.MM.DD HH:MM:SS" layout is matched first; anything else
    goes through pandas' parser. Naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    raw = str(value).strip()
    if not raw:
        return None

    match = _MT_DATETIME_RE.fullmatch(raw)
    if match:
        year, month, day, hour, minute, second, fraction = match.groups()
        try:
            micro = int(fraction.ljust(6, "0")) if fraction else 0
            return datetime(int(year), int(month), int(day),
                            int(hour or 0), int(minute or 0), int(second or 0),
                            micro, tzinfo=timezone.utc)
        except ValueError:
            return None

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            parsed = pd.to_datetime(raw, utc=True, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None

    if parsed is None or pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def normalize_symbol(value: str) -> str:
    """Keep only ASCII letters and digits, uppercased"""
    return _NON_SYMBOL_RE.sub("", value or "").upper()


def map_direction(value: str) -> Optional[Direction]:
    """Map free-text side to a direction; None when unrecognized"""
    lower = (value or "").lower()
    if "sell" in lower or "short" in lower:
        return Direction.SHORT
    if "buy" in lower or "long" in lower:
        return Direction.LONG
    return None


def parse_entry_marker(value: str) -> Optional[EntryMarker]:
    """
    Map an entry/direction column value to a marker

    Accepts report text ("in", "out", "in/out") and MetaTrader deal entry
    types (DEAL_ENTRY_IN, DEAL_ENTRY_OUT, DEAL_ENTRY_INOUT, DEAL_ENTRY_OUT_BY).
    """
    text = (value or "").strip().lower()
    if text.startswith("deal_entry_"):
        text = text[len("deal_entry_"):]
    if not text:
        return None

    has_in = "in" in text
    has_out = "out" in text
    if has_in and has_out:
        return EntryMarker.BOTH
    if has_in:
        return EntryMarker.IN
    if has_out:
        return EntryMarker.OUT
    return None
