"""
Delimited-text (CSV/TSV) report parser with a MetaTrader plain-text fallback
"""

import csv
import logging
import re
from typing import Dict, List, Optional, Tuple

from .models import CanonicalTrade, Direction, build_round_trip
from .normalize import map_direction, normalize_symbol, parse_number, parse_timestamp
from .tabular_parser import has_required_concepts, normalize_header, parse_round_trip_rows

logger = logging.getLogger(__name__)

CSV_SOURCE = "Imported from CSV"

CANDIDATE_DELIMITERS = (",", ";", "\t")

_TIME_HEADER_RE = re.compile(r"time|date")
_TEXT_COLUMN_SPLIT_RE = re.compile(r"\t+|\s{2,}")
_TEXT_HEADER_RE = re.compile(r"ticket|order|deal", re.IGNORECASE)

# Keyword families matched by substring, earlier keywords first.
HEADER_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "date": ("close time", "date", "time"),
    "symbol": ("symbol", "instrument"),
    "side": ("type", "side"),
    "entry": ("entry", "open"),
    "exit": ("exit", "close"),
    "size": ("size", "volume", "quantity"),
    "profit": ("profit", "p&l", "pnl"),
    "commission": ("commission",),
    "swap": ("swap",),
}

PRICE_FIELDS = {"entry", "exit"}


def detect_delimiter(header_line: str) -> Optional[str]:
    """Most frequent candidate delimiter; ties resolve in candidate order"""
    best = None
    best_count = 0
    for delimiter in CANDIDATE_DELIMITERS:
        count = header_line.count(delimiter)
        if count > best_count:
            best, best_count = delimiter, count
    return best


def split_line(line: str, delimiter: str) -> List[str]:
    """Quote-aware split; doubled quotes inside a quoted field are literal"""
    row = next(csv.reader([line], delimiter=delimiter, quotechar='"', doublequote=True), [])
    return [cell.strip() for cell in row]


def _find_header(headers: List[str], keywords: Tuple[str, ...], skip_times: bool) -> Optional[int]:
    for keyword in keywords:
        for index, header in enumerate(headers):
            if skip_times and _TIME_HEADER_RE.search(header):
                continue
            if keyword in header:
                return index
    return None


def locate_headers(headers: List[str]) -> Dict[str, Optional[int]]:
    """
    Map logical fields to header indices

    Price fields never claim a time column, so "Open Time" does not shadow
    "Open Price".
    """
    columns = {
        name: _find_header(headers, keywords, skip_times=name in PRICE_FIELDS)
        for name, keywords in HEADER_SYNONYMS.items()
    }
    columns["ticket"] = next(
        (i for i, h in enumerate(headers) if "ticket" in h or re.search(r"\bid\b", h)),
        None,
    )
    return columns


def price_move_pnl(entry: float, exit: float, quantity: float, direction: Direction) -> float:
    if direction == Direction.SHORT:
        return (entry - exit) * quantity
    return (exit - entry) * quantity


def _cell(parts: List[str], index: Optional[int]) -> str:
    if index is None or index >= len(parts):
        return ""
    return parts[index]


def _row_to_trade(parts: List[str], columns: Dict[str, Optional[int]]) -> Optional[CanonicalTrade]:
    symbol_raw = _cell(parts, columns["symbol"])
    direction = map_direction(_cell(parts, columns["side"]))
    close_time = parse_timestamp(_cell(parts, columns["date"]))
    if not symbol_raw or direction is None or close_time is None:
        return None

    entry = parse_number(_cell(parts, columns["entry"]))
    exit_ = parse_number(_cell(parts, columns["exit"]))
    quantity = parse_number(_cell(parts, columns["size"]))
    if None in (entry, exit_, quantity) or quantity <= 0:
        return None

    symbol = normalize_symbol(symbol_raw)
    if not symbol:
        return None

    commission = parse_number(_cell(parts, columns["commission"])) or 0.0
    swap = parse_number(_cell(parts, columns["swap"])) or 0.0
    profit = parse_number(_cell(parts, columns["profit"])) if columns["profit"] is not None else None
    if profit is None:
        profit = price_move_pnl(entry, exit_, quantity, direction)

    return build_round_trip(
        symbol=symbol,
        direction=direction,
        entry=entry,
        exit=exit_,
        quantity=quantity,
        pnl=profit + commission + swap,
        close_time=close_time,
        source=CSV_SOURCE,
        ticket=_cell(parts, columns["ticket"]) or None,
        commission=commission,
        swap=swap,
    )


def parse_delimited_lines(lines: List[str], delimiter: str) -> List[CanonicalTrade]:
    headers = [normalize_header(h) for h in split_line(lines[0], delimiter)]
    columns = locate_headers(headers)

    trades = []
    dropped = 0
    for line in lines[1:]:
        trade = _row_to_trade(split_line(line, delimiter), columns)
        if trade is None:
            dropped += 1
            continue
        trades.append(trade)

    logger.info(f"Delimited parser found {len(trades)} trades ({dropped} rows dropped, "
                f"delimiter {delimiter!r})")
    return trades


def parse_text_statement(lines: List[str]) -> List[CanonicalTrade]:
    """
    Whitespace-aligned MetaTrader text statement

    The header is the first line naming a Ticket/Order/Deal column; columns
    are separated by tabs or runs of two or more spaces.
    """
    for index, line in enumerate(lines):
        if not _TEXT_HEADER_RE.search(line):
            continue
        headers = [normalize_header(h) for h in _TEXT_COLUMN_SPLIT_RE.split(line.strip())]
        if not has_required_concepts(headers):
            continue
        rows = [[part.strip() for part in _TEXT_COLUMN_SPLIT_RE.split(row.strip())]
                for row in lines[index + 1:]]
        trades = parse_round_trip_rows(headers, rows)
        if trades:
            logger.info(f"Text statement parser found {len(trades)} trades")
            return trades
    return []


def parse_delimited(text: str) -> List[CanonicalTrade]:
    """
    Extract trades from delimited text

    Returns:
        List of canonical trades (empty when fewer than two non-empty lines or
        nothing parseable)
    """
    lines = [line.strip() for line in re.split(r"\r?\n", text)]
    lines = [line for line in lines if line]
    if len(lines) < 2:
        return []

    delimiter = detect_delimiter(lines[0])
    if delimiter is not None:
        trades = parse_delimited_lines(lines, delimiter)
        if trades:
            return trades

    return parse_text_statement(lines)
