"""
Tabular Report Parser

Extracts trades from grid-shaped documents (MetaTrader HTML statements,
SpreadsheetML "Open XML" exports, any markup with tables). Columns are found
with ordered regex families rather than a fixed schema, so new broker layouts
are supported by extending the pattern tables below.
"""

import logging
import re
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Dict, List, Optional, Tuple

from .aggregator import aggregate_deals
from .models import CanonicalTrade, RawDeal, build_round_trip
from .normalize import (map_direction, normalize_symbol, parse_entry_marker,
                        parse_number, parse_timestamp)

logger = logging.getLogger(__name__)

ROUND_TRIP_SOURCE = "Imported from MT4/MT5"
FILL_LEVEL_SOURCE = "Imported from MT4/MT5 (Deals)"

MIN_HEADER_COLUMNS = 6

Table = List[List[str]]


def _compile(*patterns: str) -> List[re.Pattern]:
    return [re.compile(p) for p in patterns]


# Patterns within a family are tried in order; the first matching header wins.
ROUND_TRIP_COLUMNS: Dict[str, List[re.Pattern]] = {
    "ticket": _compile(r"ticket", r"order", r"deal", r"position"),
    "open_time": _compile(r"open time", r"^time$", r"time"),
    "close_time": _compile(r"close time"),
    "side": _compile(r"type", r"action", r"side"),
    "size": _compile(r"size", r"volume", r"lots?"),
    "symbol": _compile(r"symbol", r"item", r"instrument"),
    "profit": _compile(r"profit", r"p&l", r"pnl"),
    "commission": _compile(r"commission"),
    "swap": _compile(r"swap"),
    "open_price": _compile(r"open price", r"^open$"),
    "close_price": _compile(r"close price", r"^close$", r"close.*price"),
}

FILL_LEVEL_COLUMNS: Dict[str, List[re.Pattern]] = {
    "time": _compile(r"^time$", r"time"),
    "side": _compile(r"^type$", r"type", r"side", r"action"),
    "symbol": _compile(r"symbol", r"item", r"instrument"),
    "volume": _compile(r"volume", r"lots?", r"size"),
    "price": _compile(r"^price$", r"price"),
    "profit": _compile(r"profit", r"p&l", r"pnl"),
    "marker": _compile(r"^entry$", r"^direction$", r"entry"),
    "position": _compile(r"position", r"pos id"),
    "order": _compile(r"^order$", r"order", r"^id$"),
    "deal": _compile(r"^deal$", r"deal", r"ticket"),
    "commission": _compile(r"commission"),
    "swap": _compile(r"swap"),
}

REQUIRED_CONCEPTS: Dict[str, Tuple[str, ...]] = {
    "identifier": ("ticket", "order", "deal", "position"),
    "profit": ("profit", "p&l", "pnl"),
    "symbol": ("symbol", "item", "instrument"),
}


def _local_tag(tag: str) -> str:
    # SpreadsheetML re-serialized by ElementTree carries prefixes (ns0:row)
    return tag.rsplit(":", 1)[-1]


class _TableCollector(HTMLParser):
    """Collect the cell text of every table in a markup document"""

    ROW_TAGS = {"tr", "row"}
    CELL_TAGS = {"td", "th", "cell"}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.tables: List[Table] = []
        self._frames: List[dict] = []

    def handle_starttag(self, tag, attrs):
        tag = _local_tag(tag)
        if tag == "table":
            self._frames.append({"rows": [], "row": None, "cell": None})
            return
        if not self._frames:
            return

        frame = self._frames[-1]
        if tag in self.ROW_TAGS:
            self._close_row(frame)
            frame["row"] = []
        elif tag in self.CELL_TAGS:
            self._close_cell(frame)
            if frame["row"] is None:
                frame["row"] = []
            frame["cell"] = []
        elif tag == "br" and frame["cell"] is not None:
            frame["cell"].append(" ")

    def handle_endtag(self, tag):
        if not self._frames:
            return
        tag = _local_tag(tag)
        frame = self._frames[-1]
        if tag in self.CELL_TAGS:
            self._close_cell(frame)
        elif tag in self.ROW_TAGS:
            self._close_row(frame)
        elif tag == "table":
            self._close_row(frame)
            self.tables.append(self._frames.pop()["rows"])

    def handle_data(self, data):
        if self._frames and self._frames[-1]["cell"] is not None:
            self._frames[-1]["cell"].append(data)

    def close(self):
        super().close()
        while self._frames:
            frame = self._frames.pop()
            self._close_row(frame)
            self.tables.append(frame["rows"])

    @staticmethod
    def _close_cell(frame):
        if frame["cell"] is not None and frame["row"] is not None:
            frame["row"].append(clean_cell("".join(frame["cell"])))
        frame["cell"] = None

    def _close_row(self, frame):
        self._close_cell(frame)
        if frame["row"]:
            frame["rows"].append(frame["row"])
        frame["row"] = None


def clean_cell(value: str) -> str:
    return re.sub(r"\s+", " ", value.replace("\xa0", " ")).strip()


def normalize_header(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip().lower())


def extract_tables(text: str) -> List[Table]:
    """Parse markup and return every table as rows of cell text"""
    collector = _TableCollector()
    collector.feed(text)
    collector.close()
    return collector.tables


def find_column(headers: List[str], patterns: List[re.Pattern]) -> Optional[int]:
    """Index of the first header matched by the highest-priority pattern"""
    for pattern in patterns:
        for index, header in enumerate(headers):
            if pattern.search(header):
                return index
    return None


def locate_columns(headers: List[str], families: Dict[str, List[re.Pattern]]) -> Dict[str, Optional[int]]:
    return {name: find_column(headers, patterns) for name, patterns in families.items()}


def has_required_concepts(headers: List[str]) -> bool:
    """A header row must name an identifier, a profit and a symbol column"""
    if len(headers) < MIN_HEADER_COLUMNS:
        return False
    return all(
        any(keyword in header for header in headers for keyword in keywords)
        for keywords in REQUIRED_CONCEPTS.values()
    )


def is_fill_level_header(headers: List[str]) -> bool:
    """Fill-level reports carry an entry marker column and no close price"""
    columns = locate_columns(headers, FILL_LEVEL_COLUMNS)
    explicit_close = find_column(headers, ROUND_TRIP_COLUMNS["close_price"])
    marker = columns["marker"]
    return marker is not None and explicit_close is None


def resolve_close_time(headers: List[str], columns: Dict[str, Optional[int]]) -> Optional[int]:
    """Close time column, or the last of several bare "time" columns"""
    if columns["close_time"] is not None:
        return columns["close_time"]
    bare_times = [i for i, h in enumerate(headers) if h == "time"]
    if len(bare_times) >= 2:
        return bare_times[-1]
    return None


def pick_price_columns(headers: List[str], columns: Dict[str, Optional[int]],
                       close_time_idx: Optional[int]) -> Tuple[Optional[int], Optional[int]]:
    """
    Decide which columns hold entry and exit prices

    MetaTrader statements often have two columns both labelled "Price"; the
    one before the close-time column is the entry and the one after is the
    exit. A lone price column serves as both, which is a best-effort guess.
    """
    open_explicit = columns["open_price"]
    close_explicit = columns["close_price"]
    if open_explicit is not None and close_explicit is not None:
        return open_explicit, close_explicit

    price_idxs = [i for i, h in enumerate(headers) if "price" in h]
    if len(price_idxs) >= 2:
        if close_time_idx is not None:
            before = [i for i in price_idxs if i < close_time_idx]
            after = [i for i in price_idxs if i > close_time_idx]
            entry_idx = before[-1] if before else None
            exit_idx = after[0] if after else price_idxs[1]
            return entry_idx, exit_idx
        return price_idxs[0], price_idxs[1]

    any_price = price_idxs[0] if price_idxs else None
    return any_price, any_price


def _cell(cells: List[str], index: Optional[int]) -> str:
    if index is None or index >= len(cells):
        return ""
    return cells[index].strip()


def _optional_number(cells: List[str], index: Optional[int]) -> float:
    if index is None:
        return 0.0
    return parse_number(_cell(cells, index)) or 0.0


def parse_round_trip_rows(headers: List[str], rows: Table) -> List[CanonicalTrade]:
    columns = locate_columns(headers, ROUND_TRIP_COLUMNS)
    close_time_idx = resolve_close_time(headers, columns)
    entry_idx, exit_idx = pick_price_columns(headers, columns, close_time_idx)

    required = [columns["ticket"], columns["side"], columns["size"],
                columns["symbol"], columns["profit"], entry_idx, exit_idx]
    if any(index is None for index in required):
        return []

    trades: List[CanonicalTrade] = []
    dropped = 0
    for cells in rows:
        if len(cells) < len(headers):
            continue

        ticket = _cell(cells, columns["ticket"])
        symbol_raw = _cell(cells, columns["symbol"])
        side_raw = _cell(cells, columns["side"])
        if not ticket or not symbol_raw or not side_raw:
            dropped += 1
            continue

        direction = map_direction(side_raw)
        quantity = parse_number(_cell(cells, columns["size"]))
        entry = parse_number(_cell(cells, entry_idx))
        exit_ = parse_number(_cell(cells, exit_idx))
        profit = parse_number(_cell(cells, columns["profit"]))
        if direction is None or None in (quantity, entry, exit_, profit) or quantity <= 0:
            dropped += 1
            continue

        open_raw = _cell(cells, columns["open_time"])
        close_time = parse_timestamp(_cell(cells, close_time_idx) or open_raw)
        symbol = normalize_symbol(symbol_raw)
        if close_time is None or not symbol:
            dropped += 1
            continue

        commission = _optional_number(cells, columns["commission"])
        swap = _optional_number(cells, columns["swap"])
        trades.append(build_round_trip(
            symbol=symbol,
            direction=direction,
            entry=entry,
            exit=exit_,
            quantity=quantity,
            pnl=profit + commission + swap,
            close_time=close_time,
            source=ROUND_TRIP_SOURCE,
            ticket=ticket,
            open_time=parse_timestamp(open_raw) if open_raw else None,
            commission=commission,
            swap=swap,
        ))

    if dropped:
        logger.debug(f"Dropped {dropped} unparseable round-trip rows")
    return trades


def _fill_level_rows(headers: List[str], rows: Table) -> List[RawDeal]:
    columns = locate_columns(headers, FILL_LEVEL_COLUMNS)
    required = ["time", "side", "symbol", "volume", "price", "profit"]
    if any(columns[name] is None for name in required):
        return []

    key_idx = columns["position"] if columns["position"] is not None else columns["order"]

    deals: List[RawDeal] = []
    for row_number, cells in enumerate(rows):
        if len(cells) < len(headers):
            continue

        time_raw = _cell(cells, columns["time"])
        symbol_raw = _cell(cells, columns["symbol"])
        side_raw = _cell(cells, columns["side"])
        position_key = _cell(cells, key_idx)
        if not time_raw or not symbol_raw or not side_raw or not position_key:
            continue
        if map_direction(side_raw) is None:
            continue

        volume = parse_number(_cell(cells, columns["volume"]))
        price = parse_number(_cell(cells, columns["price"]))
        profit = parse_number(_cell(cells, columns["profit"]))
        timestamp = parse_timestamp(time_raw)
        if None in (volume, price, profit) or timestamp is None:
            continue

        deals.append(RawDeal(
            external_id=_cell(cells, columns["deal"]) or f"{position_key}-{row_number}",
            position_key=position_key,
            symbol=symbol_raw,
            side_hint=side_raw,
            price=price,
            volume=volume,
            timestamp=timestamp,
            profit=profit,
            commission=_optional_number(cells, columns["commission"]),
            swap=_optional_number(cells, columns["swap"]),
            entry_marker=parse_entry_marker(_cell(cells, columns["marker"])),
        ))
    return deals


def _is_deal_header(headers: List[str]) -> bool:
    if len(headers) < MIN_HEADER_COLUMNS:
        return False
    return any("deal" in h or "position" in h for h in headers)


def _report_key(position_key: str, first_entry: RawDeal) -> str:
    return f"report:{normalize_symbol(first_entry.symbol)}:{position_key}"


def parse_round_trips(tables: List[Table]) -> List[CanonicalTrade]:
    """First qualifying round-trip header that yields trades wins"""
    for table in tables:
        for header_index, header_row in enumerate(table):
            headers = [normalize_header(h) for h in header_row]
            if not has_required_concepts(headers) or is_fill_level_header(headers):
                continue
            trades = parse_round_trip_rows(headers, table[header_index + 1:])
            if trades:
                return trades
    return []


def parse_fill_level(tables: List[Table]) -> List[CanonicalTrade]:
    """Read per-fill deal tables and reconcile them into round trips"""
    for table in tables:
        for header_index, header_row in enumerate(table):
            headers = [normalize_header(h) for h in header_row]
            if not _is_deal_header(headers):
                continue
            deals = _fill_level_rows(headers, table[header_index + 1:])
            if not deals:
                continue
            trades = aggregate_deals(deals, source=FILL_LEVEL_SOURCE, key_builder=_report_key)
            if trades:
                return trades
    return []


def parse_tabular(text: str) -> List[CanonicalTrade]:
    """
    Extract trades from a markup report

    Round-trip tables are tried first; fill-level deal tables are reconciled
    through the Deal Aggregator when no round-trip table yields trades.

    Returns:
        List of canonical trades (empty when nothing parseable was found)
    """
    tables = extract_tables(text)
    if not tables:
        return []

    trades = parse_round_trips(tables)
    if trades:
        logger.info(f"Tabular parser found {len(trades)} round-trip trades")
        return trades

    trades = parse_fill_level(tables)
    logger.info(f"Tabular parser found {len(trades)} trades from fill-level rows")
    return trades
