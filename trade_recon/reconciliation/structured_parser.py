"""
Structured-document (XML) report parser
"""

import logging
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple

from .models import CanonicalTrade, build_round_trip
from .normalize import map_direction, normalize_symbol, parse_number, parse_timestamp
from .tabular_parser import ROUND_TRIP_SOURCE, parse_tabular

logger = logging.getLogger(__name__)

CANDIDATE_TAGS = {"trade", "deal", "order", "position"}

# First non-empty child element or attribute wins.
FIELD_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "ticket": ("ticket", "order", "deal", "id"),
    "symbol": ("symbol", "item", "instrument"),
    "side": ("type", "side", "action"),
    "volume": ("volume", "lots", "size", "quantity"),
    "entry": ("open_price", "entry", "openPrice", "price_open", "price"),
    "exit": ("close_price", "exit", "closePrice", "price_close", "close"),
    "profit": ("profit", "pnl", "pl"),
    "time": ("close_time", "closeTime", "open_time", "openTime", "time"),
    "open_time": ("open_time", "openTime"),
    "commission": ("commission", "comm"),
    "swap": ("swap", "swaps"),
}


def local_name(tag) -> str:
    """Tag name without its namespace"""
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def field_text(node: ET.Element, names: Tuple[str, ...]) -> Optional[str]:
    """Text of the first descendant or attribute named in `names`"""
    attributes = {local_name(key): value for key, value in node.attrib.items()}
    for name in names:
        value = (attributes.get(name) or "").strip()
        if value:
            return value
        for child in node.iter():
            if child is node or local_name(child.tag) != name:
                continue
            value = "".join(child.itertext()).strip()
            if value:
                return value
    return None


def candidate_nodes(root: ET.Element) -> List[ET.Element]:
    return [node for node in root.iter() if local_name(node.tag).lower() in CANDIDATE_TAGS]


def trade_from_node(node: ET.Element) -> Optional[CanonicalTrade]:
    """Build a trade from one candidate element, or None when incomplete"""
    fields = {name: field_text(node, synonyms) for name, synonyms in FIELD_SYNONYMS.items()}

    ticket, symbol_raw, side_raw = fields["ticket"], fields["symbol"], fields["side"]
    if not ticket or not symbol_raw or not side_raw:
        return None

    direction = map_direction(side_raw)
    if direction is None:
        return None

    quantity = parse_number(fields["volume"])
    entry = parse_number(fields["entry"])
    exit_ = parse_number(fields["exit"])
    profit = parse_number(fields["profit"])
    if None in (quantity, entry, exit_, profit) or quantity <= 0:
        return None

    close_time = parse_timestamp(fields["time"])
    symbol = normalize_symbol(symbol_raw)
    if close_time is None or not symbol:
        return None

    commission = parse_number(fields["commission"]) or 0.0
    swap = parse_number(fields["swap"]) or 0.0
    return build_round_trip(
        symbol=symbol,
        direction=direction,
        entry=entry,
        exit=exit_,
        quantity=quantity,
        pnl=profit + commission + swap,
        close_time=close_time,
        source=ROUND_TRIP_SOURCE,
        ticket=ticket,
        open_time=parse_timestamp(fields["open_time"]),
        commission=commission,
        swap=swap,
    )


def parse_structured(text: str) -> List[CanonicalTrade]:
    """
    Extract trades from an XML report

    Documents that fail to parse as XML are often HTML mislabelled as XML, so
    they go straight to the tabular parser. Well-formed documents without
    trade elements may still hold SpreadsheetML tables.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        logger.debug(f"XML parse failed ({e}), trying tabular parser")
        return parse_tabular(text)

    trades = []
    dropped = 0
    for node in candidate_nodes(root):
        trade = trade_from_node(node)
        if trade is None:
            dropped += 1
            continue
        trades.append(trade)

    if trades:
        logger.info(f"Structured parser found {len(trades)} trades ({dropped} elements dropped)")
        return trades

    serialized = ET.tostring(root, encoding="unicode")
    trades = parse_tabular(serialized)
    if trades:
        return trades

    return parse_tabular(text)
