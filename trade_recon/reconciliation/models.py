"""
Trade data models for report parsing and deal reconciliation
"""

import hashlib
import logging
from dataclasses import asdict, dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Direction(Enum):
    """Trade direction"""
    LONG = "long"
    SHORT = "short"


class EntryMarker(Enum):
    """Whether a fill opens, closes, or reverses a position"""
    IN = "in"
    OUT = "out"
    BOTH = "both"


class TradeOutcome(Enum):
    """Trade outcome derived from net P&L"""
    WIN = "win"
    LOSS = "loss"
    BREAKEVEN = "breakeven"


@dataclass(frozen=True)
class RawDeal:
    """One broker-reported execution fill"""

    external_id: str
    position_key: str
    symbol: str
    side_hint: str
    price: float
    volume: float
    timestamp: datetime

    profit: float = 0.0
    commission: float = 0.0
    swap: float = 0.0
    entry_marker: Optional[EntryMarker] = None

    @property
    def net_profit(self) -> float:
        """Profit including commission and swap"""
        return self.profit + self.commission + self.swap


@dataclass(frozen=True)
class CanonicalTrade:
    """A reconciled round-trip trade"""

    symbol: str
    direction: Direction
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    pnl_percent: float
    open_time: Optional[datetime]
    close_time: datetime
    source_key: str
    provenance_note: str

    external_id: Optional[str] = None
    position_key: Optional[str] = None
    commission: float = 0.0
    swap: float = 0.0

    @property
    def outcome(self) -> TradeOutcome:
        if self.pnl > 0:
            return TradeOutcome.WIN
        if self.pnl < 0:
            return TradeOutcome.LOSS
        return TradeOutcome.BREAKEVEN

    @property
    def trade_date(self) -> date:
        """Calendar date the trade closed on"""
        return self.close_time.date()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = asdict(self)
        data["direction"] = self.direction.value
        data["outcome"] = self.outcome.value
        data["trade_date"] = self.trade_date.isoformat()
        data["close_time"] = self.close_time.isoformat()
        data["open_time"] = self.open_time.isoformat() if self.open_time else None
        return data


def pnl_percentage(entry: float, exit: float, direction: Direction) -> float:
    """Percentage move from entry to exit, sign-adjusted for direction"""
    if not entry:
        return 0.0
    raw = (exit - entry) / entry * 100
    return -raw if direction == Direction.SHORT else raw


def report_source_key(symbol: str, direction: Direction, close_time: datetime,
                      entry: float, exit: float, quantity: float,
                      ticket: Optional[str] = None) -> str:
    """
    Natural key for a trade read from a report file

    Tickets are broker-assigned and stable; without one, the key is a digest
    of the fields that identify the trade so re-imports of the same file
    collide instead of duplicating.
    """
    if ticket:
        return f"report:{symbol}:{ticket}"

    fingerprint = "|".join([
        symbol,
        direction.value,
        close_time.isoformat(),
        repr(float(entry)),
        repr(float(exit)),
        repr(float(quantity)),
    ])
    return "report:" + hashlib.sha1(fingerprint.encode("utf-8")).hexdigest()


def number_repeated_keys(trades: List[CanonicalTrade]) -> List[CanonicalTrade]:
    """
    Suffix repeats of a ticketless digest key with their occurrence number

    Identical rows in one file are distinct trades. Numbering by occurrence
    keeps the keys stable when the same file is imported again.
    """
    seen: Dict[str, int] = {}
    numbered = []
    for trade in trades:
        if not trade.external_id:
            count = seen.get(trade.source_key, 0) + 1
            seen[trade.source_key] = count
            if count > 1:
                trade = replace(trade, source_key=f"{trade.source_key}:{count}")
        numbered.append(trade)
    return numbered


def build_round_trip(symbol: str, direction: Direction, entry: float, exit: float,
                     quantity: float, pnl: float, close_time: datetime,
                     source: str, ticket: Optional[str] = None,
                     open_time: Optional[datetime] = None,
                     commission: float = 0.0, swap: float = 0.0) -> CanonicalTrade:
    """Build a canonical trade from a report row that is already a round trip"""
    note = f"{source} - Ticket: {ticket}" if ticket else source
    return CanonicalTrade(
        symbol=symbol,
        direction=direction,
        entry_price=entry,
        exit_price=exit,
        quantity=quantity,
        pnl=pnl,
        pnl_percent=pnl_percentage(entry, exit, direction),
        open_time=open_time,
        close_time=close_time,
        source_key=report_source_key(symbol, direction, close_time, entry, exit, quantity, ticket),
        provenance_note=note,
        external_id=ticket,
        commission=commission,
        swap=swap,
    )
