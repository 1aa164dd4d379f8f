"""
Deal Aggregator

Merges per-fill execution records into round-trip trades. The same function
reconciles fill-level report tables and remote execution histories.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import CanonicalTrade, Direction, EntryMarker, RawDeal, pnl_percentage
from .normalize import map_direction, normalize_symbol

logger = logging.getLogger(__name__)

# (position_key, first entry fill) -> source_key
SourceKeyBuilder = Callable[[str, RawDeal], str]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def position_source_key(position_key: str, first_entry: RawDeal) -> str:
    """Default natural key: the position id, independent of which fills were fetched"""
    return position_key


def weighted_average(fills: Iterable[RawDeal]) -> Optional[float]:
    """Volume-weighted average price, None when total volume is zero"""
    total_volume = 0.0
    notional = 0.0
    for fill in fills:
        total_volume += fill.volume
        notional += fill.price * fill.volume
    if total_volume <= 0:
        return None
    return notional / total_volume


def partition_fills(group: List[RawDeal]) -> Tuple[List[RawDeal], List[RawDeal]]:
    """
    Split a time-sorted position group into entry and exit fills

    Reversal fills (BOTH) land in both partitions. Unmarked fills open the
    position when first and close it otherwise.
    """
    entries: List[RawDeal] = []
    exits: List[RawDeal] = []

    for index, fill in enumerate(group):
        marker = fill.entry_marker
        if marker is None:
            marker = EntryMarker.IN if index == 0 else EntryMarker.OUT

        if marker in (EntryMarker.IN, EntryMarker.BOTH):
            entries.append(fill)
        if marker in (EntryMarker.OUT, EntryMarker.BOTH):
            exits.append(fill)

    return entries, exits


def group_by_position(deals: Iterable[RawDeal]) -> "OrderedDict[str, List[RawDeal]]":
    """Group fills by position key, preserving first-seen order"""
    groups: "OrderedDict[str, List[RawDeal]]" = OrderedDict()
    for deal in deals:
        if not deal.position_key:
            continue
        groups.setdefault(deal.position_key, []).append(deal)
    return groups


def _sort_key(deal: RawDeal) -> datetime:
    return deal.timestamp or _EPOCH


def reconcile_position(position_key: str, group: List[RawDeal], source: str,
                       key_builder: SourceKeyBuilder = position_source_key) -> Optional[CanonicalTrade]:
    """
    Reconcile one position's fills into a canonical trade

    Returns:
        CanonicalTrade, or None if the group is not yet reconcilable
    """
    ordered = sorted(group, key=_sort_key)
    entries, exits = partition_fills(ordered)
    if not entries or not exits:
        return None

    first_entry = entries[0]
    direction = map_direction(first_entry.side_hint)
    if direction is None:
        return None

    entry_price = weighted_average(entries)
    exit_price = weighted_average(exits)
    if entry_price is None or exit_price is None:
        return None

    quantity = sum(fill.volume for fill in entries)
    symbol = normalize_symbol(first_entry.symbol)
    if quantity <= 0 or not symbol:
        return None

    # Entries usually carry zero profit; summing the whole group avoids
    # assuming which fills hold the P&L.
    pnl = sum(fill.net_profit for fill in ordered)
    commission = sum(fill.commission for fill in ordered)
    swap = sum(fill.swap for fill in ordered)

    return CanonicalTrade(
        symbol=symbol,
        direction=direction,
        entry_price=entry_price,
        exit_price=exit_price,
        quantity=quantity,
        pnl=pnl,
        pnl_percent=pnl_percentage(entry_price, exit_price, direction),
        open_time=first_entry.timestamp,
        close_time=exits[-1].timestamp,
        source_key=key_builder(position_key, first_entry),
        provenance_note=f"{source} (position {position_key}, {len(ordered)} fills)",
        external_id=first_entry.external_id,
        position_key=position_key,
        commission=commission,
        swap=swap,
    )


def aggregate_deals(deals: Iterable[RawDeal], source: str = "Imported deals",
                    key_builder: SourceKeyBuilder = position_source_key) -> List[CanonicalTrade]:
    """
    Reconcile a flat list of fills into round-trip trades

    Args:
        deals: Fills from any source, in any order
        source: Provenance label written into each trade's note
        key_builder: Builds the natural key for a reconciled position

    Returns:
        One CanonicalTrade per reconcilable position group
    """
    groups = group_by_position(deals)
    trades: List[CanonicalTrade] = []
    dropped = 0

    for position_key, group in groups.items():
        trade = reconcile_position(position_key, group, source, key_builder)
        if trade is None:
            dropped += 1
            logger.debug(f"Position {position_key} not reconcilable ({len(group)} fills)")
            continue
        trades.append(trade)

    logger.info(f"Aggregated {len(groups)} positions into {len(trades)} trades "
                f"({dropped} incomplete groups dropped)")
    return trades


def source_keys(trades: Iterable[CanonicalTrade]) -> Dict[str, CanonicalTrade]:
    """Index trades by natural key; later duplicates win"""
    return {trade.source_key: trade for trade in trades}
