"""
Tests for the Deal Aggregator
"""

from datetime import datetime, timedelta, timezone

import pytest

from trade_recon.reconciliation.aggregator import (aggregate_deals, group_by_position,
                                                   partition_fills, position_source_key,
                                                   source_keys, weighted_average)
from trade_recon.reconciliation.models import Direction, EntryMarker, TradeOutcome

from stubs.remote_account_stub import make_deal

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def _at(minutes):
    return T0 + timedelta(minutes=minutes)


class TestWeightedAverage:

    def test_volume_weighted(self):
        """Test volume weighted"""
        fills = [make_deal("1", "p", "buy", 100, 2, T0), make_deal("2", "p", "buy", 102, 1, T0)]
        assert weighted_average(fills) == pytest.approx(302 / 3)

    def test_zero_volume_is_none(self):
        """Test zero volume is none"""
        assert weighted_average([make_deal("1", "p", "buy", 100, 0, T0)]) is None
        assert weighted_average([]) is None


class TestPartitionFills:

    def test_markers(self):
        """Test entry marker parsing"""
        group = [
            make_deal("1", "p", "buy", 100, 1, _at(0), EntryMarker.IN),
            make_deal("2", "p", "sell", 105, 2, _at(1), EntryMarker.BOTH),
            make_deal("3", "p", "buy", 101, 1, _at(2), EntryMarker.OUT),
        ]
        entries, exits = partition_fills(group)
        assert [d.external_id for d in entries] == ["1", "2"]
        assert [d.external_id for d in exits] == ["2", "3"]

    def test_unmarked_first_fill_opens(self):
        """Test unmarked first fill opens"""
        group = [
            make_deal("1", "p", "buy", 100, 1, _at(0)),
            make_deal("2", "p", "sell", 105, 1, _at(1)),
            make_deal("3", "p", "sell", 106, 1, _at(2)),
        ]
        entries, exits = partition_fills(group)
        assert [d.external_id for d in entries] == ["1"]
        assert [d.external_id for d in exits] == ["2", "3"]

    def test_group_by_position_skips_missing_key(self):
        """Test group by position skips missing key"""
        deals = [
            make_deal("1", "a", "buy", 1, 1, T0),
            make_deal("2", "", "buy", 1, 1, T0),
            make_deal("3", "b", "buy", 1, 1, T0),
            make_deal("4", "a", "sell", 1, 1, T0),
        ]
        groups = group_by_position(deals)
        assert list(groups) == ["a", "b"]
        assert len(groups["a"]) == 2


class TestAggregateDeals:
    """Fills reconcile into one round trip per position"""

    def setup_method(self):
        self.deals = [
            make_deal("11", "500", "buy", 100, 2, _at(0), EntryMarker.IN,
                      profit=0, commission=-1, swap=0),
            make_deal("12", "500", "buy", 102, 1, _at(5), EntryMarker.IN,
                      profit=0, commission=-1, swap=0),
            make_deal("13", "500", "sell", 110, 3, _at(60), EntryMarker.OUT,
                      profit=50, commission=0, swap=0.5),
            make_deal("14", "500", "sell", 110, 0.0001, _at(61), EntryMarker.OUT,
                      profit=-5, commission=0, swap=0),
        ]

    def test_vwap_quantity_and_exit(self):
        """Test VWAP quantity and exit"""
        trades = aggregate_deals(self.deals[:3], source="test")
        assert len(trades) == 1
        trade = trades[0]
        assert trade.entry_price == pytest.approx(100.667, abs=1e-3)
        assert trade.quantity == pytest.approx(3)
        assert trade.exit_price == pytest.approx(110)
        assert trade.direction == Direction.LONG

    def test_pnl_sums_profit_commission_and_swap(self):
        """Test P&L sums profit commission and swap"""
        trades = aggregate_deals(self.deals, source="test")
        assert trades[0].pnl == pytest.approx(43.5)
        assert trades[0].commission == pytest.approx(-2)
        assert trades[0].swap == pytest.approx(0.5)
        assert trades[0].outcome == TradeOutcome.WIN

    def test_times_and_identity(self):
        """Test times and identity"""
        trade = aggregate_deals(self.deals[:3], source="test")[0]
        assert trade.open_time == _at(0)
        assert trade.close_time == _at(60)
        assert trade.source_key == "500"
        assert trade.external_id == "11"
        assert trade.position_key == "500"
        assert "position 500" in trade.provenance_note

    def test_input_order_does_not_matter(self):
        """Test input order does not matter"""
        forward = aggregate_deals(self.deals, source="test")[0]
        backward = aggregate_deals(list(reversed(self.deals)), source="test")[0]
        assert forward.entry_price == pytest.approx(backward.entry_price)
        assert forward.source_key == backward.source_key

    def test_open_position_is_dropped(self):
        """Test open position is dropped"""
        assert aggregate_deals(self.deals[:2], source="test") == []

    def test_short_position(self):
        """Test short position"""
        deals = [
            make_deal("1", "9", "sell", 1.2000, 1, _at(0), EntryMarker.IN),
            make_deal("2", "9", "buy", 1.1900, 1, _at(30), EntryMarker.OUT, profit=100),
        ]
        trade = aggregate_deals(deals, source="test")[0]
        assert trade.direction == Direction.SHORT
        assert trade.pnl_percent > 0

    def test_unknown_side_is_dropped(self):
        """Test unknown side is dropped"""
        deals = [
            make_deal("1", "9", "balance", 1, 1, _at(0), EntryMarker.IN),
            make_deal("2", "9", "buy", 1, 1, _at(1), EntryMarker.OUT),
        ]
        assert aggregate_deals(deals, source="test") == []

    def test_custom_key_builder(self):
        """Test custom key builder"""
        trades = aggregate_deals(self.deals, source="test",
                                 key_builder=lambda key, first: f"acct:{key}:{first.external_id}")
        assert trades[0].source_key == "acct:500:11"

    def test_partial_exit_keeps_key(self):
        """Test partial exit keeps key"""
        partial = aggregate_deals(self.deals[:3], source="test")[0]
        complete = aggregate_deals(self.deals, source="test")[0]
        assert partial.source_key == complete.source_key

    def test_later_entries_keep_key(self):
        """Test a range that misses the first entry still yields the same key"""
        scaled = [
            make_deal("1", "700", "buy", 100, 1, _at(0), EntryMarker.IN),
            make_deal("2", "700", "buy", 102, 1, _at(30), EntryMarker.IN),
            make_deal("3", "700", "sell", 105, 2, _at(60), EntryMarker.OUT, profit=8),
        ]
        full = aggregate_deals(scaled, source="test")[0]
        late = aggregate_deals(scaled[1:], source="test")[0]
        assert full.source_key == late.source_key == "700"
        assert full.external_id == "1"
        assert late.external_id == "2"

    def test_several_positions(self):
        """Test several positions"""
        other = [
            make_deal("21", "600", "sell", 50, 1, _at(0), EntryMarker.IN, symbol="xauusd"),
            make_deal("22", "600", "buy", 49, 1, _at(10), EntryMarker.OUT, profit=1, symbol="xauusd"),
        ]
        trades = aggregate_deals(self.deals + other, source="test")
        assert {t.symbol for t in trades} == {"EURUSD", "XAUUSD"}


class TestSourceKeys:

    def test_later_duplicate_wins(self):
        """Test later duplicate wins"""
        deals = [
            make_deal("1", "p", "buy", 1, 1, _at(0), EntryMarker.IN),
            make_deal("2", "p", "sell", 2, 1, _at(1), EntryMarker.OUT),
        ]
        first = aggregate_deals(deals, source="first")[0]
        second = aggregate_deals(deals, source="second")[0]
        keyed = source_keys([first, second])
        assert list(keyed) == [position_source_key("p", deals[0])]
        assert keyed[first.source_key].provenance_note.startswith("second")
