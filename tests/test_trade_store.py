"""
Tests for the DuckDB trade store
"""

from datetime import datetime, timezone

import pytest

from trade_recon.bridge.models import Connection, ConnectionStatus, Environment, Platform
from trade_recon.reconciliation.models import Direction, build_round_trip
from trade_recon.store import DuckDBTradeStore


def _trade(ticket, pnl=10.0, day=15, symbol="EURUSD"):
    return build_round_trip(
        symbol=symbol,
        direction=Direction.LONG,
        entry=1.1,
        exit=1.2,
        quantity=1.0,
        pnl=pnl,
        close_time=datetime(2024, 1, day, 12, 0, tzinfo=timezone.utc),
        source="test",
        ticket=ticket,
    )


def _connection(user_id="user-1", login="1234", remote="remote-1"):
    return Connection(
        user_id=user_id,
        platform=Platform.MT5,
        environment=Environment.DEMO,
        server="Broker-Demo",
        login=login,
        remote_account_id=remote,
    )


class TestTrades:
    """Trades are keyed per user by source key"""

    def test_upsert_and_count(self, store):
        """Test upsert and count"""
        assert store.upsert_trades("user-1", [_trade("1"), _trade("2")]) == 2
        assert store.count_trades("user-1") == 2
        assert store.count_trades("user-2") == 0

    def test_upsert_replaces_by_source_key(self, store):
        """Test upsert replaces by source key"""
        store.upsert_trades("user-1", [_trade("1", pnl=10.0)])
        store.upsert_trades("user-1", [_trade("1", pnl=25.0)])
        df = store.get_trades("user-1")
        assert len(df) == 1
        assert df.iloc[0]["pnl"] == pytest.approx(25.0)
        assert df.iloc[0]["outcome"] == "win"

    def test_duplicates_within_batch(self, store):
        """Test duplicates within batch"""
        assert store.upsert_trades("user-1", [_trade("1", pnl=1.0), _trade("1", pnl=2.0)]) == 1
        assert store.get_trades("user-1").iloc[0]["pnl"] == pytest.approx(2.0)

    def test_same_key_different_users(self, store):
        """Test same key different users"""
        store.upsert_trades("user-1", [_trade("1")])
        store.upsert_trades("user-2", [_trade("1")])
        assert store.count_trades("user-1") == 1
        assert store.count_trades("user-2") == 1

    def test_count_by_login(self, store):
        """Test count by login"""
        store.upsert_trades("user-1", [_trade("1")], provider="metaapi", login="1234")
        store.upsert_trades("user-1", [_trade("2")])
        assert store.count_trades("user-1", login="1234") == 1
        assert store.count_trades("user-1") == 2

    def test_existing_source_keys(self, store):
        """Test existing source keys"""
        trade = _trade("1")
        store.upsert_trades("user-1", [trade])
        assert store.existing_source_keys("user-1", [trade.source_key, "report:X:9"]) == {trade.source_key}
        assert store.existing_source_keys("user-1", []) == set()

    def test_empty_upsert(self, store):
        """Test empty upsert"""
        assert store.upsert_trades("user-1", []) == 0

    def test_stored_columns(self, store):
        """Test stored columns"""
        store.upsert_trades("user-1", [_trade("7", day=20)], provider="metaapi", login="1234")
        row = store.get_trades("user-1").iloc[0]
        assert row["symbol"] == "EURUSD"
        assert row["direction"] == "long"
        assert row["broker_provider"] == "metaapi"
        assert row["account_login"] == "1234"
        assert row["notes"] == "test - Ticket: 7"
        assert str(row["trade_date"])[:10] == "2024-01-20"

    def test_failed_batch_rolls_back(self, store):
        """Test failed batch rolls back"""
        bad = build_round_trip(
            symbol="EURUSD", direction=Direction.LONG, entry=1.0, exit=1.0, quantity=0.0,
            pnl=0.0, close_time=datetime(2024, 1, 1, tzinfo=timezone.utc), source="test", ticket="bad",
        )
        with pytest.raises(Exception):
            store.upsert_trades("user-1", [_trade("1"), bad])
        assert store.count_trades("user-1") == 0


class TestConnections:
    """Connection rows"""

    def test_save_and_get(self, store):
        """Test save and get"""
        connection = store.save_connection(_connection())
        loaded = store.get_connection("user-1", connection.id)
        assert loaded.identity == connection.identity
        assert loaded.status == ConnectionStatus.CREATED
        assert loaded.remote_account_id == "remote-1"
        assert loaded.created_at.tzinfo is not None

    def test_get_is_scoped_to_user(self, store):
        """Test get is scoped to user"""
        connection = store.save_connection(_connection())
        assert store.get_connection("user-2", connection.id) is None

    def test_save_updates_existing(self, store):
        """Test save updates existing"""
        connection = store.save_connection(_connection())
        connection.status = ConnectionStatus.DEPLOYING
        connection.last_import_at = datetime(2024, 6, 1, tzinfo=timezone.utc)
        store.save_connection(connection)
        loaded = store.get_connection("user-1", connection.id)
        assert loaded.status == ConnectionStatus.DEPLOYING
        assert loaded.last_import_at == datetime(2024, 6, 1, tzinfo=timezone.utc)

    def test_find_by_identity(self, store):
        """Test find by identity"""
        connection = store.save_connection(_connection())
        found = store.find_connection("user-1", "Broker-Demo", "1234", Platform.MT5, Environment.DEMO)
        assert found.id == connection.id
        assert store.find_connection("user-1", "Broker-Demo", "1234", Platform.MT4, Environment.DEMO) is None

    def test_identity_is_unique(self, store):
        """Test identity is unique"""
        store.save_connection(_connection())
        with pytest.raises(Exception):
            store.save_connection(_connection())

    def test_list_and_delete(self, store):
        """Test list and delete"""
        first = store.save_connection(_connection(login="1"))
        store.save_connection(_connection(login="2"))
        assert len(store.list_connections("user-1")) == 2

        assert store.delete_connection("user-1", first.id)
        assert not store.delete_connection("user-1", first.id)
        assert [c.login for c in store.list_connections("user-1")] == ["2"]

    def test_persists_across_instances(self, tmp_path):
        """Test persists across instances"""
        path = str(tmp_path / "nested" / "db.duckdb")
        store = DuckDBTradeStore(path)
        store.upsert_trades("user-1", [_trade("1")])
        store.close()

        reopened = DuckDBTradeStore(path)
        assert reopened.count_trades("user-1") == 1
        reopened.close()
