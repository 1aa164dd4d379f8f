"""
Trade store contract and DuckDB implementation
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set

import duckdb
import pandas as pd

from ..bridge.models import PROVIDER, Connection, ConnectionStatus, Environment, Platform
from ..reconciliation.aggregator import source_keys
from ..reconciliation.models import CanonicalTrade

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "data/trade_recon.duckdb"


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC for storage"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class TradeStore(ABC):
    """Persistence contract used by the report importer and the bridge"""

    @abstractmethod
    def count_trades(self, user_id: str, login: Optional[str] = None) -> int:
        """Trades stored for a user, optionally only for one account login"""

    @abstractmethod
    def existing_source_keys(self, user_id: str, keys: List[str]) -> Set[str]:
        """Subset of `keys` already stored for the user"""

    @abstractmethod
    def upsert_trades(self, user_id: str, trades: List[CanonicalTrade],
                      provider: Optional[str] = None, login: Optional[str] = None) -> int:
        """Insert or replace trades by source key in one transaction; returns rows written"""

    @abstractmethod
    def get_trades(self, user_id: str) -> pd.DataFrame:
        pass

    @abstractmethod
    def save_connection(self, connection: Connection) -> Connection:
        pass

    @abstractmethod
    def get_connection(self, user_id: str, connection_id: str) -> Optional[Connection]:
        pass

    @abstractmethod
    def find_connection(self, user_id: str, server: str, login: str, platform: Platform,
                        environment: Environment, provider: str = PROVIDER) -> Optional[Connection]:
        pass

    @abstractmethod
    def list_connections(self, user_id: str, provider: str = PROVIDER) -> List[Connection]:
        pass

    @abstractmethod
    def delete_connection(self, user_id: str, connection_id: str) -> bool:
        pass


class DuckDBTradeStore(TradeStore):
    """
    DuckDB-backed trade store

    Features:
    - Trades keyed by (user_id, source_key), written with INSERT OR REPLACE
    - Broker connections unique per user, provider, server, login, platform, environment
    - Timestamps stored as UTC
    """

    TRADE_COLUMNS = [
        "user_id", "source_key", "symbol", "direction", "entry_price", "exit_price",
        "quantity", "pnl", "pnl_percent", "outcome", "trade_date", "open_time",
        "close_time", "commission", "swap", "external_id", "position_key",
        "broker_provider", "account_login", "notes", "updated_at",
    ]

    CONNECTION_COLUMNS = [
        "id", "user_id", "provider", "remote_account_id", "platform", "environment",
        "server", "login", "status", "last_import_at", "created_at", "updated_at",
    ]

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = None
        self._connect()
        self._create_tables()
        logger.info(f"DuckDBTradeStore initialized with database: {self.db_path}")

    def _connect(self) -> None:
        try:
            self.conn = duckdb.connect(str(self.db_path))
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    def _create_tables(self) -> None:
        """Create required database tables"""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                user_id VARCHAR NOT NULL,
                source_key VARCHAR NOT NULL,
                symbol VARCHAR NOT NULL,
                direction VARCHAR NOT NULL CHECK (direction IN ('long', 'short')),
                entry_price DOUBLE NOT NULL,
                exit_price DOUBLE NOT NULL,
                quantity DOUBLE NOT NULL CHECK (quantity > 0),
                pnl DOUBLE NOT NULL,
                pnl_percent DOUBLE,
                outcome VARCHAR,
                trade_date DATE NOT NULL,
                open_time TIMESTAMP,
                close_time TIMESTAMP NOT NULL,

                -- Costs
                commission DOUBLE DEFAULT 0.0,
                swap DOUBLE DEFAULT 0.0,

                -- Provenance
                external_id VARCHAR,
                position_key VARCHAR,
                broker_provider VARCHAR,
                account_login VARCHAR,
                notes TEXT,

                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (user_id, source_key)
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS broker_connections (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                provider VARCHAR NOT NULL,
                remote_account_id VARCHAR,
                platform VARCHAR NOT NULL CHECK (platform IN ('mt4', 'mt5')),
                environment VARCHAR NOT NULL CHECK (environment IN ('demo', 'live')),
                server VARCHAR NOT NULL,
                login VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                last_import_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                UNIQUE (user_id, provider, server, login, platform, environment)
            )
        """)

    def _trade_row(self, user_id: str, trade: CanonicalTrade, provider: Optional[str],
                   login: Optional[str], now: datetime) -> list:
        return [
            user_id, trade.source_key, trade.symbol, trade.direction.value,
            trade.entry_price, trade.exit_price, trade.quantity, trade.pnl,
            trade.pnl_percent, trade.outcome.value, trade.trade_date,
            _to_db_time(trade.open_time), _to_db_time(trade.close_time),
            trade.commission, trade.swap, trade.external_id, trade.position_key,
            provider, login, trade.provenance_note, now,
        ]

    def count_trades(self, user_id: str, login: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM trades WHERE user_id = ?"
        params = [user_id]
        if login is not None:
            query += " AND account_login = ?"
            params.append(login)
        with self._lock:
            return self.conn.execute(query, params).fetchone()[0]

    def existing_source_keys(self, user_id: str, keys: List[str]) -> Set[str]:
        if not keys:
            return set()
        placeholders = ", ".join("?" for _ in keys)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT source_key FROM trades WHERE user_id = ? AND source_key IN ({placeholders})",
                [user_id, *keys],
            ).fetchall()
        return {row[0] for row in rows}

    def upsert_trades(self, user_id: str, trades: List[CanonicalTrade],
                      provider: Optional[str] = None, login: Optional[str] = None) -> int:
        unique = list(source_keys(trades).values())
        if not unique:
            return 0

        now = _to_db_time(datetime.now(timezone.utc))
        rows = [self._trade_row(user_id, trade, provider, login, now) for trade in unique]
        columns = ", ".join(self.TRADE_COLUMNS)
        placeholders = ", ".join("?" for _ in self.TRADE_COLUMNS)

        with self._lock:
            self.conn.begin()
            try:
                self.conn.executemany(
                    f"INSERT OR REPLACE INTO trades ({columns}) VALUES ({placeholders})", rows
                )
                self.conn.commit()
            except Exception as e:
                self.conn.rollback()
                logger.error(f"Failed to upsert {len(rows)} trades for user {user_id}: {e}")
                raise

        logger.debug(f"Upserted {len(rows)} trades for user {user_id}")
        return len(rows)

    def get_trades(self, user_id: str) -> pd.DataFrame:
        with self._lock:
            return self.conn.execute(
                "SELECT * FROM trades WHERE user_id = ? ORDER BY close_time", [user_id]
            ).df()

    def _row_to_connection(self, row) -> Connection:
        data = dict(zip(self.CONNECTION_COLUMNS, row))
        return Connection(
            id=data["id"],
            user_id=data["user_id"],
            provider=data["provider"],
            remote_account_id=data["remote_account_id"],
            platform=Platform(data["platform"]),
            environment=Environment(data["environment"]),
            server=data["server"],
            login=data["login"],
            status=ConnectionStatus(data["status"]),
            last_import_at=_from_db_time(data["last_import_at"]),
            created_at=_from_db_time(data["created_at"]),
            updated_at=_from_db_time(data["updated_at"]),
        )

    def _select_connections(self, where: str, params: list) -> List[Connection]:
        columns = ", ".join(self.CONNECTION_COLUMNS)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {columns} FROM broker_connections WHERE {where} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [self._row_to_connection(row) for row in rows]

    def save_connection(self, connection: Connection) -> Connection:
        with self._lock:
            exists = self.conn.execute(
                "SELECT 1 FROM broker_connections WHERE id = ?", [connection.id]
            ).fetchone()
            if exists:
                self.conn.execute("""
                    UPDATE broker_connections
                    SET remote_account_id = ?, status = ?, last_import_at = ?, updated_at = ?
                    WHERE id = ?
                """, [
                    connection.remote_account_id, connection.status.value,
                    _to_db_time(connection.last_import_at), _to_db_time(connection.updated_at),
                    connection.id,
                ])
            else:
                columns = ", ".join(self.CONNECTION_COLUMNS)
                placeholders = ", ".join("?" for _ in self.CONNECTION_COLUMNS)
                self.conn.execute(f"INSERT INTO broker_connections ({columns}) VALUES ({placeholders})", [
                    connection.id, connection.user_id, connection.provider,
                    connection.remote_account_id, connection.platform.value,
                    connection.environment.value, connection.server, connection.login,
                    connection.status.value, _to_db_time(connection.last_import_at),
                    _to_db_time(connection.created_at), _to_db_time(connection.updated_at),
                ])
        return connection

    def get_connection(self, user_id: str, connection_id: str) -> Optional[Connection]:
        found = self._select_connections("id = ? AND user_id = ?", [connection_id, user_id])
        return found[0] if found else None

    def find_connection(self, user_id: str, server: str, login: str, platform: Platform,
                        environment: Environment, provider: str = PROVIDER) -> Optional[Connection]:
        found = self._select_connections(
            "user_id = ? AND provider = ? AND server = ? AND login = ? AND platform = ? AND environment = ?",
            [user_id, provider, server, login, platform.value, environment.value],
        )
        return found[0] if found else None

    def list_connections(self, user_id: str, provider: str = PROVIDER) -> List[Connection]:
        return self._select_connections("user_id = ? AND provider = ?", [user_id, provider])

    def delete_connection(self, user_id: str, connection_id: str) -> bool:
        with self._lock:
            deleted = self.conn.execute(
                "DELETE FROM broker_connections WHERE id = ? AND user_id = ? RETURNING id",
                [connection_id, user_id],
            ).fetchall()
        if deleted:
            logger.info(f"Deleted connection {connection_id} for user {user_id}")
        return bool(deleted)

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

