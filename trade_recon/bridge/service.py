"""
Remote Broker Bridge

Connects a user's MetaTrader account through the remote account proxy,
imports its deal history in bounded windows and merges the reconciled trades
into the trade store.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..reconciliation.aggregator import aggregate_deals, source_keys
from ..reconciliation.models import CanonicalTrade, RawDeal
from ..reconciliation.normalize import parse_timestamp
from ..utils.config import BridgeSettings
from ..utils.structured_logging import ImportLogger, import_timer
from .client import magic_for_connection
from .errors import BridgeError, ErrorKind, PartialImportError
from .lifecycle import ConnectionLifecycle
from .models import (CLOUD_TYPES, DEFAULT_CLOUD_TYPE, PROVIDER, Connection, ConnectionStatus,
                     Environment, ImportWindow, Platform, iter_import_windows, utc_now)

logger = logging.getLogger(__name__)

HISTORY_START = datetime(2000, 1, 1, tzinfo=timezone.utc)
REMOTE_SOURCE = "Imported via MetaApi"
MAX_QUICK_IMPORT_DAYS = 90


@dataclass
class ImportResult:
    """Counts for one import run"""
    imported: int
    upserted: int
    total_fetched: int
    start: datetime
    end: datetime
    window_days: int
    window_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported": self.imported,
            "upserted": self.upserted,
            "total_fetched": self.total_fetched,
            "range": {
                "from": self.start.isoformat(),
                "to": self.end.isoformat(),
                "window_days": self.window_days,
                "windows": self.window_count,
            },
        }


def _bad_request(message: str) -> BridgeError:
    return BridgeError(ErrorKind.BAD_REQUEST, message)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_platform(value) -> Optional[Platform]:
    text = (_text(value) or "").lower()
    try:
        return Platform(text)
    except ValueError:
        return None


def parse_environment(value) -> Optional[Environment]:
    text = (_text(value) or "").lower()
    try:
        return Environment(text)
    except ValueError:
        return None


def parse_cloud_type(value) -> Optional[str]:
    text = (_text(value) or DEFAULT_CLOUD_TYPE).lower()
    return text if text in CLOUD_TYPES else None


def clamp_days(value, low: int, high: int) -> Optional[int]:
    """Integer clamped to [low, high]; None when not a number"""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return None
    return max(low, min(high, number))


def remote_key_builder(login: str) -> Callable[[str, RawDeal], str]:
    """Source keys from provider, login and position; the opening fill stays in external_id"""
    def build(position_key: str, first_entry: RawDeal) -> str:
        return f"{PROVIDER}:{login}:{position_key}"
    return build


def dedupe_deals(deals: List[RawDeal]) -> List[RawDeal]:
    """Drop repeated fills (same position and id), keeping the first seen"""
    seen = set()
    unique = []
    for deal in deals:
        key = (deal.position_key, deal.external_id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(deal)
    return unique


class BrokerBridge:
    """
    Remote broker import service

    Args:
        store: TradeStore implementation
        client: MetaApiClient (or a compatible stub)
        settings: BridgeSettings; defaults when omitted
        lifecycle: ConnectionLifecycle; built from settings when omitted
        clock: Returns the current UTC time
    """

    def __init__(self, store, client, settings: Optional[BridgeSettings] = None,
                 lifecycle: Optional[ConnectionLifecycle] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.client = client
        self.settings = settings or BridgeSettings()
        self.lifecycle = lifecycle or ConnectionLifecycle(
            store, client,
            poll_interval=self.settings.deploy_poll_interval,
            timeout=self.settings.deploy_timeout,
        )
        self._clock = clock
        self.import_logger = ImportLogger(__name__)

    def _require_user(self, user_id: Optional[str]) -> str:
        if not _text(user_id):
            raise BridgeError(ErrorKind.UNAUTHORIZED, "Unauthorized.")
        return str(user_id)

    def _load_connection(self, user_id: str, connection_id: Optional[str]) -> Connection:
        if not _text(connection_id):
            raise _bad_request("Missing connection_id.")
        connection = self.store.get_connection(user_id, str(connection_id))
        if connection is None:
            raise BridgeError(ErrorKind.NOT_FOUND, "Connection not found.")
        if not connection.remote_account_id or not connection.login:
            raise BridgeError(ErrorKind.SERVER_ERROR, "Connection missing remote account id/login.")
        return connection

    def connect(self, user_id: str, platform, environment, server, login, credential,
                cloud_type=None) -> Connection:
        """
        Connect a trading account, reusing an existing connection when present

        The credential is passed to the remote provisioning call only; it is
        never stored or logged.
        """
        user_id = self._require_user(user_id)
        server = _text(server)
        login = _text(login)
        platform_value = parse_platform(platform)
        environment_value = parse_environment(environment)
        if not server or not login or not _text(credential) or not platform_value or not environment_value:
            raise _bad_request("Missing platform, environment (demo/live), server, login, or password.")

        cloud = parse_cloud_type(cloud_type)
        if cloud is None:
            raise _bad_request('Invalid cloud type. Use "cloud-g1" or "cloud-g2".')

        self.client.validate_config()

        existing = self.store.find_connection(user_id, server, login, platform_value, environment_value)
        if existing is not None and existing.remote_account_id:
            logger.info(f"Reusing connection {existing.id} for {login}@{server}")
            if existing.status == ConnectionStatus.CREATED:
                return self.lifecycle.deploy(existing)
            return self.lifecycle.refresh(existing)

        magic = magic_for_connection(user_id, platform_value.value, environment_value.value, server, login)
        name = f"{user_id} {platform_value.value.upper()} {environment_value.value.upper()} {login}@{server}"
        with import_timer(self.import_logger, "provision_account", login=login, server=server):
            remote_account_id = self.client.create_account(
                login=login,
                password=str(credential),
                server=server,
                platform=platform_value.value,
                name=name,
                cloud_type=cloud,
                magic=magic,
            )

        connection = existing or Connection(
            user_id=user_id,
            platform=platform_value,
            environment=environment_value,
            server=server,
            login=login,
        )
        connection.remote_account_id = remote_account_id
        connection.updated_at = utc_now()
        self.store.save_connection(connection)
        self.import_logger.connection_event(
            "created", connection.id, f"Connection created for {login}@{server}",
            platform=platform_value.value, environment=environment_value.value,
        )

        connection = self.lifecycle.deploy(connection)
        self.import_logger.connection_event(
            connection.status.value, connection.id,
            f"Connection {connection.id} is {connection.status.value}",
        )
        return connection

    def _resolve_range(self, start, end):
        if start is None or start == "":
            start_dt = HISTORY_START
        else:
            start_dt = parse_timestamp(start)
        end_dt = self._clock() if end is None or end == "" else parse_timestamp(end)

        if start_dt is None or end_dt is None or start_dt >= end_dt:
            raise _bad_request("Invalid from/to range.")
        return start_dt, end_dt

    def import_history(self, user_id: str, connection_id: str, start=None, end=None) -> ImportResult:
        """
        Import the full deal history for [start, end)

        Args:
            start: datetime or timestamp string; defaults to 2000-01-01T00:00:00Z
            end: datetime or timestamp string; defaults to now
        """
        user_id = self._require_user(user_id)
        start_dt, end_dt = self._resolve_range(start, end)
        connection = self._load_connection(user_id, connection_id)
        return self._run_import(connection, start_dt, end_dt, self.settings.import_window_days)

    def quick_import(self, user_id: str, connection_id: str, days=None) -> ImportResult:
        """Import the most recent days (1..90, default 30) in short windows"""
        user_id = self._require_user(user_id)
        connection = self._load_connection(user_id, connection_id)

        days_value = clamp_days(days, 1, MAX_QUICK_IMPORT_DAYS) or self.settings.quick_import_days
        end_dt = self._clock()
        start_dt = end_dt - timedelta(days=days_value)
        window_days = max(1, min(days_value, self.settings.quick_import_window_days))
        return self._run_import(connection, start_dt, end_dt, window_days)

    def _fetch_windows(self, connection: Connection, windows: List[ImportWindow]) -> List[RawDeal]:
        deals: List[RawDeal] = []
        for index, window in enumerate(windows, start=1):
            fetched = self.client.fetch_deals(connection.remote_account_id, window)
            deals.extend(fetched)
            self.import_logger.window_event(
                index, len(windows), len(fetched),
                f"Fetched window {index}/{len(windows)} for connection {connection.id}",
                connection_id=connection.id,
                window_start=window.start.isoformat(),
                window_end=window.end.isoformat(),
            )
        return deals

    def _merge(self, connection: Connection, trades: List[CanonicalTrade]) -> int:
        """Write trades in sequential batches; a failed batch stops the merge"""
        batch_size = max(1, int(self.settings.batch_size))
        upserted = 0
        for batch_index, offset in enumerate(range(0, len(trades), batch_size), start=1):
            batch = trades[offset:offset + batch_size]
            try:
                upserted += self.store.upsert_trades(
                    connection.user_id, batch, provider=connection.provider, login=connection.login
                )
            except Exception as e:
                self.import_logger.error_event(
                    "merge", str(e),
                    f"Merge batch {batch_index} failed after {upserted} rows",
                    connection_id=connection.id, upserted=upserted,
                )
                raise PartialImportError(
                    f"Import failed while saving trades ({upserted} of {len(trades)} saved): {e}",
                    upserted=upserted,
                ) from e
            self.import_logger.merge_event(
                batch_index, len(batch), upserted,
                f"Merged batch {batch_index} for connection {connection.id}",
                connection_id=connection.id,
            )
        return upserted

    def _run_import(self, connection: Connection, start: datetime, end: datetime,
                    window_days: int) -> ImportResult:
        if connection.status != ConnectionStatus.CONNECTED:
            logger.warning(f"Importing from connection {connection.id} in state {connection.status.value}")

        windows = list(iter_import_windows(start, end, window_days))
        with import_timer(self.import_logger, "history_import", connection_id=connection.id):
            deals = dedupe_deals(self._fetch_windows(connection, windows))
            trades = aggregate_deals(deals, source=REMOTE_SOURCE,
                                     key_builder=remote_key_builder(connection.login))
            unique = list(source_keys(trades).values())
            upserted = self._merge(connection, unique)

        self.lifecycle.mark_imported(connection, self._clock())
        logger.info(f"Imported {len(unique)} trades from {len(deals)} deals "
                    f"for connection {connection.id}")
        return ImportResult(
            imported=len(unique),
            upserted=upserted,
            total_fetched=len(deals),
            start=start,
            end=end,
            window_days=window_days,
            window_count=len(windows),
        )

    def status(self, user_id: str, connection_id: Optional[str] = None) -> Dict[str, Any]:
        """Connection list with per-login trade counts, or one connection's status"""
        user_id = self._require_user(user_id)

        if _text(connection_id):
            connection = self.store.get_connection(user_id, str(connection_id))
            if connection is None:
                raise BridgeError(ErrorKind.NOT_FOUND, "Connection not found.")
            return {
                "connection_status": connection.status.value,
                "last_import_at": connection.last_import_at.isoformat() if connection.last_import_at else None,
                "trades_imported_total_for_connection": self.store.count_trades(user_id, login=connection.login),
                "trades_total_for_user": self.store.count_trades(user_id),
            }

        connections = []
        for connection in self.store.list_connections(user_id):
            if not connection.remote_account_id:
                continue
            data = connection.to_dict()
            data["trade_count"] = self.store.count_trades(user_id, login=connection.login)
            connections.append(data)
        return {"connections": connections}

    def disconnect(self, user_id: str, connection_id: str) -> Dict[str, Any]:
        """Delete a connection row; imported trades are kept"""
        user_id = self._require_user(user_id)
        if not _text(connection_id):
            raise _bad_request("Missing connection_id.")
        if not self.store.delete_connection(user_id, str(connection_id)):
            raise BridgeError(ErrorKind.NOT_FOUND, "Connection not found.")
        self.import_logger.connection_event("deleted", str(connection_id), "Connection deleted")
        return {"deleted": True, "connection_id": str(connection_id)}
