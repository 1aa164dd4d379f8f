"""
Broker connection and import window models
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

PROVIDER = "metaapi"

CLOUD_TYPES = ("cloud-g1", "cloud-g2")
DEFAULT_CLOUD_TYPE = "cloud-g2"


class Platform(Enum):
    """MetaTrader terminal generation"""
    MT4 = "mt4"
    MT5 = "mt5"


class Environment(Enum):
    """Broker account environment"""
    DEMO = "demo"
    LIVE = "live"


class ConnectionStatus(Enum):
    """Connection lifecycle state"""
    CREATED = "created"
    DEPLOYING = "deploying"
    CONNECTED = "connected"
    ERROR = "error"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Connection:
    """A user's link to one remote trading account"""

    user_id: str
    platform: Platform
    environment: Environment
    server: str
    login: str

    remote_account_id: Optional[str] = None
    provider: str = PROVIDER
    status: ConnectionStatus = ConnectionStatus.CREATED
    last_import_at: Optional[datetime] = None

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def identity(self):
        """Natural key a connection is reused by"""
        return (self.user_id, self.provider, self.server, self.login,
                self.platform.value, self.environment.value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = asdict(self)
        data["platform"] = self.platform.value
        data["environment"] = self.environment.value
        data["status"] = self.status.value
        for key in ("last_import_at", "created_at", "updated_at"):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data


@dataclass(frozen=True)
class ImportWindow:
    """Half-open [start, end) time range for one history fetch"""
    start: datetime
    end: datetime


def iter_import_windows(start: datetime, end: datetime, window_days: int) -> Iterator[ImportWindow]:
    """
    Split [start, end) into consecutive windows of at most `window_days`

    Windows are contiguous and non-overlapping; the last one is clipped to end.
    """
    if window_days < 1:
        raise ValueError("window_days must be at least 1")

    step = timedelta(days=window_days)
    cursor = start
    while cursor < end:
        window_end = min(cursor + step, end)
        yield ImportWindow(start=cursor, end=window_end)
        cursor = window_end
