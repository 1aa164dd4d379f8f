"""
HTTP client for the remote trading-account proxy

Wraps the provisioning API (create, deploy and read accounts) and the client
API (history deals) behind a requests.Session, with 429 back-off that gives up
early instead of blocking callers for long stretches.
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from ..reconciliation.models import RawDeal
from ..reconciliation.normalize import parse_entry_marker, parse_number, parse_timestamp
from .errors import BridgeError, ErrorKind, RateLimitPauseError, kind_for_status
from .models import ImportWindow, utc_now

logger = logging.getLogger(__name__)

CLIENT_API_MARKER = "mt-client-api-v1"
PROVISIONING_API_MARKER = "mt-provisioning-api-v1"

MIN_RETRY_DELAY_MS = 250
MAX_RETRY_DELAY_MS = 15_000
BASE_RETRY_DELAY_MS = 500
DEFAULT_MAX_RETRIES = 12
DEFAULT_PAUSE_AFTER_MS = 2_000

# account id -> [lock, holders]; entries are removed when the last holder leaves
_history_locks: Dict[str, list] = {}
_history_locks_guard = threading.Lock()


def fnv1a32(value: str) -> int:
    """32-bit FNV-1a hash over UTF-16 code units"""
    hash_ = 0x811C9DC5
    encoded = value.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        hash_ ^= encoded[i] | (encoded[i + 1] << 8)
        hash_ = (hash_ * 0x01000193) & 0xFFFFFFFF
    return hash_


def magic_for_connection(user_id: str, platform: str, environment: str, server: str, login: str) -> int:
    """Stable, non-zero 32-bit signed magic number for a terminal account"""
    seed = f"tj:{user_id}:{platform}:{environment}:{server}:{login}"
    return fnv1a32(seed) % 2147483646 + 1


def to_remote_time(value: datetime) -> str:
    """Format as "YYYY-MM-DD HH:MM:SS.mmm" in UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%d %H:%M:%S.") + f"{value.microsecond // 1000:03d}"


def recommended_retry_time(meta: Any) -> Optional[str]:
    """Find recommendedRetryTime at the top level or nested in metadata/error"""
    if not isinstance(meta, dict):
        return None

    candidates = [meta, meta.get("metadata")]
    error = meta.get("error")
    if isinstance(error, dict):
        candidates.extend([error, error.get("metadata")])

    for candidate in candidates:
        if isinstance(candidate, dict) and candidate.get("recommendedRetryTime"):
            return str(candidate["recommendedRetryTime"])
    return None


def retry_after_ms(headers, now: datetime) -> Optional[int]:
    value = headers.get("Retry-After") if headers is not None else None
    if not value:
        return None
    try:
        seconds = float(value)
        if seconds >= 0:
            return round(seconds * 1000)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, round((when - now).total_seconds() * 1000))


def _clamp_delay(delay_ms: float) -> int:
    return int(min(MAX_RETRY_DELAY_MS, max(MIN_RETRY_DELAY_MS, delay_ms)))


def compute_retry_delay_ms(attempt: int, headers, meta: Any, now: datetime) -> int:
    """
    Back-off delay for a 429 response

    Priority: the body's recommendedRetryTime, then Retry-After, then
    exponential 500 * 2^attempt. Always clamped to [250, 15000] ms.
    """
    recommended = parse_timestamp(recommended_retry_time(meta))
    if recommended is not None:
        return _clamp_delay((recommended - now).total_seconds() * 1000 + 250)

    header_delay = retry_after_ms(headers, now)
    if header_delay is not None:
        return _clamp_delay(header_delay)

    return _clamp_delay(BASE_RETRY_DELAY_MS * 2 ** max(0, attempt))


@contextmanager
def history_lock(account_id: str):
    """Serialize history fetches for one remote account within this process"""
    key = (account_id or "").strip()
    if not key:
        yield
        return
    with _history_locks_guard:
        entry = _history_locks.setdefault(key, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _history_locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _history_locks[key]


def deal_to_raw(deal: Dict[str, Any]) -> Optional[RawDeal]:
    """
    Convert a remote history deal to a RawDeal

    Balance, credit and other non-trade deals have no symbol and are skipped.
    """
    deal_id = deal.get("id")
    position_key = deal.get("positionId") or deal.get("orderId") or deal_id
    symbol = deal.get("symbol")
    timestamp = parse_timestamp(deal.get("time"))
    if not deal_id or not position_key or not symbol or timestamp is None:
        return None

    price = parse_number(deal.get("price"))
    volume = parse_number(deal.get("volume"))
    if price is None or volume is None:
        return None

    return RawDeal(
        external_id=str(deal_id),
        position_key=str(position_key),
        symbol=str(symbol),
        side_hint=str(deal.get("type") or ""),
        price=price,
        volume=volume,
        timestamp=timestamp,
        profit=parse_number(deal.get("profit")) or 0.0,
        commission=parse_number(deal.get("commission")) or 0.0,
        swap=parse_number(deal.get("swap")) or 0.0,
        entry_marker=parse_entry_marker(str(deal.get("entryType") or "")),
    )


def _trim_base_url(url: str) -> str:
    return (url or "").strip().rstrip("/")


class MetaApiClient:
    """
    Remote account proxy client

    Args:
        token: API token sent in the auth-token header
        client_url: Client API base URL (history, account information)
        provisioning_url: Provisioning API base URL (accounts)
        session: Optional requests.Session, injectable for tests
        sleep: Sleep function taking seconds
    """

    def __init__(self, token: str, client_url: str, provisioning_url: str,
                 session: Optional[requests.Session] = None,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 pause_after_ms: int = DEFAULT_PAUSE_AFTER_MS,
                 timeout: float = 30.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = utc_now):
        self.token = token
        self.client_url = _trim_base_url(client_url)
        self.provisioning_url = _trim_base_url(provisioning_url)
        self.session = session or requests.Session()
        self.max_retries = max(0, int(max_retries))
        self.pause_after_ms = max(MIN_RETRY_DELAY_MS, int(pause_after_ms))
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def validate_config(self) -> None:
        """Raise server_error when the remote endpoints are misconfigured"""
        if not self.token:
            raise BridgeError(ErrorKind.SERVER_ERROR, "METAAPI_TOKEN is not configured.")
        if CLIENT_API_MARKER not in self.client_url:
            raise BridgeError(ErrorKind.SERVER_ERROR,
                              f'METAAPI_CLIENT_URL must point to "{CLIENT_API_MARKER}".')
        if PROVISIONING_API_MARKER not in self.provisioning_url:
            raise BridgeError(ErrorKind.SERVER_ERROR,
                              f'METAAPI_PROVISIONING_URL must point to "{PROVISIONING_API_MARKER}".')

    @property
    def _headers(self) -> Dict[str, str]:
        return {"auth-token": self.token, "Accept": "application/json"}

    def _send(self, method: str, url: str, payload: Optional[Dict[str, Any]]) -> requests.Response:
        try:
            return self.session.request(method, url, headers=self._headers,
                                        json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Remote request failed: {method} {url}: {e}")
            raise BridgeError(ErrorKind.SERVER_ERROR, f"Remote request failed: {e}") from e

    def request_with_retry(self, method: str, url: str,
                           payload: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Send a request, sleeping through short 429 back-offs"""
        attempt = 0
        while True:
            response = self._send(method, url, payload)
            if response.status_code != 429:
                return response

            meta = _response_json(response)
            now = self._clock()
            delay_ms = compute_retry_delay_ms(attempt, response.headers, meta, now)
            retry_at = (now + timedelta(milliseconds=delay_ms)).isoformat()

            if attempt >= self.max_retries or delay_ms > self.pause_after_ms:
                logger.warning(f"Rate limited on {url}; pausing until {retry_at}")
                raise RateLimitPauseError(delay_ms, retry_at, recommended_retry_time(meta), meta)

            logger.info(f"Rate limited on {url}; retry {attempt + 1} in {delay_ms} ms")
            self._sleep(delay_ms / 1000)
            attempt += 1

    def request_json(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        response = self.request_with_retry(method, url, payload)
        body = _response_json(response)
        if not response.ok:
            message = None
            if isinstance(body, dict):
                error = body.get("error")
                message = body.get("message") or (error.get("message") if isinstance(error, dict) else None)
            message = message or response.text or f"Remote API error (HTTP {response.status_code})."
            raise BridgeError(kind_for_status(response.status_code), message, meta=body)
        return body

    def _account_url(self, base: str, account_id: str, suffix: str = "") -> str:
        return f"{base}/users/current/accounts/{quote(account_id, safe='')}{suffix}"

    def create_account(self, login: str, password: str, server: str, platform: str,
                       name: str, cloud_type: str, magic: int) -> str:
        """Provision a remote account; returns its id"""
        body = self.request_json("POST", f"{self.provisioning_url}/users/current/accounts", {
            "login": login,
            "password": password,
            "name": name,
            "server": server,
            "platform": platform,
            "type": cloud_type,
            "magic": magic,
        })
        account_id = None
        if isinstance(body, dict):
            account_id = body.get("id") or body.get("_id") or body.get("accountId")
        if not account_id:
            raise BridgeError(ErrorKind.SERVER_ERROR, "Remote account create returned no id.")
        logger.info(f"Provisioned remote account {account_id} for login {login}@{server}")
        return str(account_id)

    def deploy_account(self, account_id: str) -> None:
        self.request_json("POST", self._account_url(self.provisioning_url, account_id, "/deploy"))

    def read_account(self, account_id: str) -> Dict[str, Any]:
        body = self.request_json("GET", self._account_url(self.provisioning_url, account_id))
        return body if isinstance(body, dict) else {}

    def account_state(self, account_id: str) -> str:
        return str(self.read_account(account_id).get("state") or "").upper()

    def get_deals_by_time_range(self, account_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Raw history deals in [start, end)"""
        suffix = (f"/history-deals/time/{quote(to_remote_time(start), safe='')}"
                  f"/{quote(to_remote_time(end), safe='')}")
        with history_lock(account_id):
            body = self.request_json("GET", self._account_url(self.client_url, account_id, suffix))
        return body if isinstance(body, list) else []

    def fetch_deals(self, account_id: str, window: ImportWindow) -> List[RawDeal]:
        """History deals for one window, converted and filtered"""
        raw = self.get_deals_by_time_range(account_id, window.start, window.end)
        deals = [deal for deal in (deal_to_raw(item) for item in raw) if deal is not None]
        logger.debug(f"Window {window.start:%Y-%m-%d}..{window.end:%Y-%m-%d}: "
                     f"{len(raw)} remote deals, {len(deals)} usable")
        return deals


def _response_json(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}
