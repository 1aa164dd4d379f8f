"""
Typed error surface for the remote broker bridge
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Bridge failure categories with their HTTP status"""
    UNAUTHORIZED = "unauthorized"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self]


HTTP_STATUS = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.SERVER_ERROR: 500,
}


def kind_for_status(status: int) -> ErrorKind:
    """Map a remote HTTP status to an error kind"""
    if status in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if 400 <= status < 500:
        return ErrorKind.BAD_REQUEST
    return ErrorKind.SERVER_ERROR


class BridgeError(Exception):
    """Base bridge error"""

    def __init__(self, kind: ErrorKind, message: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.meta = meta

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message, "code": self.kind.value}


class RateLimitPauseError(BridgeError):
    """Remote API asked for a back-off longer than the caller will wait"""

    def __init__(self, retry_after_ms: int, retry_at: str,
                 recommended_retry_time: Optional[str] = None,
                 meta: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.RATE_LIMITED, "Rate limited, retrying soon", meta)
        self.retry_after_ms = retry_after_ms
        self.retry_at = retry_at
        self.recommended_retry_time = recommended_retry_time

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_at"] = self.retry_at
        return data


class PartialImportError(BridgeError):
    """A merge batch failed after earlier batches were committed"""

    def __init__(self, message: str, upserted: int):
        super().__init__(ErrorKind.SERVER_ERROR, message)
        self.upserted = upserted

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["upserted"] = self.upserted
        return data
