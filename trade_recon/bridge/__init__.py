"""
Remote broker bridge

Provisions remote trading-account proxies, tracks their deployment and
imports their deal history as reconciled trades.
"""

from .client import MetaApiClient
from .errors import BridgeError, ErrorKind, PartialImportError, RateLimitPauseError
from .lifecycle import ConnectionLifecycle, LifecycleError
from .models import Connection, ConnectionStatus, Environment, ImportWindow, Platform
from .service import BrokerBridge, ImportResult

__all__ = [
    'MetaApiClient',
    'BridgeError',
    'ErrorKind',
    'PartialImportError',
    'RateLimitPauseError',
    'ConnectionLifecycle',
    'LifecycleError',
    'Connection',
    'ConnectionStatus',
    'Environment',
    'ImportWindow',
    'Platform',
    'BrokerBridge',
    'ImportResult'
]
