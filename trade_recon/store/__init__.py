"""
Trade persistence
"""

from .trade_store import DuckDBTradeStore, TradeStore

__all__ = [
    'DuckDBTradeStore',
    'TradeStore'
]
