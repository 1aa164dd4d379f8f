"""
Shared utilities
"""

from .config import BridgeSettings, ConfigManager, load_bridge_settings

__all__ = [
    'BridgeSettings',
    'ConfigManager',
    'load_bridge_settings'
]
