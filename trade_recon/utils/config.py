"""
Configuration utilities
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

BRIDGE_CONFIG = "broker_bridge"

# Environment variable -> BridgeSettings field
ENV_OVERRIDES = {
    "METAAPI_TOKEN": "token",
    "METAAPI_CLIENT_URL": "client_url",
    "METAAPI_PROVISIONING_URL": "provisioning_url",
    "TRADE_RECON_DB": "db_path",
}


class ConfigManager:
    """Loads YAML configuration, preferring <name>_local.yml over <name>.yml"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)

    def config_file(self, config_type: str) -> Path:
        local_file = self.config_dir / f"{config_type}_local.yml"
        template_file = self.config_dir / f"{config_type}.yml"
        return local_file if local_file.exists() else template_file

    def load_config(self, config_type: str) -> Dict[str, Any]:
        """Load configuration of specified type; empty dict when missing"""
        config_file = self.config_file(config_type)
        if not config_file.exists():
            logger.warning(f"Config file not found: {config_file}")
            return {}

        try:
            with open(config_file, 'r') as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to load config {config_type}: {e}")
            raise

        logger.info(f"Loaded config from {config_file}")
        return config

    def get_bridge_config(self) -> Dict[str, Any]:
        return self.load_config(BRIDGE_CONFIG)


@dataclass
class BridgeSettings:
    """Runtime settings for report imports and the remote bridge"""

    token: str = ""
    client_url: str = ""
    provisioning_url: str = ""
    db_path: str = "data/trade_recon.duckdb"

    import_window_days: int = 90
    quick_import_days: int = 30
    quick_import_window_days: int = 10
    batch_size: int = 500

    deploy_poll_interval: float = 2.0
    deploy_timeout: float = 120.0

    max_retries: int = 12
    pause_after_ms: int = 2000
    request_timeout: float = 30.0

    max_trades: Optional[int] = None

    def __repr__(self) -> str:
        masked = "***" if self.token else ""
        return (f"BridgeSettings(client_url={self.client_url!r}, "
                f"provisioning_url={self.provisioning_url!r}, token={masked!r}, "
                f"db_path={self.db_path!r})")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BridgeSettings':
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown bridge setting: {key}")
                continue
            values[key] = value
        return cls(**values)


def _flatten_bridge_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Map the sectioned YAML layout onto flat BridgeSettings fields"""
    flat: Dict[str, Any] = {}
    remote = config.get("remote", {}) or {}
    flat.update({k: v for k, v in remote.items() if k in ("token", "client_url", "provisioning_url")})
    if "max_retries" in remote:
        flat["max_retries"] = remote["max_retries"]
    if "pause_after_ms" in remote:
        flat["pause_after_ms"] = remote["pause_after_ms"]
    if "request_timeout" in remote:
        flat["request_timeout"] = remote["request_timeout"]

    imports = config.get("import", {}) or {}
    for key in ("import_window_days", "quick_import_days", "quick_import_window_days", "batch_size"):
        if key in imports:
            flat[key] = imports[key]

    deploy = config.get("deploy", {}) or {}
    if "poll_interval" in deploy:
        flat["deploy_poll_interval"] = deploy["poll_interval"]
    if "timeout" in deploy:
        flat["deploy_timeout"] = deploy["timeout"]

    storage = config.get("storage", {}) or {}
    if "db_path" in storage:
        flat["db_path"] = storage["db_path"]

    quota = config.get("quota", {}) or {}
    if "max_trades" in quota:
        flat["max_trades"] = quota["max_trades"]

    return flat


def load_bridge_settings(config_dir: str = "config",
                         environ: Optional[Dict[str, str]] = None) -> BridgeSettings:
    """
    Build BridgeSettings from defaults, YAML and environment

    Later sources win: dataclass defaults, then config/broker_bridge(_local).yml,
    then METAAPI_* / TRADE_RECON_DB environment variables.
    """
    environ = os.environ if environ is None else environ
    values = _flatten_bridge_config(ConfigManager(config_dir).get_bridge_config())

    for env_name, field_name in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[field_name] = environ[env_name]

    settings = BridgeSettings.from_dict(values)
    logger.debug(f"Loaded {settings!r}")
    return settings
