"""
Pytest configuration and shared fixtures for trade-recon tests
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from trade_recon.store import DuckDBTradeStore  # noqa: E402
from trade_recon.utils.config import BridgeSettings  # noqa: E402

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def store(tmp_path):
    """DuckDB trade store in a temporary directory"""
    trade_store = DuckDBTradeStore(str(tmp_path / "trades.duckdb"))
    yield trade_store
    trade_store.close()


@pytest.fixture
def settings():
    """Bridge settings with valid remote endpoints and small windows"""
    return BridgeSettings(
        token="test-token",
        client_url="https://mt-client-api-v1.example.test",
        provisioning_url="https://mt-provisioning-api-v1.example.test",
        db_path=":memory:",
        import_window_days=30,
        quick_import_days=30,
        quick_import_window_days=10,
        batch_size=2,
        deploy_poll_interval=0.0,
        deploy_timeout=5.0,
    )


@pytest.fixture
def temp_config_dir(tmp_path):
    """Create temporary config directory for testing"""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


@pytest.fixture(autouse=True)
def test_environment(monkeypatch):
    """Keep real credentials and log levels out of tests"""
    for name in ("METAAPI_TOKEN", "METAAPI_CLIENT_URL", "METAAPI_PROVISIONING_URL",
                 "TRADE_RECON_DB", "TRADE_RECON_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
