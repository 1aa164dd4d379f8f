"""
Tests for configuration loading
"""

from pathlib import Path

import pytest
import yaml

from trade_recon.utils.config import BridgeSettings, ConfigManager, load_bridge_settings

REPO_CONFIG = Path(__file__).parent.parent / "config"


class TestConfigManager:

    def test_local_file_wins(self, temp_config_dir):
        """Test local file wins"""
        (temp_config_dir / "broker_bridge.yml").write_text("storage:\n  db_path: template.duckdb\n")
        (temp_config_dir / "broker_bridge_local.yml").write_text("storage:\n  db_path: local.duckdb\n")
        config = ConfigManager(str(temp_config_dir)).get_bridge_config()
        assert config["storage"]["db_path"] == "local.duckdb"

    def test_missing_file_is_empty(self, temp_config_dir):
        """Test missing file is empty"""
        assert ConfigManager(str(temp_config_dir)).load_config("nothing") == {}

    def test_empty_file_is_empty(self, temp_config_dir):
        """Test empty file is empty"""
        (temp_config_dir / "broker_bridge.yml").write_text("")
        assert ConfigManager(str(temp_config_dir)).get_bridge_config() == {}

    def test_invalid_yaml_raises(self, temp_config_dir):
        """Test invalid YAML raises"""
        (temp_config_dir / "broker_bridge.yml").write_text("remote: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            ConfigManager(str(temp_config_dir)).get_bridge_config()


class TestBridgeSettings:

    def test_defaults_without_config(self, temp_config_dir):
        """Test defaults without config"""
        settings = load_bridge_settings(str(temp_config_dir), environ={})
        assert settings == BridgeSettings()
        assert settings.quick_import_days == 30
        assert settings.max_trades is None

    def test_repository_template_loads(self):
        """Test repository template loads"""
        settings = load_bridge_settings(str(REPO_CONFIG), environ={})
        assert "mt-client-api-v1" in settings.client_url
        assert "mt-provisioning-api-v1" in settings.provisioning_url
        assert settings.import_window_days == 90
        assert settings.deploy_timeout == 120

    def test_sections_are_flattened(self, temp_config_dir):
        """Test sections are flattened"""
        (temp_config_dir / "broker_bridge.yml").write_text(
            "remote:\n  token: from-yaml\n  max_retries: 3\n"
            "import:\n  batch_size: 50\n  quick_import_window_days: 5\n"
            "deploy:\n  poll_interval: 0.5\n  timeout: 10\n"
            "quota:\n  max_trades: 50\n"
        )
        settings = load_bridge_settings(str(temp_config_dir), environ={})
        assert settings.token == "from-yaml"
        assert settings.max_retries == 3
        assert settings.batch_size == 50
        assert settings.quick_import_window_days == 5
        assert settings.deploy_poll_interval == 0.5
        assert settings.deploy_timeout == 10
        assert settings.max_trades == 50

    def test_environment_overrides(self, temp_config_dir):
        """Test environment overrides"""
        (temp_config_dir / "broker_bridge.yml").write_text("remote:\n  token: from-yaml\n")
        settings = load_bridge_settings(str(temp_config_dir), environ={
            "METAAPI_TOKEN": "from-env",
            "TRADE_RECON_DB": "/tmp/other.duckdb",
            "METAAPI_CLIENT_URL": "",
        })
        assert settings.token == "from-env"
        assert settings.db_path == "/tmp/other.duckdb"
        assert settings.client_url == ""

    def test_unknown_keys_are_ignored(self):
        """Test unknown keys are ignored"""
        settings = BridgeSettings.from_dict({"batch_size": 10, "colour": "blue"})
        assert settings.batch_size == 10

    def test_repr_masks_token(self):
        """Test repr masks token"""
        text = repr(BridgeSettings(token="super-secret"))
        assert "super-secret" not in text
        assert "***" in text
