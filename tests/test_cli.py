"""
Tests for the command line interface
"""

from unittest.mock import Mock, patch

import pandas as pd

from trade_recon.bridge.errors import BridgeError, ErrorKind
from trade_recon.cli import main
from trade_recon.store import DuckDBTradeStore

CSV_REPORT = ("Date,Symbol,Type,Entry,Exit,Size,Profit\n"
              "2024-01-15 10:00,EURUSD,buy,1.1,1.2,1,100\n"
              "2024-01-16 10:00,GBPUSD,sell,1.3,1.25,2,-50\n")


def _config_dir(tmp_path, db_path, max_trades=None):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    quota = "null" if max_trades is None else str(max_trades)
    (config_dir / "broker_bridge.yml").write_text(
        f"storage:\n  db_path: {db_path}\nquota:\n  max_trades: {quota}\n"
    )
    return config_dir


class TestParseCommand:

    def test_parse_prints_trades(self, tmp_path, capsys):
        """Test parse prints trades"""
        report = tmp_path / "trades.csv"
        report.write_text(CSV_REPORT)
        assert main(["parse", str(report)]) == 0
        out = capsys.readouterr().out
        assert "Parsed 2 trades" in out
        assert "EURUSD" in out

    def test_parse_writes_csv(self, tmp_path):
        """Test parse writes CSV"""
        report = tmp_path / "trades.csv"
        report.write_text(CSV_REPORT)
        output = tmp_path / "out" / "parsed.csv"
        assert main(["parse", str(report), "--output", str(output)]) == 0
        df = pd.read_csv(output)
        assert list(df["symbol"]) == ["EURUSD", "GBPUSD"]

    def test_missing_file(self, tmp_path):
        """Test missing file"""
        assert main(["parse", str(tmp_path / "missing.csv")]) == 1

    def test_no_trades(self, tmp_path, capsys):
        """Test no trades"""
        report = tmp_path / "notes.txt"
        report.write_text("nothing to see\nhere\n")
        assert main(["parse", str(report)]) == 1
        assert "No valid trades" in capsys.readouterr().err

    def test_save_stores_trades(self, tmp_path):
        """Test save stores trades"""
        db_path = tmp_path / "cli.duckdb"
        config_dir = _config_dir(tmp_path, db_path)
        report = tmp_path / "trades.csv"
        report.write_text(CSV_REPORT)

        assert main(["--config", str(config_dir), "parse", str(report), "--save", "--user", "u1"]) == 0
        store = DuckDBTradeStore(str(db_path))
        assert store.count_trades("u1") == 2
        store.close()

    def test_save_requires_user(self, tmp_path):
        """Test save requires user"""
        report = tmp_path / "trades.csv"
        report.write_text(CSV_REPORT)
        assert main(["parse", str(report), "--save"]) == 1

    def test_save_respects_quota(self, tmp_path, capsys):
        """Test save respects quota"""
        db_path = tmp_path / "cli.duckdb"
        config_dir = _config_dir(tmp_path, db_path, max_trades=1)
        report = tmp_path / "trades.csv"
        report.write_text(CSV_REPORT)

        assert main(["--config", str(config_dir), "parse", str(report), "--save", "--user", "u1"]) == 1
        assert "can only save 1 trades" in capsys.readouterr().err


class TestBridgeCommands:

    def test_status_prints_json(self, capsys):
        """Test status prints JSON"""
        bridge = Mock()
        bridge.status.return_value = {"connections": []}
        with patch("trade_recon.cli._build_bridge", return_value=bridge):
            assert main(["status", "--user", "u1"]) == 0
        assert '"connections": []' in capsys.readouterr().out

    def test_import_error(self, capsys):
        """Test import error"""
        bridge = Mock()
        bridge.import_history.side_effect = BridgeError(ErrorKind.NOT_FOUND, "Connection not found.")
        with patch("trade_recon.cli._build_bridge", return_value=bridge):
            assert main(["import", "--user", "u1", "--connection-id", "c1"]) == 1
        assert "Connection not found." in capsys.readouterr().err

    def test_quick_import(self, capsys):
        """Test quick import"""
        bridge = Mock()
        bridge.quick_import.return_value = Mock(imported=3, upserted=3, total_fetched=7, window_count=1)
        with patch("trade_recon.cli._build_bridge", return_value=bridge):
            assert main(["import", "--user", "u1", "--connection-id", "c1", "--quick", "--days", "5"]) == 0
        bridge.quick_import.assert_called_once_with("u1", "c1", days=5)
        assert "Imported 3 trades" in capsys.readouterr().out

    def test_connect_reads_password(self, capsys):
        """Test connect reads password"""
        bridge = Mock()
        bridge.connect.return_value = Mock(id="c1", status=Mock(value="connected"))
        with patch("trade_recon.cli._build_bridge", return_value=bridge), \
                patch("trade_recon.cli.getpass.getpass", return_value="pw"):
            assert main(["connect", "--user", "u1", "--platform", "mt5", "--environment", "demo",
                         "--server", "Broker-Demo", "--login", "1234"]) == 0
        assert bridge.connect.call_args.kwargs["credential"] == "pw"
        assert "c1 is connected" in capsys.readouterr().out
