"""
Command Line Interface for trade-recon
"""

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path


def main(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(description="Broker trade reconciliation")
    parser.add_argument("--config", type=str, default="config",
                        help="Config directory path")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json-logs", action="store_true", help="JSON structured logs")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Parse command
    parse_parser = subparsers.add_parser("parse", help="Parse a broker report file")
    parse_parser.add_argument("file", type=str, help="Report file (HTML, XML, CSV, TXT)")
    parse_parser.add_argument("--output", type=str, default=None,
                              help="Write parsed trades to this CSV file")
    parse_parser.add_argument("--save", action="store_true",
                              help="Store parsed trades for --user")
    parse_parser.add_argument("--user", type=str, default=None, help="User id for --save")

    # Connect command
    connect_parser = subparsers.add_parser("connect", help="Connect a MetaTrader account")
    connect_parser.add_argument("--user", type=str, required=True, help="User id")
    connect_parser.add_argument("--platform", choices=["mt4", "mt5"], required=True)
    connect_parser.add_argument("--environment", choices=["demo", "live"], required=True)
    connect_parser.add_argument("--server", type=str, required=True, help="Broker server name")
    connect_parser.add_argument("--login", type=str, required=True, help="Account login")
    connect_parser.add_argument("--cloud-type", choices=["cloud-g1", "cloud-g2"], default="cloud-g2")

    # Import command
    import_parser = subparsers.add_parser("import", help="Import history from a connection")
    import_parser.add_argument("--user", type=str, required=True, help="User id")
    import_parser.add_argument("--connection-id", type=str, required=True)
    import_parser.add_argument("--from", dest="start", type=str, default=None,
                               help="Start time (default 2000-01-01)")
    import_parser.add_argument("--to", dest="end", type=str, default=None,
                               help="End time (default now)")
    import_parser.add_argument("--quick", action="store_true",
                               help="Only the most recent --days")
    import_parser.add_argument("--days", type=int, default=None,
                               help="Days for --quick (1-90, default 30)")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show connections and trade counts")
    status_parser.add_argument("--user", type=str, required=True, help="User id")
    status_parser.add_argument("--connection-id", type=str, default=None)

    args = parser.parse_args(argv)

    from trade_recon.utils.structured_logging import configure_structured_logging
    configure_structured_logging(
        log_level="DEBUG" if args.verbose else "INFO",
        json_format=args.json_logs,
    )

    if args.command == "parse":
        return _handle_parse(args.file, args.output, args.save, args.user, args.config)

    elif args.command == "connect":
        return _handle_connect(args, args.config)

    elif args.command == "import":
        return _handle_import(args, args.config)

    elif args.command == "status":
        return _handle_status(args.user, args.connection_id, args.config)

    parser.print_help()
    return 1


def _build_bridge(config_dir: str):
    from trade_recon.bridge import BrokerBridge, MetaApiClient
    from trade_recon.store import DuckDBTradeStore
    from trade_recon.utils import load_bridge_settings

    settings = load_bridge_settings(config_dir)
    store = DuckDBTradeStore(settings.db_path)
    client = MetaApiClient(
        settings.token,
        settings.client_url,
        settings.provisioning_url,
        max_retries=settings.max_retries,
        pause_after_ms=settings.pause_after_ms,
        timeout=settings.request_timeout,
    )
    return BrokerBridge(store, client, settings=settings)


def _print_error(error) -> int:
    print(f"❌ {error.message} ({error.kind.value})", file=sys.stderr)
    return 1


def _handle_parse(file: str, output: str, save: bool, user: str, config_dir: str) -> int:
    """Handle parse command"""
    from trade_recon.reconciliation.report_parser import (NO_TRADES_MESSAGE, ReportImporter,
                                                          parse_report, to_dataframe)

    path = Path(file)
    if not path.exists():
        print(f"❌ File not found: {file}", file=sys.stderr)
        return 1

    data = path.read_bytes()

    if save:
        if not user:
            print("❌ --save requires --user", file=sys.stderr)
            return 1
        from trade_recon.store import DuckDBTradeStore
        from trade_recon.utils import load_bridge_settings

        settings = load_bridge_settings(config_dir)
        importer = ReportImporter(DuckDBTradeStore(settings.db_path), max_trades=settings.max_trades)
        outcome = importer.import_file(user, data, path.name)
        if not outcome.ok:
            print(f"❌ {outcome.message}", file=sys.stderr)
            return 1
        trades = outcome.trades
        print(f"✅ {outcome.message} ({outcome.upserted} rows written)")
    else:
        report = parse_report(data, path.name)
        if report.is_empty:
            print(f"❌ {NO_TRADES_MESSAGE}", file=sys.stderr)
            return 1
        trades = report.trades
        print(f"Parsed {len(trades)} trades "
              f"(encoding: {report.encoding}, format: {report.parsed_by.value})")

    df = to_dataframe(trades)
    if output:
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(output_path, index=False)
        print(f"📁 Trades written to {output_path}")
    else:
        columns = ["close_time", "symbol", "direction", "quantity", "entry_price", "exit_price", "pnl"]
        print(df[columns].to_string(index=False))
    return 0


def _handle_connect(args, config_dir: str) -> int:
    """Handle connect command; the password is read from the terminal"""
    from trade_recon.bridge import BridgeError

    password = getpass.getpass(f"Password for {args.login}@{args.server}: ")
    bridge = _build_bridge(config_dir)
    try:
        connection = bridge.connect(
            args.user,
            platform=args.platform,
            environment=args.environment,
            server=args.server,
            login=args.login,
            credential=password,
            cloud_type=args.cloud_type,
        )
    except BridgeError as e:
        return _print_error(e)

    print(f"✅ Connection {connection.id} is {connection.status.value}")
    return 0


def _handle_import(args, config_dir: str) -> int:
    """Handle import command"""
    from trade_recon.bridge import BridgeError, PartialImportError

    bridge = _build_bridge(config_dir)
    try:
        if args.quick:
            result = bridge.quick_import(args.user, args.connection_id, days=args.days)
        else:
            result = bridge.import_history(args.user, args.connection_id, start=args.start, end=args.end)
    except PartialImportError as e:
        print(f"⚠️  Partial import: {e.upserted} trades saved before failure", file=sys.stderr)
        return _print_error(e)
    except BridgeError as e:
        return _print_error(e)

    print(f"✅ Imported {result.imported} trades "
          f"({result.upserted} written, {result.total_fetched} deals fetched "
          f"over {result.window_count} windows)")
    return 0


def _handle_status(user: str, connection_id: str, config_dir: str) -> int:
    """Handle status command"""
    from trade_recon.bridge import BridgeError

    bridge = _build_bridge(config_dir)
    try:
        status = bridge.status(user, connection_id)
    except BridgeError as e:
        return _print_error(e)

    print(json.dumps(status, indent=2, default=str))
    return 0


if __name__ == "__main__":
    logging.captureWarnings(True)
    sys.exit(main())
