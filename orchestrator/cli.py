"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the trading engine.

- Provides argparse-based CLI
- Loads configuration from CLI and environment
- Entry point for the engine process, the admin API and
  one-shot maintenance commands

============================================================
USAGE
============================================================
python -m orchestrator.cli run
python -m orchestrator.cli serve --port 8000
python -m orchestrator.cli init-db
python -m orchestrator.cli reconcile detect --account 1 --hours 24
python -m orchestrator.cli reconcile import --account 1 --map 812345=17
python -m orchestrator.cli reconcile fix-orphans --alt 55=17
python -m orchestrator.cli audit

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.exceptions import TradingException

from .config import EngineSettings
from .core import TradingEngine, setup_logging


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="trading-engine",
        description="Position ledger, risk exits and signal confirmation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run         - Run the engine with its scheduler (risk exits, confirmations, reconciliation)
  serve       - Run the engine and the admin HTTP API
  init-db     - Create the database schema and exit
  reconcile   - Detect/import missing exchange fills, fix orphaned SELLs
  audit       - Check ledger invariants

Examples:
  %(prog)s run --log-level DEBUG
  %(prog)s serve --host 0.0.0.0 --port 8080
  %(prog)s reconcile detect --account 1 --hours 48 --symbol BTCUSDT
  %(prog)s reconcile import --account 1 --map 812345=17 --map 812399=18
        """
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    global_group = parser.add_argument_group("Global Options")

    global_group.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="Load environment variables from this file (default: .env)",
    )

    global_group.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="Override DATABASE_URL",
    )

    global_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override LOG_LEVEL",
    )

    global_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Override LOG_FORMAT",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    # --------------------------------------------------------
    # Engine
    # --------------------------------------------------------
    commands.add_parser("run", help="Run the engine with its scheduler")

    serve = commands.add_parser("serve", help="Run the engine and the admin HTTP API")
    serve.add_argument("--host", type=str, help="Override API_HOST")
    serve.add_argument("--port", type=int, help="Override API_PORT")
    serve.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Serve the API without running the periodic jobs",
    )

    commands.add_parser("init-db", help="Create the database schema and exit")

    # --------------------------------------------------------
    # Reconciliation
    # --------------------------------------------------------
    reconcile = commands.add_parser("reconcile", help="Ledger versus exchange reconciliation")
    actions = reconcile.add_subparsers(dest="action", metavar="ACTION")
    actions.required = True

    for name, help_text in (
        ("detect", "List exchange fills missing from the ledger"),
        ("import", "Import missing exchange fills"),
    ):
        action = actions.add_parser(name, help=help_text)
        action.add_argument("--account", type=int, required=True, help="Exchange account id")
        action.add_argument(
            "--hours",
            type=int,
            default=24,
            help="Look back this many hours (default: 24)",
        )
        action.add_argument(
            "--symbol",
            action="append",
            dest="symbols",
            help="Restrict to symbol (repeatable; default: symbols known to the ledger)",
        )

    actions.choices["import"].add_argument(
        "--map",
        action="append",
        default=[],
        metavar="ORDER_ID=POSITION_ID",
        help="Position to reduce with a missing SELL fill (repeatable)",
    )
    actions.choices["import"].add_argument(
        "--no-suggested",
        action="store_true",
        help="Do not link SELLs to the single sufficient candidate automatically",
    )

    fix = actions.add_parser("fix-orphans", help="Relink orphaned SELL executions")
    fix.add_argument(
        "--execution-id",
        type=int,
        action="append",
        dest="execution_ids",
        help="Orphan to fix (repeatable; default: all)",
    )
    fix.add_argument(
        "--alt",
        action="append",
        default=[],
        metavar="EXECUTION_ID=POSITION_ID",
        help="Alternative OPEN position for an orphan (repeatable)",
    )

    actions.add_parser("orphans", help="List orphaned SELL executions")

    audit = commands.add_parser("audit", help="Check ledger invariants")
    audit.add_argument("--account", type=int, help="Restrict to one exchange account")

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def _parse_pairs(values: List[str], flag: str, key_type: Callable[[str], Any] = str) -> Dict[Any, int]:
    pairs: Dict[Any, int] = {}
    for value in values:
        key, sep, position_id = value.partition("=")
        if not sep:
            raise ValueError(f"{flag} expects KEY=POSITION_ID, got {value!r}")
        pairs[key_type(key.strip())] = int(position_id)
    return pairs


def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []

    if args.command == "serve" and args.port is not None and not 0 < args.port < 65536:
        errors.append("--port must be between 1 and 65535")

    if args.command == "reconcile":
        if args.action in ("detect", "import") and args.hours < 1:
            errors.append("--hours must be at least 1")
        try:
            if args.action == "import":
                _parse_pairs(args.map, "--map")
            if args.action == "fix-orphans":
                _parse_pairs(args.alt, "--alt", int)
        except ValueError as e:
            errors.append(str(e))

    return errors


def build_settings(args: argparse.Namespace) -> EngineSettings:
    """Build settings from the environment plus CLI overrides."""
    return EngineSettings.from_env(
        dotenv_path=args.env_file,
        database_url=args.database_url,
        log_level=args.log_level,
        log_format=args.log_format,
        api_host=getattr(args, "host", None),
        api_port=getattr(args, "port", None),
    )


# ============================================================
# COMMANDS
# ============================================================

def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _one_shot(engine: TradingEngine, action: Callable[[], Awaitable[Any]]) -> Any:
    """Run one maintenance action against the database, without workers or scheduler."""
    await engine.init_db()
    try:
        return await action()
    finally:
        for adapter in set(engine.exchanges.values()):
            await adapter.disconnect()
        await engine.db.dispose()


async def _serve(engine: TradingEngine, with_scheduler: bool) -> None:
    import uvicorn

    from dashboard.main import create_app

    app = create_app(engine, start_engine=True, run_scheduler=with_scheduler)
    config = uvicorn.Config(
        app,
        host=engine.settings.api_host,
        port=engine.settings.api_port,
        log_config=None,
    )
    await uvicorn.Server(config).serve()


async def _reconcile(engine: TradingEngine, args: argparse.Namespace) -> Dict[str, Any]:
    service = engine.reconciliation

    if args.action in ("detect", "import"):
        end = engine.clock.now()
        start = end - timedelta(hours=args.hours)
        if args.action == "detect":
            report = await service.detect_missing_orders(args.account, start, end, symbols=args.symbols)
        else:
            report = await service.import_missing_orders(
                args.account,
                start,
                end,
                sell_position_map=_parse_pairs(args.map, "--map"),
                use_suggested=not args.no_suggested,
                symbols=args.symbols,
            )
        return report.to_dict()

    if args.action == "fix-orphans":
        report = await service.fix_orphaned_executions(
            execution_ids=args.execution_ids,
            manual_alternatives=_parse_pairs(args.alt, "--alt", int),
        )
        return report.to_dict()

    orphans = await service.detect_orphaned_executions()
    return {"orphaned": [o.to_dict() for o in orphans]}


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, settings: EngineSettings) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    engine = TradingEngine(settings)

    try:
        if args.command == "run":
            await engine.run_forever()
            return 0

        if args.command == "serve":
            await _serve(engine, with_scheduler=not args.no_scheduler)
            return 0

        if args.command == "init-db":
            await _one_shot(engine, engine.db.create_all)
            print(f"Schema ready at {settings.to_dict()['database_url']}")
            return 0

        if args.command == "reconcile":
            _print_json(await _one_shot(engine, lambda: _reconcile(engine, args)))
            return 0

        if args.command == "audit":
            report = await _one_shot(engine, lambda: engine.reconciliation.audit_positions(args.account))
            _print_json(report.to_dict())
            return 0 if report.ok else 2

        return 1

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130
    except TradingException as e:
        logging.error(f"{e.code}: {e.message}")
        return 1
    except Exception as e:
        logging.error(f"Fatal error: {e}", exc_info=True)
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    try:
        settings = build_settings(args)
    except TradingException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    setup_logging(level=settings.log_level, log_format=settings.log_format)

    if args.command in ("run", "serve"):
        print_banner(args, settings)

    return asyncio.run(async_main(args, settings))


def print_banner(args: argparse.Namespace, settings: EngineSettings) -> None:
    """Print startup banner."""
    print()
    print("=" * 60)
    print("  CRYPTO TRADING ENGINE")
    print("  Position Ledger / Risk Exits / Signal Confirmation")
    print("=" * 60)
    print(f"  Command:    {args.command}")
    print(f"  Database:   {settings.to_dict()['database_url']}")
    print(f"  Log Level:  {settings.log_level}")
    print(f"  Risk exit:  every {settings.risk_exit_interval_sec}s")
    print(f"  Signals:    every {settings.confirmation_interval_sec}s")
    print(f"  Reconcile:  every {settings.reconciliation_interval_sec}s")
    if args.command == "serve":
        print(f"  API:        http://{settings.api_host}:{settings.api_port}")
    print("=" * 60)
    print()


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
