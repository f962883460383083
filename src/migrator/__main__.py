"""Migrator - Entry Point

Usage:
    python -m migrator [--config PATH] [--database PATH] [--log-level LEVEL] [--log-file PATH] [COMMAND]

Commands:
    run     - Apply pending migration steps (default)
    status  - Show the tracking record
    unlock  - Clear a running flag left by a crashed run
    version - Show version

Examples:
    python -m migrator --database data/app.db
    python -m migrator --config migrator.toml run
    python -m migrator --database data/app.db --scripts ./dbmigration status
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from migrator import __version__
from migrator.core.config import ConfigManager
from migrator.core.errors import MigratorError
from migrator.core.logging import get_logger, setup_logging_from_config
from migrator.services.database import Database
from migrator.services.orchestrator import DbMigration


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="migrator",
        description="Apply numbered database migration steps exactly once",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Migrator {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--database",
        default=None,
        help="Path to the SQLite database (overrides database.path)",
    )

    parser.add_argument(
        "--scripts",
        default=None,
        help="Migration step directory (overrides migrator.script_path)",
    )

    parser.add_argument(
        "--table",
        default=None,
        help="Tracking table name (overrides migrator.table_name)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to this file (overrides logging.file)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.add_parser("run", help="Apply pending migration steps")
    subparsers.add_parser("status", help="Show the tracking record")
    subparsers.add_parser("unlock", help="Clear a stale running flag")
    subparsers.add_parser("version", help="Show version")

    return parser.parse_args(argv)


def find_config_file(specified: Optional[Path]) -> Optional[Path]:
    """Find configuration file."""
    if specified and specified.exists():
        return specified

    search_paths = [
        Path("migrator.toml"),
        Path("config/migrator.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


async def run_command(args: argparse.Namespace) -> int:
    """Run a database command."""
    config_path = find_config_file(args.config)
    config = ConfigManager(config_path) if config_path else ConfigManager()

    setup_logging_from_config(config, level=args.log_level, log_file=args.log_file)
    log = get_logger("cli")

    db_path = args.database or config.get_str("database.path", "")
    if not db_path:
        log.error("no_database_configured")
        return 1

    db = Database(db_path)
    await db.connect()
    try:
        # Command-line flags win over the config file
        if args.scripts:
            config.set("migrator.script_path", args.scripts)
        if args.table:
            config.set("migrator.table_name", args.table)
        migration = DbMigration.from_config(db, config)

        if args.command == "status":
            record = await migration.status()
            print(f"Table:   {migration.table_name}")
            print(f"Version: {record.version}")
            print(f"Running: {'yes' if record.running else 'no'}")
            return 0

        if args.command == "unlock":
            await migration.unlock()
            print(f"Cleared running flag on {migration.table_name}")
            return 0

        result = await migration.run()
        print(f"Database version {result.start_version} -> {result.end_version}")
        return 0
    except MigratorError as e:
        log.error("migration_failed", error=str(e), error_type=type(e).__name__)
        return 1
    finally:
        await db.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Migrator {__version__}")
        return 0

    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
