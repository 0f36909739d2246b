#!/usr/bin/env python3
"""
Inspect and apply database migrations manually.

The application applies pending migrations on startup; this script lets an
operator check the state first or run them without starting the server.

Usage:
    python bin/migrate.py status [--db-path PATH] [--json]
    python bin/migrate.py history [--db-path PATH] [--json]
    python bin/migrate.py run [--db-path PATH]
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path to import expense_app
sys.path.insert(0, str(Path(__file__).parent.parent))

from expense_app.config import get_settings
from expense_app.lib.core.migration_runner import describe_failure, run_migrations_on_startup
from expense_app.lib.core.migrations import AutoMigrationService, MigrationError
from expense_app.lib.core.migrations.versions import build_default_registry
from expense_app.lib.logging_utils import get_logger, setup_logging
from expense_app.lib.sqlite_utils import get_connection

logger = get_logger("expense_app.bin.migrate")


def cmd_status(service: AutoMigrationService, conn, args) -> int:
    report = service.check_migration_status(conn)
    if args.json:
        print(report.model_dump_json(indent=2))
        return 0 if report.integrity_ok else 1

    applied = {record.name: record for record in report.applied_migrations}
    print(f"Migrations: {report.total_applied} applied, "
          f"{len(report.pending_migrations)} pending, {report.total_available} known")
    for definition in service.registry.available():
        record = applied.get(definition.name)
        if record is None:
            print(f"  ⧗ Pending  {definition.name}: {definition.description}")
        elif definition.name in report.checksum_mismatches:
            print(f"  ✗ Changed  {definition.name} (applied {record.applied_at}, checksum differs)")
        else:
            print(f"  ✓ Applied  {definition.name} ({record.applied_at})")
    for name in report.unknown_applied:
        print(f"  ? Unknown  {name} (recorded but not part of this release)")
    if report.migration_in_progress:
        print("A migration run is currently in progress")
    if not report.integrity_ok:
        print("Integrity check failed: applied migrations were modified", file=sys.stderr)
        return 1
    return 0


def cmd_history(service: AutoMigrationService, conn, args) -> int:
    history = service.get_migration_history(conn)
    if args.json:
        print(json.dumps([record.model_dump() for record in history], indent=2, ensure_ascii=False))
        return 0
    if not history:
        print("No migrations have been applied")
        return 0
    for record in history:
        duration = f"{record.execution_time_ms}ms" if record.execution_time_ms is not None else "-"
        print(f"{record.applied_at}  {record.name}  v{record.version}  {duration}")
    return 0


def cmd_run(service: AutoMigrationService, conn, args) -> int:
    try:
        result = run_migrations_on_startup(conn, service.registry, args.settings, logger)
    except MigrationError as e:
        print(describe_failure(e), file=sys.stderr)
        return 1

    if result.skipped:
        print("Database is up to date")
    else:
        print(f"Applied {len(result.applied_migrations)} migration(s): "
              f"{', '.join(result.applied_migrations)}")
        if result.backup_path:
            print(f"Backup: {result.backup_path}")
    return 0


COMMANDS = {
    "status": cmd_status,
    "history": cmd_history,
    "run": cmd_run,
}


def main(argv=None) -> int:
    """Run the migration CLI."""
    parser = argparse.ArgumentParser(description='Inspect and apply database migrations')
    parser.add_argument(
        'command',
        choices=sorted(COMMANDS),
        help='status: compare ledger and known migrations, history: list applied, run: apply pending'
    )
    parser.add_argument(
        '--db-path',
        type=Path,
        default=None,
        help='Path to database file (default: from settings)'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print machine-readable output (status, history)'
    )
    parser.add_argument(
        '--log-level',
        default=None,
        help='Log level (default: from settings)'
    )

    args = parser.parse_args(argv)

    settings = get_settings()
    args.settings = settings
    setup_logging(args.log_level or settings.log_level, settings.log_categories)

    db_path = args.db_path or settings.db_path
    if args.command != "run" and not db_path.exists():
        print(f"Database not found: {db_path}", file=sys.stderr)
        return 1

    registry = build_default_registry(logger)
    service = AutoMigrationService.from_settings(registry, settings, logger)

    with get_connection(db_path) as conn:
        return COMMANDS[args.command](service, conn, args)


if __name__ == '__main__':
    sys.exit(main())
