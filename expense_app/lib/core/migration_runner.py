"""
Startup entry point for database migrations.

Called exactly once by the application lifespan after the database
connection has been opened, before any request is served.

Usage:
    from expense_app.lib.core.migration_runner import run_migrations_on_startup
    from expense_app.lib.core.migrations.versions import build_default_registry

    run_migrations_on_startup(conn, build_default_registry(logger), settings, logger)
"""

import sqlite3
import time
from typing import Optional
import logging

from expense_app.lib.core.migrations import (
    AutoMigrationResult,
    AutoMigrationService,
    ConcurrencyError,
    MigrationError,
    MigrationRegistry,
)


def describe_failure(error: MigrationError) -> str:
    """One-line operator message naming the migration, error kind and backup."""
    return (
        f"Database migration failed: {error.message} "
        f"(migration: {error.migration_name or '-'}, kind: {error.error_type.value}, "
        f"phase: {error.phase or '-'}, backup: {error.backup_path or 'none'})"
    )


def run_migrations_on_startup(
    conn: sqlite3.Connection,
    registry: MigrationRegistry,
    settings=None,
    logger: Optional[logging.Logger] = None,
) -> AutoMigrationResult:
    """
    Apply pending migrations, honouring the configured concurrency policy.

    With CONCURRENCY_POLICY=retry, a ConcurrencyError is retried up to
    CONCURRENCY_MAX_RETRIES times with exponentially growing delay. Every
    other error, and a ConcurrencyError under the abort policy, is logged
    and re-raised so the application does not start.

    Args:
        conn: Open database connection, not inside a transaction
        registry: Application migrations
        settings: Settings instance (defaults to get_settings())
        logger: Optional logger instance

    Returns:
        Result of the successful run

    Raises:
        MigrationError: If the database could not be migrated
    """
    if settings is None:
        from expense_app.config import get_settings
        settings = get_settings()
    logger = logger or logging.getLogger(__name__)

    service = AutoMigrationService.from_settings(registry, settings, logger)

    retries = settings.concurrency_max_retries if settings.concurrency_policy == "retry" else 0
    delay = settings.concurrency_retry_delay

    attempt = 0
    while True:
        try:
            result = service.run_startup_migrations(conn)
            break
        except ConcurrencyError as e:
            if attempt >= retries:
                logger.critical(describe_failure(e))
                raise
            attempt += 1
            logger.warning(
                f"Another process is migrating the database "
                f"(retry {attempt}/{retries} in {delay:.1f}s)"
            )
            time.sleep(delay)
            delay *= 2
        except MigrationError as e:
            logger.critical(describe_failure(e))
            raise

    if result.skipped:
        logger.info("Database schema is up to date")
    else:
        logger.info(
            f"Applied {len(result.applied_migrations)} migration(s) "
            f"in {result.total_execution_time_ms}ms"
        )
        if result.backup_path:
            logger.info(f"Backup saved at: {result.backup_path}")
    return result
