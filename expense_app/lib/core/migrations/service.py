"""
Automatic migration service.

Orchestrates a startup migration run:

    IDLE -> INITIALIZING -> CHECKING_PENDING -> EXECUTING (1..N) -> COMPLETED

with FAILED reachable from every non-terminal state. For every pending
migration, in registry order: back up, execute in a transaction, record in
the ledger. The first failure stops the run; migrations committed before it
stay applied.
"""

import sqlite3
import time
from datetime import timezone
from pathlib import Path
from typing import List, Optional
import logging

from expense_app.lib.utils.time_utils import now_in
from .backup import BackupManager
from .base import MigrationDefinition
from .errors import (
    ChecksumMismatch,
    MigrationError,
    MigrationSystemError,
    log_migration_error,
)
from .executor import MigrationExecutor
from .guard import DEFAULT_LOCK_TIMEOUT, DEFAULT_STALE_SECONDS, MigrationGuard, is_migration_in_progress
from .ledger import MigrationLedger
from .models import (
    AppliedMigrationRecord,
    AutoMigrationResult,
    MigrationRun,
    MigrationState,
    MigrationStatusReport,
)
from .registry import MigrationRegistry
from .utils import get_database_path


class AutoMigrationService:
    """
    Applies pending migrations from a registry to a database.

    One service may be used for several runs; each call of
    run_startup_migrations() starts a fresh state machine.
    """

    def __init__(
        self,
        registry: MigrationRegistry,
        backup_manager: Optional[BackupManager] = None,
        backup_enabled: bool = True,
        ledger: Optional[MigrationLedger] = None,
        executor: Optional[MigrationExecutor] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_after: float = DEFAULT_STALE_SECONDS,
        tz: Optional[timezone] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            registry: Migrations known to this application
            backup_manager: Backup manager; defaults to a "backups" directory
                next to the database file
            backup_enabled: Set to False to skip pre-migration backups
            ledger: Ledger accessor
            executor: Single-migration executor
            lock_timeout: Busy timeout (seconds) when taking the run guard
            stale_after: Age (seconds) after which an in-progress flag is taken over
            tz: Fixed timezone for ledger timestamps
            logger: Optional logger instance
        """
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.backup_manager = backup_manager
        self.backup_enabled = backup_enabled
        self.ledger = ledger or MigrationLedger(self.logger)
        self.executor = executor or MigrationExecutor(tz=tz, logger=self.logger)
        self.lock_timeout = lock_timeout
        self.stale_after = stale_after
        self.tz = tz
        self._run: Optional[MigrationRun] = None

    @classmethod
    def from_settings(cls, registry: MigrationRegistry, settings, logger: Optional[logging.Logger] = None):
        """Build a service configured from application Settings."""
        tz = settings.ledger_timezone
        return cls(
            registry,
            backup_manager=BackupManager(
                settings.backup_dir,
                retention=settings.backup_retention,
                tz=tz,
                logger=logger,
            ),
            backup_enabled=settings.backup_enabled,
            executor=MigrationExecutor(timeout=settings.migration_timeout, tz=tz, logger=logger),
            lock_timeout=settings.lock_timeout,
            stale_after=settings.lock_stale_seconds,
            tz=tz,
            logger=logger,
        )

    # State of the latest run

    @property
    def state(self) -> MigrationState:
        return self._run.state if self._run else MigrationState.IDLE

    @property
    def current_index(self) -> int:
        return self._run.current_index if self._run else 0

    @property
    def total_pending(self) -> int:
        return self._run.total_pending if self._run else 0

    def _backups_for(self, conn: sqlite3.Connection) -> BackupManager:
        if self.backup_manager is None:
            db_path = get_database_path(conn)
            if db_path is None:
                raise MigrationSystemError(
                    "Cannot back up an in-memory database",
                    details="disable backups explicitly to migrate without a snapshot",
                )
            self.backup_manager = BackupManager(
                db_path.parent / "backups", tz=self.tz, logger=self.logger
            )
        return self.backup_manager

    def _prune_backups(self, conn: sqlite3.Connection, run_backups: List[Path]) -> None:
        """Apply backup retention to this database's snapshots only."""
        db_path = get_database_path(conn)
        try:
            self._backups_for(conn).cleanup_old_backups(
                protect=run_backups,
                db_stem=db_path.stem if db_path is not None else None,
            )
        except OSError as e:
            self.logger.warning(f"Backup retention skipped: {e}")

    def _verify_applied(self, applied: List[AppliedMigrationRecord]) -> None:
        for record in applied:
            definition = self.registry.find(record.name)
            if definition is not None and definition.checksum != record.checksum:
                raise ChecksumMismatch(record.name, record.checksum, definition.checksum)

    def run_startup_migrations(self, conn: sqlite3.Connection) -> AutoMigrationResult:
        """
        Apply all pending migrations.

        Args:
            conn: Connection owned by this run for its whole duration

        Returns:
            Summary of the run

        Raises:
            MigrationError: Any failure, with phase, migration_name and
                backup_path attached where known
        """
        run = MigrationRun()
        self._run = run
        start = time.perf_counter()

        current: Optional[MigrationDefinition] = None
        last_backup: Optional[Path] = None
        run_backups: List[Path] = []
        executions = []

        guard = MigrationGuard(
            conn,
            lock_timeout=self.lock_timeout,
            stale_after=self.stale_after,
            tz=self.tz,
            logger=self.logger,
        )

        try:
            run.transition(MigrationState.INITIALIZING)
            self.ledger.initialize(conn)
            guard.acquire()

            run.transition(MigrationState.CHECKING_PENDING)
            applied = self.ledger.get_applied(conn)
            self._verify_applied(applied)

            applied_names = {record.name for record in applied}
            pending = [d for d in self.registry.available() if d.name not in applied_names]
            run.total_pending = len(pending)

            if not pending:
                run.transition(MigrationState.COMPLETED)
                self.logger.info("Database schema is up to date, no migrations pending")
                return AutoMigrationResult(
                    success=True,
                    skipped=True,
                    total_execution_time_ms=int((time.perf_counter() - start) * 1000),
                    message="No pending migrations",
                )

            self.logger.info(
                f"{len(pending)} pending migration(s): {', '.join(d.name for d in pending)}"
            )
            if not self.backup_enabled:
                self.logger.warning("Database backups are disabled; migrating without a snapshot")

            for index, definition in enumerate(pending, start=1):
                current = definition
                run.current_index = index
                run.transition(MigrationState.EXECUTING)

                backup_path = None
                if self.backup_enabled:
                    backup_path = self._backups_for(conn).create_backup(conn, label=definition.name)
                    last_backup = backup_path
                    run_backups.append(backup_path)

                result = self.executor.execute(conn, definition)
                result.backup_path = backup_path

                self.ledger.record(conn, definition, now_in(self.tz), result.execution_time_ms)
                executions.append(result)

            run.transition(MigrationState.COMPLETED)

        except (MigrationError, sqlite3.Error) as e:
            phase = run.phase
            run.fail()
            if isinstance(e, sqlite3.Error):
                error = MigrationSystemError("Database error during migration run", details=str(e))
            else:
                error = e
            error.phase = error.phase or phase
            if current is not None and not error.migration_name:
                error.migration_name = current.name
            if error.backup_path is None:
                error.backup_path = last_backup
            log_migration_error(error, self.logger)
            if error is e:
                raise
            raise error from e
        except Exception:
            run.fail()
            raise
        finally:
            guard.release()

        if self.backup_enabled and run_backups:
            self._prune_backups(conn, run_backups)

        applied_now = [r.name for r in executions]
        total_ms = int((time.perf_counter() - start) * 1000)
        self.logger.info(f"Applied {len(applied_now)} migration(s) in {total_ms}ms")

        return AutoMigrationResult(
            success=True,
            applied_migrations=applied_now,
            backup_path=last_backup,
            total_execution_time_ms=total_ms,
            executions=executions,
            message=f"Applied {len(applied_now)} migration(s)",
        )

    def check_migration_status(self, conn: sqlite3.Connection) -> MigrationStatusReport:
        """
        Compare the ledger with the registry without changing anything.

        Creates no tables and does not take the run guard.
        """
        applied = self.get_migration_history(conn)
        applied_names = {record.name for record in applied}

        pending = [name for name in self.registry.names() if name not in applied_names]
        mismatches = []
        unknown = []
        for record in applied:
            definition = self.registry.find(record.name)
            if definition is None:
                unknown.append(record.name)
            elif definition.checksum != record.checksum:
                mismatches.append(record.name)

        return MigrationStatusReport(
            total_available=len(self.registry),
            total_applied=len(applied),
            pending_migrations=pending,
            applied_migrations=applied,
            last_migration_date=applied[-1].applied_at if applied else None,
            integrity_ok=not mismatches,
            checksum_mismatches=mismatches,
            unknown_applied=unknown,
            migration_in_progress=is_migration_in_progress(conn),
        )

    def get_migration_history(self, conn: sqlite3.Connection) -> List[AppliedMigrationRecord]:
        """Applied migrations, oldest first. Empty if the ledger does not exist."""
        if not self.ledger.exists(conn):
            return []
        return self.ledger.get_applied(conn)
