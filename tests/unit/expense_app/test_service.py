"""
Unit tests for the automatic migration service.

Covers pending-set computation, exactly-once recording, atomic failure,
checksum verification, the run state machine, read-only status reporting
and mutual exclusion between concurrent runs.

@testCovers expense_app/lib/core/migrations/service.py
@testCovers expense_app/lib/core/migrations/models.py
"""

import unittest
import sqlite3
import tempfile
import shutil
import logging
import threading
from unittest import mock
from pathlib import Path

from expense_app.lib.core.migrations import (
    AutoMigrationService,
    BackupManager,
    ChecksumMismatch,
    ConcurrencyError,
    ExecutionError,
    MigrationDefinition,
    MigrationLedger,
    MigrationRegistry,
    MigrationState,
    MigrationSystemError,
)
from expense_app.lib.core.migrations.guard import is_migration_in_progress
from expense_app.lib.core.migrations.models import MigrationRun
from expense_app.lib.core.migrations.utils import table_exists
from expense_app.lib.core.migrations.versions import (
    Migration001CreateBasicSchema,
    Migration002AddUserAuthentication,
    Migration003MigrateReceiptUrl,
)
from expense_app.lib.sqlite_utils import open_connection, reset_initialized_databases


def create_a(conn):
    conn.execute("CREATE TABLE a (id INTEGER PRIMARY KEY)")


def create_b(conn):
    conn.execute("CREATE TABLE b (id INTEGER PRIMARY KEY)")


def create_c(conn):
    conn.execute("CREATE TABLE c (id INTEGER PRIMARY KEY)")


def create_d(conn):
    conn.execute("CREATE TABLE d (id INTEGER PRIMARY KEY)")


def create_c_then_fail(conn):
    conn.execute("CREATE TABLE c (id INTEGER PRIMARY KEY)")
    raise RuntimeError("disk full while copying rows")


def create_a_differently(conn):
    conn.execute("CREATE TABLE a (id INTEGER PRIMARY KEY, extra TEXT)")


class FailingUserAuthentication(Migration002AddUserAuthentication):
    """Migration 002 that fails after it has already changed the schema."""

    def upgrade(self, conn: sqlite3.Connection) -> None:
        super().upgrade(conn)
        raise RuntimeError("simulated failure in 002")


def synthetic(*pairs) -> MigrationRegistry:
    return MigrationRegistry(MigrationDefinition.create(name, fn) for name, fn in pairs)


class ServiceTestCase(unittest.TestCase):
    """Shared fixture: a file database with a backup directory."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.db_path = self.temp_dir / "expenses.db"
        self.backup_dir = self.temp_dir / "backups"
        self.conn = open_connection(self.db_path)
        self.logger = logging.getLogger("test_service")
        self.ledger = MigrationLedger(self.logger)

    def tearDown(self):
        self.conn.close()
        reset_initialized_databases()
        shutil.rmtree(self.temp_dir)

    def make_service(self, registry, **kwargs) -> AutoMigrationService:
        kwargs.setdefault("backup_manager", BackupManager(self.backup_dir, logger=self.logger))
        kwargs.setdefault("lock_timeout", 0.5)
        return AutoMigrationService(registry, logger=self.logger, **kwargs)

    def ledger_names(self, conn=None):
        return [record.name for record in self.ledger.get_applied(conn or self.conn)]


class TestAutoMigrationService(ServiceTestCase):

    def test_fresh_database_applies_everything(self):
        registry = synthetic(("001_a", create_a), ("002_b", create_b), ("003_c", create_c))
        service = self.make_service(registry)

        result = service.run_startup_migrations(self.conn)

        self.assertTrue(result.success)
        self.assertFalse(result.skipped)
        self.assertEqual(result.applied_migrations, ["001_a", "002_b", "003_c"])
        self.assertEqual(self.ledger_names(), ["001_a", "002_b", "003_c"])
        for table in ("a", "b", "c"):
            self.assertTrue(table_exists(self.conn, table))
        self.assertEqual(len(result.executions), 3)
        self.assertTrue(all(e.backup_path and e.backup_path.exists() for e in result.executions))
        self.assertEqual(result.backup_path, result.executions[-1].backup_path)
        self.assertFalse(is_migration_in_progress(self.conn))

    def test_pending_is_registry_minus_applied(self):
        """Pending keeps registry order and skips whatever the ledger already has."""
        pairs = [("001_a", create_a), ("002_b", create_b), ("003_c", create_c), ("004_d", create_d)]
        registry = synthetic(*pairs)
        self.ledger.initialize(self.conn)
        for name in ("001_a", "003_c"):
            self.ledger.record(self.conn, registry.find(name), "2025-01-01T00:00:00+09:00", 0)

        result = self.make_service(registry).run_startup_migrations(self.conn)

        self.assertEqual(result.applied_migrations, ["002_b", "004_d"])
        # Recorded migrations were not executed again
        self.assertFalse(table_exists(self.conn, "a"))
        self.assertFalse(table_exists(self.conn, "c"))
        self.assertEqual(sorted(self.ledger_names()), ["001_a", "002_b", "003_c", "004_d"])

    def test_second_run_is_skipped(self):
        registry = synthetic(("001_a", create_a))
        service = self.make_service(registry)
        service.run_startup_migrations(self.conn)
        backups_before = sorted(self.backup_dir.iterdir())

        result = service.run_startup_migrations(self.conn)

        self.assertTrue(result.skipped)
        self.assertEqual(result.applied_migrations, [])
        self.assertEqual(result.message, "No pending migrations")
        self.assertEqual(service.state, MigrationState.COMPLETED)
        self.assertEqual(sorted(self.backup_dir.iterdir()), backups_before)
        self.assertEqual(self.ledger_names(), ["001_a"])

    def test_each_migration_recorded_exactly_once(self):
        registry = synthetic(("001_a", create_a), ("002_b", create_b))
        service = self.make_service(registry)
        for _ in range(3):
            service.run_startup_migrations(self.conn)

        rows = self.conn.execute(
            "SELECT name, COUNT(*) FROM migrations GROUP BY name ORDER BY name"
        ).fetchall()
        self.assertEqual([tuple(row) for row in rows], [("001_a", 1), ("002_b", 1)])

    def test_failure_keeps_earlier_migrations(self):
        """Migration k fails: 1..k-1 stay applied, k and later are absent."""
        registry = synthetic(
            ("001_a", create_a),
            ("002_b", create_b),
            ("003_c", create_c_then_fail),
            ("004_d", create_d),
        )
        service = self.make_service(registry)

        with self.assertRaises(ExecutionError) as ctx:
            service.run_startup_migrations(self.conn)

        error = ctx.exception
        self.assertEqual(error.migration_name, "003_c")
        self.assertEqual(error.phase, "executing(3/4)")
        self.assertIsNotNone(error.backup_path)
        self.assertTrue(error.backup_path.exists())
        self.assertIn("003_c", error.backup_path.name)

        self.assertEqual(self.ledger_names(), ["001_a", "002_b"])
        self.assertTrue(table_exists(self.conn, "b"))
        self.assertFalse(table_exists(self.conn, "c"))
        self.assertFalse(table_exists(self.conn, "d"))

        self.assertEqual(service.state, MigrationState.FAILED)
        self.assertFalse(is_migration_in_progress(self.conn))
        self.assertFalse(self.conn.in_transaction)

    def test_rerun_after_fix_continues_where_it_stopped(self):
        failing = synthetic(("001_a", create_a), ("002_b", create_c_then_fail))
        with self.assertRaises(ExecutionError):
            self.make_service(failing).run_startup_migrations(self.conn)

        fixed = synthetic(("001_a", create_a), ("002_b", create_b))
        result = self.make_service(fixed).run_startup_migrations(self.conn)

        self.assertEqual(result.applied_migrations, ["002_b"])
        self.assertEqual(self.ledger_names(), ["001_a", "002_b"])

    def test_changed_applied_migration_stops_run(self):
        """A stored checksum that differs from the registry aborts before executing anything."""
        self.make_service(synthetic(("001_a", create_a))).run_startup_migrations(self.conn)
        stored = self.ledger.get(self.conn, "001_a").checksum

        changed = synthetic(("001_a", create_a_differently), ("002_b", create_b))
        service = self.make_service(changed)
        with self.assertRaises(ChecksumMismatch) as ctx:
            service.run_startup_migrations(self.conn)

        self.assertEqual(ctx.exception.migration_name, "001_a")
        self.assertEqual(ctx.exception.expected, stored)
        self.assertEqual(ctx.exception.actual, changed.find("001_a").checksum)
        self.assertEqual(ctx.exception.phase, "checking_pending")
        self.assertFalse(table_exists(self.conn, "b"))
        self.assertEqual(self.ledger_names(), ["001_a"])
        self.assertFalse(is_migration_in_progress(self.conn))

    def test_unknown_ledger_entries_are_tolerated(self):
        """Migrations recorded by a newer release do not block an older one."""
        self.ledger.initialize(self.conn)
        self.ledger.record(
            self.conn,
            MigrationDefinition.create("099_future", create_d),
            "2025-01-01T00:00:00+09:00",
            0,
        )

        result = self.make_service(synthetic(("001_a", create_a))).run_startup_migrations(self.conn)

        self.assertEqual(result.applied_migrations, ["001_a"])

    def test_backups_disabled(self):
        service = self.make_service(synthetic(("001_a", create_a)), backup_enabled=False)

        with self.assertLogs("test_service", level="WARNING") as logs:
            result = service.run_startup_migrations(self.conn)

        self.assertIsNone(result.backup_path)
        self.assertFalse(self.backup_dir.exists())
        self.assertTrue(any("backups are disabled" in line for line in logs.output))

    def test_backup_failure_prevents_migration(self):
        blocker = self.temp_dir / "blocker"
        blocker.write_text("not a directory")
        service = self.make_service(
            synthetic(("001_a", create_a)),
            backup_manager=BackupManager(blocker / "backups", logger=self.logger),
        )

        with self.assertRaises(MigrationSystemError) as ctx:
            service.run_startup_migrations(self.conn)

        self.assertEqual(ctx.exception.migration_name, "001_a")
        self.assertFalse(table_exists(self.conn, "a"))
        self.assertEqual(self.ledger_names(), [])

    def test_default_backup_location_next_to_database(self):
        service = AutoMigrationService(synthetic(("001_a", create_a)), logger=self.logger)

        result = service.run_startup_migrations(self.conn)

        self.assertEqual(
            result.backup_path.parent.resolve(), (self.db_path.parent / "backups").resolve()
        )

    def test_retention_only_prunes_backups_of_migrated_database(self):
        backups = BackupManager(self.backup_dir, retention=1, logger=self.logger)
        self.make_service(
            synthetic(("001_a", create_a)), backup_manager=backups
        ).run_startup_migrations(self.conn)
        (prod_backup,) = backups.list_backups("expenses")

        dev_conn = open_connection(self.temp_dir / "dev_expenses.db")
        try:
            self.make_service(
                synthetic(("001_a", create_a)), backup_manager=backups
            ).run_startup_migrations(dev_conn)
            (first_dev_backup,) = backups.list_backups("dev_expenses")

            result = self.make_service(
                synthetic(("001_a", create_a), ("002_b", create_b)), backup_manager=backups
            ).run_startup_migrations(dev_conn)
        finally:
            dev_conn.close()

        self.assertTrue(prod_backup.exists())
        self.assertFalse(first_dev_backup.exists())
        self.assertEqual(backups.list_backups("dev_expenses"), [result.backup_path])

    def test_retention_failure_does_not_fail_run(self):
        service = self.make_service(synthetic(("001_a", create_a)))

        with mock.patch.object(
            BackupManager, "list_backups", side_effect=OSError("permission denied")
        ):
            with self.assertLogs("test_service", level="WARNING") as logs:
                result = service.run_startup_migrations(self.conn)

        self.assertTrue(result.success)
        self.assertEqual(self.ledger_names(), ["001_a"])
        self.assertTrue(any("Backup retention skipped" in line for line in logs.output))

    def test_in_memory_database(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        try:
            service = AutoMigrationService(synthetic(("001_a", create_a)), logger=self.logger)
            with self.assertRaises(MigrationSystemError):
                service.run_startup_migrations(conn)
            self.assertFalse(table_exists(conn, "a"))

            service = AutoMigrationService(
                synthetic(("001_a", create_a)), backup_enabled=False, logger=self.logger
            )
            result = service.run_startup_migrations(conn)
            self.assertEqual(result.applied_migrations, ["001_a"])
        finally:
            conn.close()

    def test_state_progression(self):
        service = self.make_service(synthetic(("001_a", create_a), ("002_b", create_b)))
        self.assertEqual(service.state, MigrationState.IDLE)

        service.run_startup_migrations(self.conn)

        self.assertEqual(service.state, MigrationState.COMPLETED)
        self.assertEqual(service.current_index, 2)
        self.assertEqual(service.total_pending, 2)
        self.assertEqual(service._run.history, [
            MigrationState.IDLE,
            MigrationState.INITIALIZING,
            MigrationState.CHECKING_PENDING,
            MigrationState.EXECUTING,
            MigrationState.EXECUTING,
            MigrationState.COMPLETED,
        ])


class TestMigrationRun(unittest.TestCase):
    """State machine of a single run."""

    def test_terminal_states(self):
        run = MigrationRun()
        run.transition(MigrationState.INITIALIZING)
        run.transition(MigrationState.CHECKING_PENDING)
        run.transition(MigrationState.COMPLETED)

        self.assertTrue(run.is_terminal)
        with self.assertRaises(RuntimeError):
            run.transition(MigrationState.EXECUTING)
        # fail() on a terminal run leaves it unchanged
        run.fail()
        self.assertEqual(run.state, MigrationState.COMPLETED)

    def test_invalid_transition(self):
        run = MigrationRun()
        with self.assertRaises(RuntimeError):
            run.transition(MigrationState.EXECUTING)

    def test_failed_from_any_non_terminal_state(self):
        for path in (
            [],
            [MigrationState.INITIALIZING],
            [MigrationState.INITIALIZING, MigrationState.CHECKING_PENDING],
            [MigrationState.INITIALIZING, MigrationState.CHECKING_PENDING, MigrationState.EXECUTING],
        ):
            run = MigrationRun()
            for state in path:
                run.transition(state)
            run.fail()
            self.assertEqual(run.state, MigrationState.FAILED)

    def test_phase_names_current_migration(self):
        run = MigrationRun()
        run.transition(MigrationState.INITIALIZING)
        run.transition(MigrationState.CHECKING_PENDING)
        run.total_pending = 3
        run.current_index = 2
        run.transition(MigrationState.EXECUTING)
        self.assertEqual(run.phase, "executing(2/3)")


class TestExampleScenarios(ServiceTestCase):
    """The built-in migrations 001-003 applied in two steps and with a failure."""

    def builtin_registry(self, migration_002=Migration002AddUserAuthentication):
        registry = MigrationRegistry(logger=self.logger)
        registry.register_migrations([
            Migration001CreateBasicSchema(self.logger),
            migration_002(self.logger),
            Migration003MigrateReceiptUrl(self.logger),
        ])
        return registry

    def test_apply_remaining_after_001(self):
        first = MigrationRegistry(logger=self.logger)
        first.register_migration(Migration001CreateBasicSchema(self.logger))
        self.make_service(first).run_startup_migrations(self.conn)
        self.assertEqual(self.ledger_names(), ["001_create_basic_schema"])

        registry = self.builtin_registry()
        pending = [
            name for name in registry.names()
            if not self.ledger.is_applied(self.conn, name)
        ]
        self.assertEqual(pending, ["002_add_user_authentication", "003_migrate_receipt_url"])

        result = self.make_service(registry).run_startup_migrations(self.conn)

        self.assertEqual(
            result.applied_migrations,
            ["002_add_user_authentication", "003_migrate_receipt_url"]
        )
        records = self.ledger.get_applied(self.conn)
        self.assertEqual(
            [r.name for r in records],
            ["001_create_basic_schema", "002_add_user_authentication", "003_migrate_receipt_url"]
        )
        for record in records:
            self.assertIsNotNone(record.applied_at)
            self.assertIsNotNone(record.execution_time_ms)
            self.assertTrue(record.applied_at.endswith("+09:00"))

    def test_failing_002_leaves_only_001(self):
        registry = self.builtin_registry(FailingUserAuthentication)

        with self.assertRaises(ExecutionError) as ctx:
            self.make_service(registry).run_startup_migrations(self.conn)

        error = ctx.exception
        self.assertEqual(error.migration_name, "002_add_user_authentication")
        self.assertEqual(self.ledger_names(), ["001_create_basic_schema"])
        self.assertIsNotNone(error.backup_path)
        self.assertTrue(Path(error.backup_path).exists())
        self.assertIn("002_add_user_authentication", Path(error.backup_path).name)

        # Everything 002 did before failing was rolled back
        self.assertFalse(table_exists(self.conn, "users"))
        self.assertFalse(table_exists(self.conn, "sessions"))
        self.assertNotIn(
            "user_id",
            [row[1] for row in self.conn.execute("PRAGMA table_info(expenses)")]
        )


class TestMigrationStatus(ServiceTestCase):
    """Read-only status reporting."""

    def test_status_on_fresh_database_changes_nothing(self):
        service = self.make_service(synthetic(("001_a", create_a), ("002_b", create_b)))

        report = service.check_migration_status(self.conn)

        self.assertEqual(report.total_available, 2)
        self.assertEqual(report.total_applied, 0)
        self.assertEqual(report.pending_migrations, ["001_a", "002_b"])
        self.assertFalse(report.up_to_date)
        self.assertIsNone(report.last_migration_date)
        self.assertTrue(report.integrity_ok)
        self.assertFalse(report.migration_in_progress)
        self.assertEqual(
            self.conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()[0], 0
        )
        self.assertEqual(service.get_migration_history(self.conn), [])

    def test_status_after_run(self):
        service = self.make_service(synthetic(("001_a", create_a), ("002_b", create_b)))
        service.run_startup_migrations(self.conn)

        report = service.check_migration_status(self.conn)

        self.assertTrue(report.up_to_date)
        self.assertEqual(report.total_applied, 2)
        self.assertEqual(report.last_migration_date, report.applied_migrations[-1].applied_at)
        self.assertTrue(report.integrity_ok)
        self.assertEqual(report.model_dump()["up_to_date"], True)

    def test_status_reports_mismatch_and_unknown(self):
        self.make_service(synthetic(("001_a", create_a), ("002_b", create_b))).run_startup_migrations(self.conn)

        service = self.make_service(synthetic(("001_a", create_a_differently), ("003_c", create_c)))
        report = service.check_migration_status(self.conn)

        self.assertFalse(report.integrity_ok)
        self.assertEqual(report.checksum_mismatches, ["001_a"])
        self.assertEqual(report.unknown_applied, ["002_b"])
        self.assertEqual(report.pending_migrations, ["003_c"])


class TestConcurrentRuns(ServiceTestCase):
    """Two runs against the same database."""

    def test_only_one_run_migrates(self):
        started = threading.Event()
        proceed = threading.Event()

        def wait_then_create(conn):
            started.set()
            proceed.wait(10)
            conn.execute("CREATE TABLE slow (id INTEGER PRIMARY KEY)")

        registry = synthetic(("001_slow", wait_then_create))
        outcome = {}

        def first_run():
            try:
                outcome["result"] = self.make_service(
                    registry, backup_enabled=False
                ).run_startup_migrations(self.conn)
            except Exception as e:
                outcome["error"] = e

        thread = threading.Thread(target=first_run)
        thread.start()
        try:
            self.assertTrue(started.wait(10))

            other = open_connection(self.db_path)
            other.execute("PRAGMA busy_timeout = 500")
            try:
                with self.assertRaises(ConcurrencyError):
                    self.make_service(registry, backup_enabled=False).run_startup_migrations(other)
            finally:
                other.close()
        finally:
            proceed.set()
            thread.join(10)

        self.assertNotIn("error", outcome)
        self.assertEqual(outcome["result"].applied_migrations, ["001_slow"])
        self.assertEqual(self.ledger_names(), ["001_slow"])
        self.assertFalse(is_migration_in_progress(self.conn))


if __name__ == '__main__':
    unittest.main()
