"""
Migration ledger.

The `migrations` table is the durable, append-only record of which
migrations have been applied. Exactly one row exists per migration name.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional
import logging

from expense_app.lib.sqlite_utils import is_lock_error, transaction
from expense_app.lib.utils.time_utils import parse_iso
from .base import MigrationDefinition
from .errors import ConcurrencyError, InitializationError, MigrationValidationError
from .guard import ensure_lock_table
from .models import AppliedMigrationRecord
from .utils import get_table_columns, table_exists

LEDGER_TABLE = "migrations"

LEDGER_COLUMNS = (
    "id",
    "name",
    "version",
    "description",
    "checksum",
    "applied_at",
    "execution_time_ms",
    "created_at",
)

CREATE_LEDGER_SQL = f"""
    CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        version TEXT NOT NULL,
        description TEXT,
        checksum TEXT NOT NULL,
        applied_at TEXT NOT NULL,
        execution_time_ms INTEGER,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
"""

CREATE_LEDGER_INDEXES_SQL = (
    f"CREATE INDEX IF NOT EXISTS idx_migrations_name ON {LEDGER_TABLE}(name)",
    f"CREATE INDEX IF NOT EXISTS idx_migrations_applied_at ON {LEDGER_TABLE}(applied_at)",
    f"CREATE INDEX IF NOT EXISTS idx_migrations_version ON {LEDGER_TABLE}(version)",
)

_SELECT_COLUMNS = ", ".join(LEDGER_COLUMNS)


def _applied_instant(record: AppliedMigrationRecord) -> float:
    parsed = parse_iso(record.applied_at)
    # Naive timestamps are read as local time; unparseable ones sort last
    return parsed.timestamp() if parsed is not None else float("inf")


class MigrationLedger:
    """
    Reads and writes the migrations ledger.

    The ledger never updates or deletes rows during normal operation;
    reset() exists for test harnesses only.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def initialize(self, conn: sqlite3.Connection) -> None:
        """
        Create the ledger table and its indexes if absent.

        Idempotent: against an existing, correctly shaped table this is a
        no-op and never touches existing rows.

        Args:
            conn: SQLite connection, not inside a transaction

        Raises:
            InitializationError: If the table cannot be created, or exists
                with a different shape
            ConcurrencyError: If another connection holds the write lock
        """
        if conn.in_transaction:
            raise InitializationError(
                "Connection is already inside a transaction; "
                "the migration run must own the connection"
            )

        try:
            with transaction(conn, "IMMEDIATE"):
                existed = table_exists(conn, LEDGER_TABLE)
                conn.execute(CREATE_LEDGER_SQL)
                for statement in CREATE_LEDGER_INDEXES_SQL:
                    conn.execute(statement)
                self._verify_shape(conn)
                ensure_lock_table(conn)
        except InitializationError:
            raise
        except sqlite3.Error as e:
            if is_lock_error(e):
                raise ConcurrencyError(
                    "Database is locked by another migration run",
                    details=str(e),
                ) from e
            raise InitializationError(
                f"Failed to initialize {LEDGER_TABLE} table",
                details=str(e),
            ) from e

        if existed:
            self.logger.debug(f"Ledger table '{LEDGER_TABLE}' already present")
        else:
            self.logger.info(f"Created ledger table '{LEDGER_TABLE}'")

    def _verify_shape(self, conn: sqlite3.Connection) -> None:
        columns = set(get_table_columns(conn, LEDGER_TABLE))
        missing = [c for c in LEDGER_COLUMNS if c not in columns]
        if missing:
            raise InitializationError(
                f"Existing {LEDGER_TABLE} table has an unexpected layout",
                details=f"missing columns: {', '.join(missing)}",
            )

    def exists(self, conn: sqlite3.Connection) -> bool:
        """Check whether the ledger table exists (read-only)."""
        return table_exists(conn, LEDGER_TABLE)

    def get_applied(self, conn: sqlite3.Connection) -> List[AppliedMigrationRecord]:
        """
        Get all applied migrations.

        Returns:
            Records ordered by the instant in applied_at, ascending. Timestamps
            are compared as points in time, so records written under different
            UTC offsets still sort chronologically. Ties keep insertion order.
        """
        cursor = conn.execute(f"""
            SELECT {_SELECT_COLUMNS}
            FROM {LEDGER_TABLE}
            ORDER BY id ASC
        """)
        records = [AppliedMigrationRecord.from_row(row) for row in cursor.fetchall()]
        return sorted(records, key=_applied_instant)

    def get(self, conn: sqlite3.Connection, name: str) -> Optional[AppliedMigrationRecord]:
        """Get the ledger record for a migration name, if any."""
        cursor = conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM {LEDGER_TABLE} WHERE name = ?",
            (name,)
        )
        row = cursor.fetchone()
        return AppliedMigrationRecord.from_row(row) if row else None

    def is_applied(self, conn: sqlite3.Connection, name: str) -> bool:
        cursor = conn.execute(
            f"SELECT 1 FROM {LEDGER_TABLE} WHERE name = ?",
            (name,)
        )
        return cursor.fetchone() is not None

    def record(
        self,
        conn: sqlite3.Connection,
        definition: MigrationDefinition,
        applied_at: datetime | str,
        execution_time_ms: Optional[int],
    ) -> None:
        """
        Insert exactly one ledger row for a successfully applied migration.

        Args:
            conn: SQLite connection
            definition: Migration that was applied
            applied_at: Timestamp (datetime with tzinfo, or ISO-8601 string)
            execution_time_ms: Elapsed time of the transform

        Raises:
            MigrationValidationError: If the name is already recorded
        """
        if isinstance(applied_at, datetime):
            applied_at = applied_at.isoformat()

        params = (
            definition.name,
            definition.version,
            definition.description,
            definition.checksum,
            applied_at,
            execution_time_ms,
        )
        sql = f"""
            INSERT INTO {LEDGER_TABLE}
                (name, version, description, checksum, applied_at, execution_time_ms)
            VALUES (?, ?, ?, ?, ?, ?)
        """

        try:
            if conn.in_transaction:
                conn.execute(sql, params)
            else:
                with transaction(conn):
                    conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise MigrationValidationError(
                f"Migration '{definition.name}' is already recorded in the ledger",
                migration_name=definition.name,
                details=str(e),
            ) from e

        self.logger.debug(f"Recorded migration {definition.name} (applied_at={applied_at})")

    def reset(self, conn: sqlite3.Connection) -> int:
        """
        Delete all ledger rows. Test harnesses only.

        Returns:
            Number of rows removed
        """
        with transaction(conn):
            cursor = conn.execute(f"DELETE FROM {LEDGER_TABLE}")
        self.logger.warning(f"Ledger reset: {cursor.rowcount} record(s) removed")
        return cursor.rowcount
