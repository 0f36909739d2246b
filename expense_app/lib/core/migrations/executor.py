"""
Runs a single migration inside its own transaction.

The executor never touches the ledger; recording is the caller's job once
the migration has committed.
"""

import sqlite3
import time
from datetime import timezone
from typing import Optional
import logging

from expense_app.lib.utils.time_utils import now_iso
from .base import MigrationDefinition
from .errors import ChecksumMismatch, ExecutionError
from .models import MigrationExecutionResult


class MigrationExecutor:
    """
    Applies one MigrationDefinition atomically.

    Either every change made by the transform is committed, or none is.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        tz: Optional[timezone] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            timeout: Wall-clock budget per migration in seconds (None = unlimited).
                Checked after the transform returns; an overrun is rolled back.
            tz: Fixed timezone for started_at/finished_at
            logger: Optional logger instance
        """
        self.timeout = timeout
        self.tz = tz
        self.logger = logger or logging.getLogger(__name__)

    def execute(
        self,
        conn: sqlite3.Connection,
        definition: MigrationDefinition,
        recorded_checksum: Optional[str] = None,
    ) -> MigrationExecutionResult:
        """
        Execute a migration in a transaction.

        Args:
            conn: Connection not inside a transaction
            definition: Migration to apply
            recorded_checksum: Checksum stored in the ledger for this name, if any

        Returns:
            Result with elapsed time

        Raises:
            ExecutionError: If the transform raises, returns False, or overruns
                the timeout
            ChecksumMismatch: If the migration's logic no longer matches its
                registered (or recorded) checksum
        """
        name = definition.name
        if conn.in_transaction:
            raise ExecutionError(name, "connection is already inside a transaction")

        self.logger.info(f"Applying migration {name}")
        started_at = now_iso(self.tz)
        start = time.perf_counter()

        try:
            conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise ExecutionError(name, e, details=str(e)) from e

        try:
            try:
                outcome = definition.transform(conn)
            except Exception as e:
                raise ExecutionError(name, e, details=f"{type(e).__name__}: {e}") from e

            if outcome is False:
                raise ExecutionError(name, "transform reported failure")

            elapsed = time.perf_counter() - start
            if self.timeout is not None and elapsed > self.timeout:
                raise ExecutionError(
                    name,
                    f"exceeded time budget ({elapsed:.2f}s > {self.timeout}s)",
                )

            actual = definition.current_checksum()
            for expected in (definition.checksum, recorded_checksum):
                if expected is not None and actual != expected:
                    raise ChecksumMismatch(name, expected, actual)

            conn.execute("COMMIT")
        except Exception as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self.logger.error(f"Migration {name} rolled back: {e}")
            if isinstance(e, (ExecutionError, ChecksumMismatch)):
                raise
            raise ExecutionError(name, e, details=str(e)) from e

        execution_time_ms = int((time.perf_counter() - start) * 1000)
        self.logger.info(f"Migration {name} completed in {execution_time_ms}ms")

        return MigrationExecutionResult(
            name=name,
            success=True,
            message=f"Migration '{name}' applied",
            execution_time_ms=execution_time_ms,
            started_at=started_at,
            finished_at=now_iso(self.tz),
        )
