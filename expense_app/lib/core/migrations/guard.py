"""
Cross-process guard for migration runs.

A single-row `migration_lock` table holds an in-progress flag. The flag is
read and set inside a BEGIN IMMEDIATE transaction, so two processes can
never both see it cleared. The flag stays set (committed) for the whole
run while each migration commits in its own transaction.
"""

import os
import socket
import sqlite3
import uuid
from datetime import timezone
from typing import Optional
import logging

from expense_app.lib.sqlite_utils import busy_timeout, is_lock_error, transaction
from expense_app.lib.utils.time_utils import now_in, parse_iso
from .errors import ConcurrencyError, MigrationSystemError
from .utils import table_exists

LOCK_TABLE = "migration_lock"

DEFAULT_LOCK_TIMEOUT = 5.0  # seconds
DEFAULT_STALE_SECONDS = 600

CREATE_LOCK_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS {LOCK_TABLE} (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        in_progress INTEGER NOT NULL DEFAULT 0,
        owner TEXT,
        acquired_at TEXT
    )
"""


def ensure_lock_table(conn: sqlite3.Connection) -> None:
    """Create the flag table and its single row. Runs inside the caller's transaction."""
    conn.execute(CREATE_LOCK_TABLE_SQL)
    conn.execute(f"INSERT OR IGNORE INTO {LOCK_TABLE} (id, in_progress) VALUES (1, 0)")


def read_lock_state(conn: sqlite3.Connection) -> Optional[dict]:
    """
    Read the flag row without taking any lock.

    Returns:
        dict with in_progress, owner and acquired_at, or None if the table
        does not exist yet
    """
    if not table_exists(conn, LOCK_TABLE):
        return None
    row = conn.execute(
        f"SELECT in_progress, owner, acquired_at FROM {LOCK_TABLE} WHERE id = 1"
    ).fetchone()
    if row is None:
        return None
    return {
        "in_progress": bool(row[0]),
        "owner": row[1],
        "acquired_at": row[2],
    }


def is_migration_in_progress(conn: sqlite3.Connection) -> bool:
    state = read_lock_state(conn)
    return bool(state and state["in_progress"])


def _make_owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class MigrationGuard:
    """
    Context manager holding the in-progress flag for one migration run.

    Usage:
        with MigrationGuard(conn, lock_timeout=5.0):
            ...run migrations...

    Acquisition fails fast with ConcurrencyError when another live run holds
    the flag or the database write lock. A flag older than stale_after
    seconds is assumed to belong to a crashed process and is taken over.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_after: float = DEFAULT_STALE_SECONDS,
        tz: Optional[timezone] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.conn = conn
        self.lock_timeout = lock_timeout
        self.stale_after = stale_after
        self.tz = tz
        self.logger = logger or logging.getLogger(__name__)
        self.owner = _make_owner_token()
        self.acquired = False

    def _is_stale(self, acquired_at: Optional[str]) -> bool:
        if self.stale_after <= 0:
            return False
        acquired = parse_iso(acquired_at)
        if acquired is None:
            # Unparseable timestamp counts as stale
            return True
        if acquired.tzinfo is None:
            acquired = acquired.replace(tzinfo=timezone.utc)
        age = (now_in(self.tz) - acquired).total_seconds()
        return age > self.stale_after

    def acquire(self) -> None:
        """
        Set the in-progress flag.

        Raises:
            ConcurrencyError: If another run holds the flag or the write lock
            MigrationSystemError: On any other database error
        """
        if self.acquired:
            return

        try:
            with busy_timeout(self.conn, self.lock_timeout):
                with transaction(self.conn, "IMMEDIATE"):
                    ensure_lock_table(self.conn)
                    row = self.conn.execute(
                        f"SELECT in_progress, owner, acquired_at FROM {LOCK_TABLE} WHERE id = 1"
                    ).fetchone()

                    if row[0]:
                        holder, acquired_at = row[1], row[2]
                        if not self._is_stale(acquired_at):
                            self.logger.warning(
                                f"[MIGRATION LOCK] Denied: migration run in progress "
                                f"by {holder} since {acquired_at}"
                            )
                            raise ConcurrencyError(
                                "Another migration run is in progress",
                                details=f"owner: {holder}, since: {acquired_at}",
                            )
                        self.logger.warning(
                            f"[MIGRATION LOCK] Taking over stale flag from {holder} "
                            f"(set at {acquired_at}, older than {self.stale_after}s)"
                        )

                    self.conn.execute(
                        f"UPDATE {LOCK_TABLE} SET in_progress = 1, owner = ?, acquired_at = ? WHERE id = 1",
                        (self.owner, now_in(self.tz).isoformat())
                    )
        except ConcurrencyError:
            raise
        except sqlite3.Error as e:
            if is_lock_error(e):
                self.logger.warning(f"[MIGRATION LOCK] Denied: database is locked ({e})")
                raise ConcurrencyError(
                    "Database is locked by another migration run",
                    details=str(e),
                ) from e
            raise MigrationSystemError(
                "Failed to set migration in-progress flag",
                details=str(e),
            ) from e

        self.acquired = True
        self.logger.debug(f"[MIGRATION LOCK] Acquired by {self.owner}")

    def release(self) -> None:
        """
        Clear the flag if this guard still owns it.

        Errors are logged, not raised. A flag left behind becomes stale.
        """
        if not self.acquired:
            return

        try:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            with busy_timeout(self.conn, max(self.lock_timeout, DEFAULT_LOCK_TIMEOUT)):
                with transaction(self.conn, "IMMEDIATE"):
                    cursor = self.conn.execute(
                        f"UPDATE {LOCK_TABLE} SET in_progress = 0, owner = NULL, acquired_at = NULL "
                        f"WHERE id = 1 AND owner = ?",
                        (self.owner,)
                    )
            if cursor.rowcount == 0:
                self.logger.warning(
                    f"[MIGRATION LOCK] Flag no longer owned by {self.owner}, left unchanged"
                )
            else:
                self.logger.debug(f"[MIGRATION LOCK] Released by {self.owner}")
        except sqlite3.Error as e:
            self.logger.error(f"[MIGRATION LOCK] Failed to release flag held by {self.owner}: {e}")
        finally:
            self.acquired = False

    def __enter__(self) -> "MigrationGuard":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

