"""
Centralized SQLite connection utilities.

Provides connection management with WAL mode initialization, retry logic
for concurrent access scenarios, and explicit transaction scopes.

Connections are opened in autocommit mode (isolation_level=None) so that
every transaction boundary in the migration engine is an explicit
BEGIN/COMMIT/ROLLBACK.
"""

import sqlite3
import time
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator
import logging

logger = logging.getLogger(__name__)

# Track which databases have been initialized with WAL mode
_initialized_databases: set[str] = set()
_init_lock = threading.Lock()

# Default retry configuration
DEFAULT_RETRY_COUNT = 5
DEFAULT_RETRY_DELAY = 0.05  # seconds

TRANSACTION_MODES = ("DEFERRED", "IMMEDIATE", "EXCLUSIVE")


def _ensure_wal_mode(db_path: Path) -> None:
    """
    Ensure WAL mode is enabled for a database.

    This is called once per database path during application lifetime.

    Args:
        db_path: Path to the SQLite database file
    """
    db_key = str(db_path.resolve())

    with _init_lock:
        if db_key in _initialized_databases:
            return

    db_path.parent.mkdir(parents=True, exist_ok=True)

    for attempt in range(DEFAULT_RETRY_COUNT):
        try:
            conn = sqlite3.connect(str(db_path), timeout=30.0)
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                with _init_lock:
                    _initialized_databases.add(db_key)
                logger.debug(f"WAL mode enabled for {db_path.name}")
                return
            finally:
                conn.close()
        except sqlite3.OperationalError as e:
            if attempt < DEFAULT_RETRY_COUNT - 1:
                logger.warning(
                    f"Failed to set WAL mode for {db_path.name} "
                    f"(attempt {attempt + 1}/{DEFAULT_RETRY_COUNT}): {e}"
                )
                time.sleep(DEFAULT_RETRY_DELAY * (attempt + 1))
            else:
                logger.error(f"Failed to set WAL mode for {db_path.name} after {DEFAULT_RETRY_COUNT} attempts")
                raise


def open_connection(
    db_path: Path,
    timeout: float = 30.0,
    row_factory: bool = True,
    foreign_keys: bool = True,
    retry_count: int = DEFAULT_RETRY_COUNT,
    retry_delay: float = DEFAULT_RETRY_DELAY
) -> sqlite3.Connection:
    """
    Open a configured autocommit connection. The caller owns and closes it.

    Args:
        db_path: Path to the SQLite database file
        timeout: Busy timeout in seconds
        row_factory: If True, use sqlite3.Row for dict-like access
        foreign_keys: If True, enable foreign key constraints
        retry_count: Number of connection retry attempts
        retry_delay: Base delay between retries (multiplied by attempt number)

    Returns:
        sqlite3.Connection: Configured database connection

    Raises:
        sqlite3.Error: If connection fails after all retries
    """
    db_path = Path(db_path)
    _ensure_wal_mode(db_path)

    last_error = None
    for attempt in range(retry_count):
        conn = None
        try:
            conn = sqlite3.connect(
                str(db_path),
                timeout=timeout,
                isolation_level=None,  # autocommit mode
                check_same_thread=False
            )
            if row_factory:
                conn.row_factory = sqlite3.Row
            if foreign_keys:
                conn.execute("PRAGMA foreign_keys = ON")
            return conn
        except sqlite3.OperationalError as e:
            last_error = e
            if conn:
                conn.close()
            if attempt < retry_count - 1:
                delay = retry_delay * (attempt + 1)
                logger.warning(
                    f"Database connection failed for {db_path.name} "
                    f"(attempt {attempt + 1}/{retry_count}): {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                time.sleep(delay)
            else:
                logger.error(
                    f"Database connection failed for {db_path.name} "
                    f"after {retry_count} attempts: {e}"
                )

    raise last_error or sqlite3.OperationalError("Connection failed")


@contextmanager
def get_connection(db_path: Path, **kwargs) -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager around open_connection() that always closes the connection.

    Usage:
        with get_connection(db_path) as conn:
            conn.execute("SELECT 1")
    """
    conn = open_connection(db_path, **kwargs)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, mode: str = "DEFERRED") -> Generator[sqlite3.Connection, None, None]:
    """
    Run a block inside an explicit transaction on an existing connection.

    Automatically commits on success, rolls back on exception.

    Args:
        conn: Open connection that is not already inside a transaction
        mode: DEFERRED, IMMEDIATE or EXCLUSIVE

    Yields:
        sqlite3.Connection: The same connection, with the transaction open

    Raises:
        ValueError: If mode is not a valid SQLite transaction mode
        sqlite3.Error: If BEGIN, the block or COMMIT fails
    """
    mode = mode.upper()
    if mode not in TRANSACTION_MODES:
        raise ValueError(f"Invalid transaction mode: {mode}")

    conn.execute(f"BEGIN {mode}")
    try:
        yield conn
        conn.execute("COMMIT")
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


@contextmanager
def busy_timeout(conn: sqlite3.Connection, seconds: float) -> Generator[None, None, None]:
    """
    Temporarily change the busy timeout of a connection.

    Args:
        conn: Open connection
        seconds: Timeout to apply while inside the block
    """
    previous = conn.execute("PRAGMA busy_timeout").fetchone()[0]
    conn.execute(f"PRAGMA busy_timeout = {int(seconds * 1000)}")
    try:
        yield
    finally:
        conn.execute(f"PRAGMA busy_timeout = {int(previous)}")


def is_lock_error(error: BaseException) -> bool:
    """True if a SQLite error means another connection holds the write lock."""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return any(err in message for err in ('locked', 'busy'))


def reset_initialized_databases() -> None:
    """
    Reset the set of initialized databases.

    This is primarily for testing purposes, to allow re-initialization
    of WAL mode after database files are deleted/recreated.
    """
    with _init_lock:
        _initialized_databases.clear()
        logger.debug("Reset initialized databases tracking")
