"""
Utility functions for database migrations.

Schema introspection helpers shared by the ledger, the backup manager and
the individual migrations.
"""

import sqlite3
from pathlib import Path
from typing import Optional


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Check if a table exists."""
    cursor = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,)
    )
    return cursor.fetchone() is not None


def get_table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    """
    Get the column names of a table.

    Returns:
        Column names in declaration order (empty if the table does not exist)
    """
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return [row[1] for row in cursor.fetchall()]


def get_column_type(conn: sqlite3.Connection, table: str, column: str) -> Optional[str]:
    """Declared type of a column, or None if the column does not exist."""
    cursor = conn.execute(f"PRAGMA table_info({table})")
    for row in cursor.fetchall():
        if row[1] == column:
            return row[2]
    return None


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """Check if a column exists in a table."""
    return column in get_table_columns(conn, table)


def get_database_path(conn: sqlite3.Connection) -> Optional[Path]:
    """
    Get the file path of the main database of a connection.

    Returns:
        Path of the database file, or None for in-memory/temporary databases
    """
    for row in conn.execute("PRAGMA database_list").fetchall():
        if row[1] == "main":
            return Path(row[2]) if row[2] else None
    return None
