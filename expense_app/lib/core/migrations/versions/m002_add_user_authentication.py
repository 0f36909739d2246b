"""
Migration 002: Add user authentication

Adds the users and sessions tables and a user_id column to expenses and
subscriptions. Rows that existed before authentication belong to a default
user (id 1) created by this migration.
"""

import sqlite3
from ..base import Migration
from ..utils import column_exists, table_exists
from expense_app.lib.utils.time_utils import now_iso


class Migration002AddUserAuthentication(Migration):
    """
    Add users and sessions.

    Schema changes:
    1. users table (google_id unique) with google_id/email indexes
    2. sessions table referencing users, with user_id/expires_at indexes
    3. user_id column on expenses and subscriptions, with indexes

    Data changes:
    1. Insert the default user (id 1)
    2. Assign existing expenses and subscriptions to the default user
    """

    DEFAULT_USER_ID = 1
    owned_tables = ("expenses", "subscriptions")

    @property
    def name(self) -> str:
        return "002_add_user_authentication"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def description(self) -> str:
        return "Add users and sessions tables and user_id columns"

    def check_can_apply(self, conn: sqlite3.Connection) -> bool:
        if table_exists(conn, "users"):
            self.logger.info("Users table already exists")
            return False
        return True

    def upgrade(self, conn: sqlite3.Connection) -> None:
        self.logger.info("Creating users and sessions tables")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                google_id TEXT NOT NULL UNIQUE,
                email TEXT NOT NULL,
                name TEXT NOT NULL,
                picture_url TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_users_google_id ON users(google_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)")

        timestamp = now_iso()
        conn.execute("""
            INSERT OR IGNORE INTO users (id, google_id, email, name, picture_url, created_at, updated_at)
            VALUES (?, 'default_user', 'default@example.com', 'デフォルトユーザー', NULL, ?, ?)
        """, (self.DEFAULT_USER_ID, timestamp, timestamp))

        for table in self.owned_tables:
            self._add_user_id_column(conn, table)

        self.logger.info("User authentication schema created")

    def _add_user_id_column(self, conn: sqlite3.Connection, table: str) -> None:
        if not table_exists(conn, table):
            self.logger.debug(f"Table {table} does not exist, no user_id column added")
            return
        if column_exists(conn, table, "user_id"):
            return

        # SQLite rejects a REFERENCES column with a non-NULL default, so
        # existing rows are assigned in a separate UPDATE
        conn.execute(f"ALTER TABLE {table} ADD COLUMN user_id INTEGER REFERENCES users(id)")
        cursor = conn.execute(
            f"UPDATE {table} SET user_id = ? WHERE user_id IS NULL",
            (self.DEFAULT_USER_ID,)
        )
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_user_id ON {table}(user_id)")
        self.logger.info(f"Added user_id to {table} ({cursor.rowcount} existing row(s) assigned)")
