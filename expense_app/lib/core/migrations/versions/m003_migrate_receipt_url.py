"""
Migration 003: Replace receipt_path with receipt_url

Receipts moved from local file paths to HTTPS URLs. SQLite cannot drop a
column in older versions, so the expenses table is rebuilt without
receipt_path. Legacy paths are carried over into receipt_url only when they
already are HTTPS URLs; everything else becomes NULL.
"""

import sqlite3
from ..base import Migration
from ..utils import get_table_columns, table_exists


class Migration003MigrateReceiptUrl(Migration):
    """
    Rebuild expenses with receipt_url instead of receipt_path.

    Schema changes:
    1. expenses recreated with receipt_url (HTTPS only) and no receipt_path
    2. Indexes on date, category, receipt_url (and user_id if present) recreated
    3. receipt_cache created if missing

    Data changes:
    1. All expense rows copied, ids preserved
    """

    copied_columns = ("id", "date", "amount", "category", "description", "created_at", "updated_at")

    @property
    def name(self) -> str:
        return "003_migrate_receipt_url"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def description(self) -> str:
        return "Migrate expenses.receipt_path to receipt_url"

    def check_can_apply(self, conn: sqlite3.Connection) -> bool:
        if not table_exists(conn, "expenses"):
            self.logger.info("Expenses table does not exist, nothing to migrate")
            return False
        columns = set(get_table_columns(conn, "expenses"))
        if "receipt_url" in columns and "receipt_path" not in columns:
            self.logger.info("Expenses already use receipt_url")
            return False
        return True

    def upgrade(self, conn: sqlite3.Connection) -> None:
        columns = set(get_table_columns(conn, "expenses"))
        has_user_id = "user_id" in columns

        self.logger.info("Rebuilding expenses table with receipt_url")

        user_id_column = ",\n                user_id INTEGER REFERENCES users(id)" if has_user_id else ""
        conn.execute(f"""
            CREATE TABLE expenses_new (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                date TEXT NOT NULL,
                amount REAL NOT NULL,
                category TEXT NOT NULL,
                description TEXT,
                receipt_url TEXT CHECK(receipt_url IS NULL OR receipt_url LIKE 'https://%'),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL{user_id_column}
            )
        """)

        whens = " ".join(
            f"WHEN {column} LIKE 'https://%' THEN {column}"
            for column in ("receipt_url", "receipt_path") if column in columns
        )
        url_expr = f"CASE {whens} ELSE NULL END" if whens else "NULL"

        target = list(self.copied_columns) + ["receipt_url"]
        source = list(self.copied_columns) + [url_expr]
        if has_user_id:
            target.append("user_id")
            source.append("user_id")

        conn.execute(f"""
            INSERT INTO expenses_new ({', '.join(target)})
            SELECT {', '.join(source)}
            FROM expenses
        """)
        copied = conn.execute("SELECT COUNT(*) FROM expenses_new").fetchone()[0]

        conn.execute("DROP TABLE expenses")
        conn.execute("ALTER TABLE expenses_new RENAME TO expenses")

        conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_date ON expenses(date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_category ON expenses(category)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_receipt_url ON expenses(receipt_url)")
        if has_user_id:
            conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_user_id ON expenses(user_id)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS receipt_cache (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                receipt_url TEXT NOT NULL UNIQUE,
                local_path TEXT NOT NULL,
                cached_at TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                last_accessed TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_receipt_cache_url ON receipt_cache(receipt_url)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_receipt_cache_accessed ON receipt_cache(last_accessed)")

        self.logger.info(f"Expenses rebuilt with receipt_url ({copied} row(s) copied)")
