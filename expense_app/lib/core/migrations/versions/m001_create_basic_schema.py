"""
Migration 001: Create the basic expense schema

Creates the expenses, subscriptions, categories and receipt_cache tables
and seeds the default expense categories.

Databases created by releases that predate the migrations ledger already
have these tables; for them this migration changes nothing and is only
recorded.
"""

import sqlite3
from ..base import Migration
from ..utils import table_exists


class Migration001CreateBasicSchema(Migration):
    """
    Create the basic tables.

    Schema changes:
    1. expenses (receipt_url based) with date/category/receipt_url indexes
    2. receipt_cache with url/last_accessed indexes
    3. subscriptions with is_active index
    4. categories, seeded with the default categories when empty
    """

    default_categories = (
        ("交通費", "#3B82F6", "🚗"),
        ("飲食費", "#EF4444", "🍽️"),
        ("通信費", "#8B5CF6", "📱"),
        ("消耗品費", "#10B981", "📦"),
        ("接待交際費", "#F59E0B", "🤝"),
        ("その他", "#6B7280", "📋"),
    )

    @property
    def name(self) -> str:
        return "001_create_basic_schema"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def description(self) -> str:
        return "Create expenses, subscriptions, categories and receipt_cache tables"

    def check_can_apply(self, conn: sqlite3.Connection) -> bool:
        if table_exists(conn, "expenses"):
            self.logger.info("Basic tables already exist")
            return False
        return True

    def upgrade(self, conn: sqlite3.Connection) -> None:
        self.logger.info("Creating basic schema")

        conn.execute("""
            CREATE TABLE expenses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                date TEXT NOT NULL,
                amount REAL NOT NULL,
                category TEXT NOT NULL,
                description TEXT,
                receipt_url TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_date ON expenses(date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_category ON expenses(category)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_receipt_url ON expenses(receipt_url)")

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

        conn.execute("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                amount REAL NOT NULL,
                billing_cycle TEXT NOT NULL CHECK(billing_cycle IN ('monthly', 'annual')),
                start_date TEXT NOT NULL,
                category TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                receipt_path TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_active ON subscriptions(is_active)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                color TEXT NOT NULL,
                icon TEXT
            )
        """)

        count = conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0]
        if count == 0:
            conn.executemany(
                "INSERT INTO categories (name, color, icon) VALUES (?, ?, ?)",
                self.default_categories
            )
            self.logger.info(f"Seeded {len(self.default_categories)} default categories")

        self.logger.info("Basic schema created")
