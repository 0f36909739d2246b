"""
Migration 004: Convert integer user IDs to nanoid strings

Integer user IDs are guessable and collide across devices. Every user gets a
random 21-character URL-safe ID; all rows referencing a user are rewritten
so that relationships are preserved.

Before: users.id INTEGER, user_id INTEGER in expenses/subscriptions/sessions
After:  users.id TEXT (nanoid), user_id TEXT in all referencing tables
"""

import sqlite3
from ..base import Migration
from ..utils import get_column_type, get_table_columns, table_exists
from expense_app.lib.utils.nanoid import generate_user_id


class Migration004MigrateUserIdToNanoid(Migration):
    """
    Rebuild users and every table referencing it with TEXT user IDs.

    Steps:
    1. Generate a nanoid for each existing user (temporary mapping table)
    2. Create users_new and the *_new tables referencing it, copy all rows
       with user IDs translated through the mapping
    3. Drop the old tables, rename the new ones, recreate indexes
    4. Verify row counts and foreign keys
    """

    users_sql = """
        CREATE TABLE users_new (
            id TEXT PRIMARY KEY,
            google_id TEXT NOT NULL UNIQUE,
            email TEXT NOT NULL,
            name TEXT NOT NULL,
            picture_url TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """

    users_indexes = (
        "CREATE INDEX IF NOT EXISTS idx_users_google_id ON users(google_id)",
        "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)",
    )

    # Referencing tables, in the order they are rebuilt
    child_tables = {
        "sessions": (
            """
            CREATE TABLE sessions_new (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users_new(id) ON DELETE CASCADE
            )
            """,
            (
                "CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id)",
                "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)",
            ),
        ),
        "expenses": (
            """
            CREATE TABLE expenses_new (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                date TEXT NOT NULL,
                amount REAL NOT NULL,
                category TEXT NOT NULL,
                description TEXT,
                receipt_url TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                user_id TEXT REFERENCES users_new(id)
            )
            """,
            (
                "CREATE INDEX IF NOT EXISTS idx_expenses_date ON expenses(date)",
                "CREATE INDEX IF NOT EXISTS idx_expenses_category ON expenses(category)",
                "CREATE INDEX IF NOT EXISTS idx_expenses_receipt_url ON expenses(receipt_url)",
                "CREATE INDEX IF NOT EXISTS idx_expenses_user_id ON expenses(user_id)",
            ),
        ),
        "subscriptions": (
            """
            CREATE TABLE subscriptions_new (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                amount REAL NOT NULL,
                billing_cycle TEXT NOT NULL CHECK(billing_cycle IN ('monthly', 'annual')),
                start_date TEXT NOT NULL,
                category TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                receipt_path TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                user_id TEXT REFERENCES users_new(id)
            )
            """,
            (
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_active ON subscriptions(is_active)",
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_user_id ON subscriptions(user_id)",
            ),
        ),
        "receipt_cache": (
            """
            CREATE TABLE receipt_cache_new (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                receipt_url TEXT NOT NULL UNIQUE,
                local_path TEXT NOT NULL,
                cached_at TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                last_accessed TEXT NOT NULL,
                user_id TEXT REFERENCES users_new(id)
            )
            """,
            (
                "CREATE INDEX IF NOT EXISTS idx_receipt_cache_url ON receipt_cache(receipt_url)",
                "CREATE INDEX IF NOT EXISTS idx_receipt_cache_accessed ON receipt_cache(last_accessed)",
                "CREATE INDEX IF NOT EXISTS idx_receipt_cache_user_id ON receipt_cache(user_id)",
            ),
        ),
    }

    @property
    def name(self) -> str:
        return "004_migrate_user_id_to_nanoid"

    @property
    def version(self) -> str:
        return "1.1.0"

    @property
    def description(self) -> str:
        return "Convert integer user IDs to nanoid strings"

    def check_can_apply(self, conn: sqlite3.Connection) -> bool:
        if not table_exists(conn, "users"):
            self.logger.info("Users table does not exist, nothing to convert")
            return False
        id_type = (get_column_type(conn, "users", "id") or "").upper()
        if id_type != "INTEGER":
            self.logger.info(f"User IDs already converted (users.id is {id_type or 'untyped'})")
            return False
        return True

    def _tables_to_rebuild(self, conn: sqlite3.Connection) -> list[str]:
        return [
            table for table in self.child_tables
            if table_exists(conn, table) and "user_id" in get_table_columns(conn, table)
        ]

    def upgrade(self, conn: sqlite3.Connection) -> None:
        old_ids = [row[0] for row in conn.execute("SELECT id FROM users ORDER BY id").fetchall()]
        self.logger.info(f"Converting {len(old_ids)} user ID(s) to nanoid")

        new_ids: set[str] = set()
        mapping = []
        for old_id in old_ids:
            new_id = generate_user_id(existing_ids=new_ids)
            new_ids.add(new_id)
            mapping.append((old_id, new_id))

        conn.execute("""
            CREATE TEMP TABLE user_id_map (
                old_id INTEGER PRIMARY KEY,
                new_id TEXT NOT NULL UNIQUE
            )
        """)
        conn.executemany("INSERT INTO user_id_map (old_id, new_id) VALUES (?, ?)", mapping)

        tables = self._tables_to_rebuild(conn)
        counts_before = {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in ["users"] + tables
        }

        conn.execute(self.users_sql)
        conn.execute("""
            INSERT INTO users_new (id, google_id, email, name, picture_url, created_at, updated_at)
            SELECT m.new_id, u.google_id, u.email, u.name, u.picture_url, u.created_at, u.updated_at
            FROM users u
            JOIN user_id_map m ON m.old_id = u.id
        """)

        for table in tables:
            create_sql, _ = self.child_tables[table]
            conn.execute(create_sql)
            new_columns = get_table_columns(conn, f"{table}_new")
            old_columns = set(get_table_columns(conn, table))
            columns = [c for c in new_columns if c in old_columns]
            select = [
                "(SELECT m.new_id FROM user_id_map m WHERE m.old_id = t.user_id)"
                if c == "user_id" else f"t.{c}"
                for c in columns
            ]
            conn.execute(f"""
                INSERT INTO {table}_new ({', '.join(columns)})
                SELECT {', '.join(select)}
                FROM {table} t
            """)

        # Drop referencing tables before users
        for table in tables:
            conn.execute(f"DROP TABLE {table}")
        conn.execute("DROP TABLE users")

        # Renaming rewrites the users_new references in the *_new tables
        conn.execute("ALTER TABLE users_new RENAME TO users")
        for statement in self.users_indexes:
            conn.execute(statement)
        for table in tables:
            conn.execute(f"ALTER TABLE {table}_new RENAME TO {table}")
            for statement in self.child_tables[table][1]:
                conn.execute(statement)

        conn.execute("DROP TABLE user_id_map")

        for table, before in counts_before.items():
            after = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            if after != before:
                raise RuntimeError(f"Row count of {table} changed during conversion: {before} -> {after}")

        violations = conn.execute("PRAGMA foreign_key_check").fetchall()
        if violations:
            raise RuntimeError(f"Foreign key violations after conversion: {len(violations)}")

        self.logger.info(
            f"Converted {len(mapping)} user ID(s); rebuilt {', '.join(['users'] + tables)}"
        )
