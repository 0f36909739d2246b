"""
Tests for checksum, timestamp and ID helpers.

@testCovers expense_app/lib/utils/hash_utils.py
@testCovers expense_app/lib/utils/time_utils.py
@testCovers expense_app/lib/utils/nanoid.py
@testCovers expense_app/lib/logging_utils.py
"""

import functools
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from datetime import timedelta, timezone

import pytest

from expense_app.lib.logging_utils import CategoryFilter
from expense_app.lib.utils.hash_utils import (
    compute_migration_checksum,
    generate_content_hash,
    get_logic_source,
)
from expense_app.lib.utils.nanoid import ALPHABET, generate_user_id, is_valid_nanoid
from expense_app.lib.utils.time_utils import JST, now_in, now_iso, parse_iso


PROJECT_ROOT = Path(__file__).resolve().parents[3]

CHECKSUM_SCRIPT = '''
import functools
import json

from expense_app.lib.core.migrations import MigrationDefinition
from expense_app.lib.core.migrations.utils import table_exists


def create_with_helper(conn):
    helper = lambda name: conn.execute("CREATE TABLE " + name + " (id INTEGER)")
    if "p" in {"p", "q", "r"}:
        helper("p")


class CreateTable:
    def __call__(self, conn):
        conn.execute("CREATE TABLE callable (id INTEGER)")


print(json.dumps([
    MigrationDefinition.create("001_p", functools.partial(table_exists, table="p")).checksum,
    MigrationDefinition.create("002_p", create_with_helper).checksum,
    MigrationDefinition.create("003_p", CreateTable()).checksum,
]))
'''


def add_column(conn):
    conn.execute("ALTER TABLE t ADD COLUMN c TEXT")


def create_table(conn, table="t"):
    conn.execute(f"CREATE TABLE {table} (id INTEGER)")


class Holder:
    sql = "CREATE TABLE holder (id INTEGER)"

    def apply(self, conn):
        conn.execute(self.sql)


class CallableMigration:
    sql = "CREATE TABLE callable (id INTEGER)"

    def __call__(self, conn):
        conn.execute(self.sql)


def checksums_in_subprocess(hash_seed):
    env = dict(os.environ)
    env["PYTHONHASHSEED"] = hash_seed
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(PROJECT_ROOT), env.get("PYTHONPATH")]))
    completed = subprocess.run(
        [sys.executable, "-c", CHECKSUM_SCRIPT],
        cwd=str(PROJECT_ROOT),
        env=env,
        capture_output=True,
        text=True,
        check=True,
    )
    return json.loads(completed.stdout)


class TestHashUtils:

    def test_content_hash(self):
        assert generate_content_hash(b"abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_function_source(self):
        assert b"ALTER TABLE t ADD COLUMN c TEXT" in get_logic_source(add_column)

    def test_bound_method_uses_class_source(self):
        source = get_logic_source(Holder().apply)
        # Class attributes such as embedded SQL are part of the logic
        assert b"CREATE TABLE holder" in source

    def test_builtin_without_source(self):
        assert get_logic_source(len)

    def test_checksum(self):
        checksum = compute_migration_checksum("001_x", "1.0.0", add_column)
        assert len(checksum) == 64
        assert checksum == compute_migration_checksum("001_x", "1.0.0", add_column)
        assert checksum != compute_migration_checksum("001_y", "1.0.0", add_column)
        assert checksum != compute_migration_checksum("001_x", "1.0.1", add_column)

    def test_lambdas_differ(self):
        first = compute_migration_checksum("x", "1", lambda conn: conn.execute("SELECT 1"))
        second = compute_migration_checksum("x", "1", lambda conn: conn.execute("SELECT 2"))
        assert first != second

    def test_partial_includes_wrapped_source_and_arguments(self):
        source = get_logic_source(functools.partial(create_table, table="p"))
        assert b"CREATE TABLE {table}" in source
        assert b"'table', 'p'" in source
        assert b" at 0x" not in source
        assert compute_migration_checksum(
            "x", "1", functools.partial(create_table, table="p")
        ) != compute_migration_checksum("x", "1", functools.partial(create_table, table="q"))

    def test_callable_instance_uses_class_source(self):
        source = get_logic_source(CallableMigration())
        assert b"CREATE TABLE callable" in source
        assert compute_migration_checksum("x", "1", CallableMigration()) == (
            compute_migration_checksum("x", "1", CallableMigration())
        )

    def test_sourceless_function_with_nested_code(self):
        namespace = {}
        exec(
            "def transform(conn):\n"
            "    return [lambda: n for n in {'a', 'b'}]\n",
            namespace,
        )
        fingerprint = get_logic_source(namespace["transform"])
        assert b"code object" not in fingerprint
        assert b" at 0x" not in fingerprint

    def test_non_callable_rejected(self):
        with pytest.raises(TypeError):
            get_logic_source(object())

    def test_checksums_stable_across_processes(self):
        first = checksums_in_subprocess("1")
        second = checksums_in_subprocess("2")

        assert len(first) == 3
        assert first == second


class TestTimeUtils:

    def test_now_in_default_is_jst(self):
        assert now_in().utcoffset() == timedelta(hours=9)
        assert now_iso().endswith("+09:00")

    def test_now_in_custom_timezone(self):
        assert now_iso(timezone.utc).endswith("+00:00")

    def test_parse_iso(self):
        parsed = parse_iso("2025-01-15T10:00:00+09:00")
        assert parsed.tzinfo is not None
        assert parsed.utcoffset() == JST.utcoffset(None)
        assert parse_iso(None) is None
        assert parse_iso("") is None
        assert parse_iso("yesterday") is None


class TestNanoid:

    def test_generate(self):
        user_id = generate_user_id()
        assert len(user_id) == 21
        assert all(c in ALPHABET for c in user_id)
        assert is_valid_nanoid(user_id)

    def test_custom_length(self):
        assert len(generate_user_id(length=8)) == 8

    def test_avoids_existing_ids(self):
        existing = {generate_user_id() for _ in range(50)}
        for _ in range(50):
            assert generate_user_id(existing_ids=existing) not in existing

    def test_is_valid_nanoid(self):
        assert not is_valid_nanoid(1)
        assert not is_valid_nanoid("1")
        assert not is_valid_nanoid("a" * 20 + "!")
        assert is_valid_nanoid("A" * 10 + "_-" + "z" * 9)


class TestCategoryFilter:

    def _record(self, name):
        return logging.LogRecord(name, logging.INFO, __file__, 1, "msg", None, None)

    def test_no_categories_allows_all(self):
        assert CategoryFilter([]).filter(self._record("anything"))

    def test_prefix_match(self):
        log_filter = CategoryFilter(["expense_app.lib.core"])
        assert log_filter.filter(self._record("expense_app.lib.core.migrations.service"))
        assert not log_filter.filter(self._record("expense_app.routers.migrations"))
