import importlib
from pathlib import Path

import pytest


migrator_mod = importlib.import_module("src.ingestion.migrator")
MigrationRunner = migrator_mod.MigrationRunner


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.rows = []

    def execute(self, sql, params=None):
        if self.connection.fail_on and self.connection.fail_on in sql:
            raise RuntimeError("syntax error")
        self.connection.executed.append((sql, params))
        if sql.startswith("SELECT filename FROM schema_migrations"):
            self.rows = [(name,) for name in self.connection.applied]
        elif sql.startswith("INSERT INTO schema_migrations"):
            self.connection.pending_names.append(params[0])

    def fetchall(self):
        return self.rows

    def close(self):
        return None


class FakeConnection:
    def __init__(self, applied=(), fail_on=None):
        self.applied = list(applied)
        self.pending_names = []
        self.executed = []
        self.fail_on = fail_on
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.applied.extend(self.pending_names)
        self.pending_names = []
        self.commits += 1

    def rollback(self):
        self.pending_names = []
        self.rollbacks += 1


def _write_migrations(tmp_path):
    migration_dir = tmp_path / "migrations"
    migration_dir.mkdir()
    (migration_dir / "001_create_table.sql").write_text(
        "CREATE TABLE t1 (id INTEGER PRIMARY KEY);", encoding="utf-8"
    )
    (migration_dir / "002_create_table.sql").write_text(
        "CREATE TABLE t2 (id INTEGER PRIMARY KEY);", encoding="utf-8"
    )
    return migration_dir


def test_migrator_applies_pending_files_only(tmp_path):
    conn = FakeConnection()
    runner = MigrationRunner(conn=conn, migration_dir=_write_migrations(tmp_path))

    first = runner.apply_pending()
    second = runner.apply_pending()

    assert first == ["001_create_table.sql", "002_create_table.sql"]
    assert second == []
    assert conn.applied == ["001_create_table.sql", "002_create_table.sql"]


def test_migration_scripts_run_without_parameters(tmp_path):
    conn = FakeConnection(applied=["001_create_table.sql"])
    runner = MigrationRunner(conn=conn, migration_dir=_write_migrations(tmp_path))

    runner.apply_pending()

    script_calls = [params for sql, params in conn.executed if sql.startswith("CREATE TABLE t2")]
    assert script_calls == [None]


def test_failed_migration_rolls_back_and_stops(tmp_path):
    conn = FakeConnection(fail_on="CREATE TABLE t1")
    runner = MigrationRunner(conn=conn, migration_dir=_write_migrations(tmp_path))

    with pytest.raises(RuntimeError):
        runner.apply_pending()

    assert conn.rollbacks == 1
    assert conn.applied == []
    assert [path.name for path in runner.pending()] == [
        "001_create_table.sql",
        "002_create_table.sql",
    ]


def test_default_migration_dir_holds_repository_migrations():
    names = [path.name for path in sorted(migrator_mod.DEFAULT_MIGRATION_DIR.glob("*.sql"))]

    assert names == [
        "001_domain_events.sql",
        "002_delivery_tasks.sql",
        "003_referral_ledger.sql",
        "004_membership_mirror.sql",
    ]
    assert migrator_mod.DEFAULT_MIGRATION_DIR == Path("migrations").resolve()
