"""Schema migration chain: fresh databases, re-runs and partial legacy layouts."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

import pytest

from tdcore import errors
from tdcore.core import DB_FILENAME, TODOS_DIR_NAME, TodoDB
from tdcore.db_schema import CURRENT_SCHEMA_VERSION, SCHEMA_SQL
from tdcore.errors import NotInitializedError, TodoError
from tdcore.ids import dependency_id
from tdcore.migrations import (
    MigrationError,
    apply_pending_migrations,
    column_exists,
    get_schema_version,
    set_schema_version,
    table_exists,
)
from tdcore.models import ALL_ISSUES_BOARD_ID, RELATION_DEPENDS_ON


def _legacy_db(tmp_path: Path, version: int) -> sqlite3.Connection:
    """A ``.todos/issues.db`` holding only the base layout, stamped at *version*."""
    todos = tmp_path / TODOS_DIR_NAME
    todos.mkdir()
    conn = sqlite3.connect(str(todos / DB_FILENAME))
    conn.executescript(SCHEMA_SQL)
    conn.execute("CREATE TABLE IF NOT EXISTS schema_info (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
    set_schema_version(conn, version)
    conn.commit()
    return conn


class TestFreshDatabase:
    def test_initialize_reaches_current_version(self, tmp_path: Path) -> None:
        with TodoDB.initialize(tmp_path) as db:
            assert db.get_schema_version() == CURRENT_SCHEMA_VERSION
            assert db.get_board(ALL_ISSUES_BOARD_ID).is_builtin
            for table in ("action_log", "boards", "board_issue_positions", "notes", "sync_state", "sync_history"):
                assert table_exists(db.conn, table), table

    def test_reopen_runs_nothing(self, tmp_path: Path) -> None:
        TodoDB.initialize(tmp_path).close()
        with TodoDB.open(tmp_path) as db:
            assert db.run_migrations() == 0
            assert db.ensure_schema() == 0

    def test_open_without_database(self, tmp_path: Path) -> None:
        with pytest.raises(NotInitializedError, match="database not found"):
            TodoDB.open(tmp_path)


class TestIdempotentReplay:
    def test_dropped_schema_info_replays_chain(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        with TodoDB.initialize(tmp_path) as db:
            db.conn.execute("DROP TABLE schema_info")
            db.conn.commit()

        with caplog.at_level(logging.INFO, logger="tdcore"), TodoDB(tmp_path) as db:
            applied = db.ensure_schema()
            assert applied == CURRENT_SCHEMA_VERSION - 1
            assert db.get_schema_version() == CURRENT_SCHEMA_VERSION
        assert "Column issues.minor already present" in caplog.text

    def test_existing_column_only_records_version(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        conn = _legacy_db(tmp_path, 3)
        if not column_exists(conn, "issues", "minor"):
            conn.execute("ALTER TABLE issues ADD COLUMN minor INTEGER DEFAULT 0")
        conn.commit()
        conn.close()

        with caplog.at_level(logging.INFO, logger="tdcore"), TodoDB.open(tmp_path) as db:
            assert db.get_schema_version() == CURRENT_SCHEMA_VERSION
            assert column_exists(db.conn, "issues", "minor")
        assert "Column issues.minor already present; recording schema v4 only" in caplog.text


class TestLegacyData:
    def test_v1_rows_survive_the_chain(self, tmp_path: Path) -> None:
        conn = _legacy_db(tmp_path, 1)
        conn.execute(
            "INSERT INTO issues (id, title, created_at, updated_at) VALUES ('td-aaaa1111', 'old', "
            "'2023-01-01 10:00:00', '2023-01-01 10:00:00')"
        )
        conn.execute(
            "INSERT INTO issues (id, title, created_at, updated_at) VALUES ('td-bbbb2222', 'dep', "
            "'2023-01-01 10:00:00', '2023-01-01 10:00:00')"
        )
        conn.execute("INSERT INTO issue_dependencies (issue_id, depends_on_id) VALUES ('td-aaaa1111', 'td-bbbb2222')")
        conn.commit()
        conn.close()

        with TodoDB.open(tmp_path) as db:
            assert db.get_issue("td-aaaa1111").title == "old"
            assert db.get_dependencies("td-aaaa1111") == ["td-bbbb2222"]
            row = db.conn.execute("SELECT id FROM issue_dependencies").fetchone()
            assert row[0] == dependency_id("td-aaaa1111", "td-bbbb2222", RELATION_DEPENDS_ON)
            old = db.get_issue("td-aaaa1111")
            old.title = "renamed"
            db.update_issue_logged(old, "s1")
            action = db.get_actions_for_entity(old.id)[0]
            assert json.loads(action.previous_data)["title"] == "old"
            assert action.id.startswith("al-")


class TestRunner:
    def test_missing_migration_raises(self, tmp_path: Path) -> None:
        with TodoDB.initialize(tmp_path) as db:
            with pytest.raises(MigrationError, match="No migration registered"):
                apply_pending_migrations(db.conn, db.base_dir, target_version=CURRENT_SCHEMA_VERSION + 1)
            assert get_schema_version(db.conn) == CURRENT_SCHEMA_VERSION

    def test_migration_error_lives_in_error_hierarchy(self, tmp_path: Path) -> None:
        assert MigrationError is errors.MigrationError
        with TodoDB.initialize(tmp_path) as db:
            with pytest.raises(TodoError) as excinfo:
                apply_pending_migrations(db.conn, db.base_dir, target_version=CURRENT_SCHEMA_VERSION + 1)
        err = excinfo.value
        assert isinstance(err, RuntimeError)
        assert isinstance(err, MigrationError)
        assert (err.from_version, err.to_version) == (CURRENT_SCHEMA_VERSION, CURRENT_SCHEMA_VERSION + 1)
