"""CLI commands over the tdcore engine."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from tdcore.cli import cli
from tdcore.core import DB_FILENAME, TODOS_DIR_NAME, TodoDB
from tdcore.db_schema import CURRENT_SCHEMA_VERSION
from tdcore.lock import WriteLock
from tdcore.models import TYPE_EPIC, Issue
from tdcore.sideband import read_agent_errors, read_command_usage
from tests.cli.conftest import _extract_id


class TestInit:
    def test_init_creates_todos_dir(
        self, tmp_path: Path, cli_runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        result = cli_runner.invoke(cli, ["init"])
        assert result.exit_code == 0
        assert (tmp_path / TODOS_DIR_NAME / DB_FILENAME).exists()
        assert f"schema v{CURRENT_SCHEMA_VERSION}" in result.output

    def test_init_already_exists(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        result = runner.invoke(cli, ["init"])
        assert result.exit_code == 0
        assert "already exists" in result.output


class TestMigrate:
    def test_already_current(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        result = runner.invoke(cli, ["migrate", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data == {"from": CURRENT_SCHEMA_VERSION, "to": CURRENT_SCHEMA_VERSION, "applied": 0}

    def test_outside_project(self, tmp_path: Path, cli_runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        result = cli_runner.invoke(cli, ["migrate"])
        assert result.exit_code == 1
        assert "tdcore init" in result.output


class TestCreateShowList:
    def test_create_and_show(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        result = runner.invoke(cli, ["create", "Fix the bug", "--type", "bug", "-p", "p1", "-l", "backend"])
        assert result.exit_code == 0
        issue_id = _extract_id(result.output)

        shown = runner.invoke(cli, ["show", issue_id, "--json"])
        assert shown.exit_code == 0
        data = json.loads(shown.output)
        assert data["title"] == "Fix the bug"
        assert data["priority"] == "P1"
        assert data["labels"] == ["backend"]

    def test_create_is_journaled_under_session(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, root = cli_in_project
        result = runner.invoke(cli, ["--session", "ses-cli", "create", "Logged", "--json"])
        issue_id = json.loads(result.output)["id"]
        with TodoDB.open(root) as db:
            action = db.get_last_action("ses-cli")
            assert action is not None
            assert action.entity_id == issue_id

    def test_show_missing(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        result = runner.invoke(cli, ["show", "td-00000000"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_list_filters(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        runner.invoke(cli, ["create", "A bug", "--type", "bug"])
        runner.invoke(cli, ["create", "A task"])
        result = runner.invoke(cli, ["list", "--type", "bug", "--json"])
        assert result.exit_code == 0
        assert [i["title"] for i in json.loads(result.output)] == ["A bug"]

    def test_list_bad_sort(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        result = runner.invoke(cli, ["list", "--sort", "nope"])
        assert result.exit_code == 1
        assert "invalid sort column" in result.output


class TestUpdate:
    def test_close_cascades_to_epic(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, root = cli_in_project
        with TodoDB.open(root) as db:
            epic = db.create_issue(Issue(title="Epic", type=TYPE_EPIC))
            child = db.create_issue(Issue(title="Child", parent_id=epic.id))

        result = runner.invoke(cli, ["update", child.id, "--status", "closed", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "closed"
        assert data["closed_at"]
        assert data["cascaded"] == [epic.id]

        with TodoDB.open(root) as db:
            assert db.get_issue(epic.id).status == "closed"

    def test_reopen_clears_closed_at(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        issue_id = _extract_id(runner.invoke(cli, ["create", "Reopen me"]).output)
        runner.invoke(cli, ["update", issue_id, "--status", "closed"])
        result = runner.invoke(cli, ["update", issue_id, "--status", "open", "--json"])
        assert json.loads(result.output)["closed_at"] is None

    def test_update_missing(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        result = runner.invoke(cli, ["update", "td-00000000", "--title", "x"])
        assert result.exit_code == 1


class TestDeleteRestore:
    def test_delete_and_restore(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, root = cli_in_project
        issue_id = _extract_id(runner.invoke(cli, ["create", "Temp"]).output)
        assert runner.invoke(cli, ["delete", issue_id]).exit_code == 0
        listed = json.loads(runner.invoke(cli, ["list", "--json"]).output)
        assert issue_id not in [i["id"] for i in listed]
        assert runner.invoke(cli, ["restore", issue_id]).exit_code == 0
        with TodoDB.open(root) as db:
            assert db.get_issue(issue_id).deleted_at is None


class TestInfoCommands:
    def test_undo_info(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        assert "Nothing to undo" in runner.invoke(cli, ["undo-info"]).output
        runner.invoke(cli, ["create", "Undoable"])
        data = json.loads(runner.invoke(cli, ["undo-info", "--json"]).output)
        assert data["action_type"] == "create"
        assert data["session_id"] == "cli"

    def test_pending(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        runner.invoke(cli, ["create", "One"])
        runner.invoke(cli, ["create", "Two"])
        assert json.loads(runner.invoke(cli, ["pending", "--json"]).output) == {"pending": 2}

    def test_stats(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = cli_in_project
        runner.invoke(cli, ["create", "One"])
        data = json.loads(runner.invoke(cli, ["stats", "--json"]).output)
        assert data["total"] == 1
        extended = json.loads(runner.invoke(cli, ["stats", "--extended", "--json"]).output)
        assert extended["by_status"] == {"open": 1}

    def test_lock_status(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, root = cli_in_project
        assert json.loads(runner.invoke(cli, ["lock-status", "--json"]).output) == {"locked": False, "holder": ""}
        lock = WriteLock(root / TODOS_DIR_NAME)
        with lock.held():
            data = json.loads(runner.invoke(cli, ["lock-status", "--json"]).output)
        assert data["locked"] is True
        assert data["holder"].startswith("pid:")


class TestSidebandRecording:
    def test_usage_recorded(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, root = cli_in_project
        runner.invoke(cli, ["--session", "ses-x", "list", "--status=open", "--api-key=secret"])
        events = read_command_usage(root)
        assert events[0]["cmd"] == "list"
        assert events[0]["ok"] is True
        assert events[0]["session"] == "ses-x"
        assert events[0]["flags"]["status"] == "open"
        assert events[0]["flags"]["api-key"] == "[REDACTED]"

    def test_failure_recorded(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, root = cli_in_project
        runner.invoke(cli, ["show", "td-00000000"])
        events = read_command_usage(root)
        assert events[0]["ok"] is False
        assert "not found" in events[0]["err"]
        errors = read_agent_errors(root)
        assert errors[0]["args"] == ["show", "td-00000000"]

    def test_analytics_disabled(self, cli_in_project: tuple[CliRunner, Path], monkeypatch: pytest.MonkeyPatch) -> None:
        runner, root = cli_in_project
        monkeypatch.setenv("TD_ANALYTICS", "off")
        runner.invoke(cli, ["list"])
        assert read_command_usage(root) == []


class TestOpenFailures:
    def test_lock_timeout_reported_and_recorded(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, root = cli_in_project
        # Force a pending migration so opening the database needs the write lock.
        with TodoDB.open(root) as db:
            db.conn.execute("UPDATE schema_info SET value = ? WHERE key = 'version'", (str(CURRENT_SCHEMA_VERSION - 1),))
            db.conn.commit()
        holder = WriteLock(root / TODOS_DIR_NAME)
        with holder.held():
            result = runner.invoke(cli, ["list"])
        assert result.exit_code == 1
        assert "timeout" in result.output
        errors = read_agent_errors(root)
        assert errors[0]["args"] == ["list"]
        assert "timeout" in errors[0]["error"]

    def test_session_stamped_on_log_lines(self, cli_in_project: tuple[CliRunner, Path]) -> None:
        runner, root = cli_in_project
        runner.invoke(cli, ["--session", "ses-log", "create", "Logged line"])
        for handler in logging.getLogger("tdcore").handlers:
            handler.flush()
        lines = [json.loads(line) for line in (root / TODOS_DIR_NAME / "tdcore.log").read_text().splitlines()]
        assert lines
        assert all(line.get("session") == "ses-log" for line in lines)
