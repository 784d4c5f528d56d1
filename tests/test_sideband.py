"""Command-usage and agent-error JSONL sideband logs."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tdcore.sideband import (
    AGENT_ERRORS_FILENAME,
    COMMAND_USAGE_FILENAME,
    REDACTED,
    analytics_enabled,
    clear_agent_errors,
    clear_command_usage,
    compute_analytics_summary,
    count_agent_errors,
    count_command_usage,
    log_agent_error,
    log_command_usage,
    log_command_usage_async,
    read_agent_errors,
    read_command_usage,
    sanitize_flags,
)
from tdcore.types.core import ISOTimestamp
from tdcore.types.events import CommandUsageEvent


def _event(cmd: str, *, ok: bool = True, session: str = "", ts: str = "", **extra: object) -> CommandUsageEvent:
    event: CommandUsageEvent = {
        "ts": ISOTimestamp(ts or "2024-05-01T10:00:00.000000Z"),
        "cmd": cmd,
        "ok": ok,
        "dur_ms": 10,
    }
    if session:
        event["session"] = session
    event.update(extra)  # type: ignore[typeddict-item]
    return event


class TestAnalyticsToggle:
    @pytest.mark.parametrize("value", ["false", "0", "OFF", "no"])
    def test_disabled_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("TD_ANALYTICS", value)
        assert not analytics_enabled()

    def test_enabled_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TD_ANALYTICS", raising=False)
        assert analytics_enabled()


class TestSanitizeFlags:
    def test_sensitive_names_redacted(self) -> None:
        flags = sanitize_flags({"api-key": "abc", "Password": "x", "status": "open"})
        assert flags == {"api-key": REDACTED, "Password": REDACTED, "status": "open"}


class TestCommandUsage:
    def test_skipped_without_todos_dir(self, tmp_path: Path) -> None:
        log_command_usage(tmp_path, _event("list"))
        assert not (tmp_path / ".todos").exists()

    def test_append_and_read_newest_first(self, todo_project: Path) -> None:
        log_command_usage(todo_project, _event("create", session="s1"))
        log_command_usage(todo_project, _event("list", session="s2"))
        events = read_command_usage(todo_project)
        assert [e["cmd"] for e in events] == ["list", "create"]
        assert [e["cmd"] for e in read_command_usage(todo_project, session="s1")] == ["create"]
        assert len(read_command_usage(todo_project, limit=1)) == 1
        assert count_command_usage(todo_project) == 2

    def test_since_filter(self, todo_project: Path) -> None:
        now = datetime.now(UTC)
        log_command_usage(todo_project, _event("old", ts="2000-01-01T00:00:00.000000Z"))
        log_command_usage(todo_project, _event("new", ts=now.strftime("%Y-%m-%dT%H:%M:%S.%fZ")))
        events = read_command_usage(todo_project, since=now - timedelta(minutes=1))
        assert [e["cmd"] for e in events] == ["new"]

    def test_bad_lines_skipped(self, todo_project: Path) -> None:
        path = todo_project / ".todos" / COMMAND_USAGE_FILENAME
        path.write_text("not json\n" + json.dumps(_event("ok")) + "\n[1, 2]\n\n")
        assert [e["cmd"] for e in read_command_usage(todo_project)] == ["ok"]

    def test_async_write(self, todo_project: Path) -> None:
        log_command_usage_async(todo_project, _event("bg")).join(timeout=5)
        assert count_command_usage(todo_project) == 1

    def test_clear(self, todo_project: Path) -> None:
        log_command_usage(todo_project, _event("x"))
        clear_command_usage(todo_project)
        clear_command_usage(todo_project)
        assert count_command_usage(todo_project) == 0

    def test_write_failure_logged(self, todo_project: Path, caplog: pytest.LogCaptureFixture) -> None:
        (todo_project / ".todos" / COMMAND_USAGE_FILENAME).mkdir()
        with caplog.at_level(logging.WARNING, logger="tdcore"):
            log_command_usage(todo_project, _event("x"))
        assert "Failed to append" in caplog.text


class TestAnalyticsSummary:
    def test_summary(self) -> None:
        events = [
            _event("create", session="s1", flags={"type": "bug"}),
            _event("create", ok=False, session="s1"),
            _event("board", sub="show", session="s2"),
        ]
        summary = compute_analytics_summary(events, all_commands=["create", "board", "stats"])
        assert summary["total_commands"] == 3
        assert summary["by_command"] == {"create": 2, "board show": 1}
        assert summary["by_flag"] == {"--type": 1}
        assert summary["errors_by_command"] == {"create": 1}
        assert summary["error_rate"] == pytest.approx(1 / 3)
        assert summary["by_session"] == {"s1": 2, "s2": 1}
        assert summary["daily"] == {"2024-05-01": 3}
        assert summary["never_used"] == ["stats"]

    def test_empty(self) -> None:
        summary = compute_analytics_summary([], all_commands=["create"])
        assert summary["total_commands"] == 0
        assert summary["error_rate"] == 0.0
        assert summary["never_used"] == []


class TestAgentErrors:
    def test_round_trip(self, todo_project: Path) -> None:
        log_agent_error(todo_project, ["update", "td-1"], "issue not found: td-1", session="s1")
        log_agent_error(todo_project, ["show"], "missing argument")
        errors = read_agent_errors(todo_project)
        assert [e["error"] for e in errors] == ["missing argument", "issue not found: td-1"]
        assert read_agent_errors(todo_project, session="s1")[0]["args"] == ["update", "td-1"]
        assert count_agent_errors(todo_project) == 2
        clear_agent_errors(todo_project)
        assert count_agent_errors(todo_project) == 0
        assert not (todo_project / ".todos" / AGENT_ERRORS_FILENAME).exists()
