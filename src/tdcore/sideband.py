"""Sideband JSONL logs kept next to the database.

``.todos/command_usage.jsonl`` records one line per CLI invocation and
``.todos/agent_errors.jsonl`` one line per failed command. Both are
append-only, best effort and never touch the database: writes are dropped
when ``.todos/`` does not exist, write failures are logged and swallowed,
and readers skip lines that do not parse.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import Counter
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

from tdcore.ids import action_log_timestamp_now, parse_timestamp
from tdcore.types.events import AgentErrorEvent, AnalyticsSummary, CommandUsageEvent

logger = logging.getLogger(__name__)

TODOS_DIR_NAME = ".todos"
COMMAND_USAGE_FILENAME = "command_usage.jsonl"
AGENT_ERRORS_FILENAME = "agent_errors.jsonl"
ANALYTICS_ENV = "TD_ANALYTICS"

REDACTED = "[REDACTED]"
SENSITIVE_KEYWORDS = ("password", "token", "secret", "key", "cred", "auth", "api-key", "private")

_DISABLED_VALUES = frozenset({"false", "0", "off", "no"})


def analytics_enabled() -> bool:
    """True unless ``TD_ANALYTICS`` is set to false/0/off/no (any case)."""
    return os.environ.get(ANALYTICS_ENV, "").lower() not in _DISABLED_VALUES


def sanitize_flags(flags: dict[str, str]) -> dict[str, str]:
    """Copy of *flags* with values of sensitive-looking flag names redacted."""
    return {
        name: REDACTED if any(word in name.lower() for word in SENSITIVE_KEYWORDS) else value
        for name, value in flags.items()
    }


# ---------------------------------------------------------------------------
# JSONL plumbing
# ---------------------------------------------------------------------------


def _append_line(base_dir: Path, filename: str, record: dict[str, Any]) -> None:
    todos_dir = Path(base_dir) / TODOS_DIR_NAME
    if not todos_dir.is_dir():
        return
    try:
        line = json.dumps(record)
        with (todos_dir / filename).open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
    except (OSError, TypeError) as exc:
        logger.warning("Failed to append to %s: %s", filename, exc, extra={"op": "sideband", "error": str(exc)})


def _read_lines(base_dir: Path, filename: str) -> Iterator[dict[str, Any]]:
    path = Path(base_dir) / TODOS_DIR_NAME / filename
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            yield record


def _is_before(record: dict[str, Any], since: datetime) -> bool:
    try:
        return parse_timestamp(str(record.get("ts", ""))) < since
    except ValueError:
        return True


def _newest_first(
    records: Iterable[dict[str, Any]], *, limit: int, since: datetime | None, session: str
) -> list[dict[str, Any]]:
    selected: list[dict[str, Any]] = []
    for record in reversed(list(records)):
        if session and record.get("session", "") != session:
            continue
        if since is not None and _is_before(record, since):
            continue
        selected.append(record)
        if limit > 0 and len(selected) >= limit:
            break
    return selected


def _remove(base_dir: Path, filename: str) -> None:
    (Path(base_dir) / TODOS_DIR_NAME / filename).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Command usage
# ---------------------------------------------------------------------------


def log_command_usage(base_dir: Path, event: CommandUsageEvent) -> None:
    """Append one usage event; ``ts`` is filled in when missing."""
    record: dict[str, Any] = dict(event)
    record.setdefault("ts", action_log_timestamp_now())
    _append_line(base_dir, COMMAND_USAGE_FILENAME, record)


def log_command_usage_async(base_dir: Path, event: CommandUsageEvent) -> threading.Thread:
    """Append on a daemon thread so the caller never waits on disk."""
    thread = threading.Thread(target=log_command_usage, args=(base_dir, event), daemon=True)
    thread.start()
    return thread


def read_command_usage(
    base_dir: Path, limit: int = 0, since: datetime | None = None, session: str = ""
) -> list[CommandUsageEvent]:
    """Usage events newest first, optionally limited and filtered."""
    records = _newest_first(_read_lines(base_dir, COMMAND_USAGE_FILENAME), limit=limit, since=since, session=session)
    return [_as_usage(r) for r in records]


def _as_usage(record: dict[str, Any]) -> CommandUsageEvent:
    event: CommandUsageEvent = {
        "ts": record.get("ts", ""),
        "cmd": record.get("cmd", ""),
        "ok": bool(record.get("ok", False)),
        "dur_ms": int(record.get("dur_ms", 0) or 0),
    }
    for key in ("sub", "session", "err"):
        if record.get(key):
            event[key] = str(record[key])  # type: ignore[literal-required]
    if isinstance(record.get("flags"), dict):
        event["flags"] = {str(k): str(v) for k, v in record["flags"].items()}
    return event


def clear_command_usage(base_dir: Path) -> None:
    _remove(base_dir, COMMAND_USAGE_FILENAME)


def count_command_usage(base_dir: Path) -> int:
    return sum(1 for _ in _read_lines(base_dir, COMMAND_USAGE_FILENAME))


def compute_analytics_summary(
    events: list[CommandUsageEvent], all_commands: Iterable[str] = ()
) -> AnalyticsSummary:
    """Aggregate usage events into per-command, per-flag, per-day and per-session counts."""
    by_command: Counter[str] = Counter()
    by_flag: Counter[str] = Counter()
    daily: Counter[str] = Counter()
    errors: Counter[str] = Counter()
    by_session: Counter[str] = Counter()
    total_duration = 0
    error_count = 0

    for event in events:
        key = f"{event['cmd']} {event['sub']}" if event.get("sub") else event["cmd"]
        by_command[key] += 1
        for flag in event.get("flags", {}):
            by_flag[f"--{flag}"] += 1
        daily[str(event["ts"])[:10]] += 1
        if not event["ok"]:
            error_count += 1
            errors[key] += 1
        if event.get("session"):
            by_session[event["session"]] += 1
        total_duration += event["dur_ms"]

    total = len(events)
    used = {key.split(" ", 1)[0] for key in by_command}
    return {
        "total_commands": total,
        "unique_commands": len(by_command),
        "by_command": dict(by_command),
        "by_flag": dict(by_flag),
        "daily": dict(daily),
        "error_rate": error_count / total if total else 0.0,
        "errors_by_command": dict(errors),
        "by_session": dict(by_session),
        "avg_dur_ms": total_duration // total if total else 0,
        "never_used": [cmd for cmd in all_commands if cmd not in used] if total else [],
    }


# ---------------------------------------------------------------------------
# Agent errors
# ---------------------------------------------------------------------------


def log_agent_error(base_dir: Path, args: list[str], error: str, session: str = "") -> None:
    record: dict[str, Any] = {"ts": action_log_timestamp_now(), "args": list(args), "error": error}
    if session:
        record["session"] = session
    _append_line(base_dir, AGENT_ERRORS_FILENAME, record)


def read_agent_errors(
    base_dir: Path, session: str = "", since: datetime | None = None, limit: int = 0
) -> list[AgentErrorEvent]:
    """Failed commands newest first, optionally filtered by session and time."""
    records = _newest_first(_read_lines(base_dir, AGENT_ERRORS_FILENAME), limit=limit, since=since, session=session)
    errors: list[AgentErrorEvent] = []
    for record in records:
        entry: AgentErrorEvent = {
            "ts": record.get("ts", ""),
            "args": [str(a) for a in record.get("args", [])],
            "error": str(record.get("error", "")),
        }
        if record.get("session"):
            entry["session"] = str(record["session"])
        errors.append(entry)
    return errors


def clear_agent_errors(base_dir: Path) -> None:
    _remove(base_dir, AGENT_ERRORS_FILENAME)


def count_agent_errors(base_dir: Path) -> int:
    return sum(1 for _ in _read_lines(base_dir, AGENT_ERRORS_FILENAME))
