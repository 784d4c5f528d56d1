"""TypedDicts for the sideband JSONL records (``tdcore.sideband``)."""

from __future__ import annotations

from typing import NotRequired, TypedDict

from tdcore.types.core import ISOTimestamp


class CommandUsageEvent(TypedDict):
    """One line of ``.todos/command_usage.jsonl``."""

    ts: ISOTimestamp
    cmd: str
    ok: bool
    dur_ms: int
    sub: NotRequired[str]
    flags: NotRequired[dict[str, str]]
    session: NotRequired[str]
    err: NotRequired[str]


class AgentErrorEvent(TypedDict):
    """One line of ``.todos/agent_errors.jsonl``."""

    ts: ISOTimestamp
    args: list[str]
    error: str
    session: NotRequired[str]


class AnalyticsSummary(TypedDict):
    total_commands: int
    unique_commands: int
    by_command: dict[str, int]
    by_flag: dict[str, int]
    daily: dict[str, int]
    error_rate: float
    errors_by_command: dict[str, int]
    by_session: dict[str, int]
    avg_dur_ms: int
    never_used: list[str]
