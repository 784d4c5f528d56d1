"""Foundational TypedDicts for dataclass to_dict() returns and stats."""

from __future__ import annotations

from typing import NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)

# Flat counts keyed by status name, ``type_<type>`` and ``total``
StatsResult = dict[str, int]


class IssueDict(TypedDict):
    id: str
    title: str
    description: str
    status: str
    type: str
    priority: str
    points: int
    labels: list[str]
    parent_id: str
    acceptance: str
    sprint: str
    implementer_session: str
    creator_session: str
    reviewer_session: str
    created_at: str
    updated_at: str
    closed_at: str | None
    deleted_at: str | None
    minor: bool
    created_branch: str
    defer_until: str | None
    due_date: str | None
    defer_count: int


class ExtendedStats(TypedDict):
    """Dashboard statistics returned by ``get_extended_stats()``."""

    total: int
    total_points: int
    created_today: int
    created_this_week: int
    total_logs: int
    total_handoffs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    by_priority: dict[str, int]
    oldest_open: IssueDict | None
    newest_task: IssueDict | None
    last_closed: IssueDict | None
    avg_points_per_task: float
    completion_rate: float
    most_active_session: str
