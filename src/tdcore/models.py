"""Entity dataclasses and vocabulary constants.

Every entity exposes ``to_dict()``: the canonical JSON view that the
matching getter returns and that action-log payloads carry. Optional
timestamps that are unset serialize as ``None``.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any

from tdcore.types.core import IssueDict

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in_progress"
STATUS_BLOCKED = "blocked"
STATUS_IN_REVIEW = "in_review"
STATUS_CLOSED = "closed"
VALID_STATUSES = frozenset({STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_BLOCKED, STATUS_IN_REVIEW, STATUS_CLOSED})

TYPE_BUG = "bug"
TYPE_FEATURE = "feature"
TYPE_TASK = "task"
TYPE_EPIC = "epic"
TYPE_CHORE = "chore"
VALID_TYPES = frozenset({TYPE_BUG, TYPE_FEATURE, TYPE_TASK, TYPE_EPIC, TYPE_CHORE})

PRIORITY_DEFAULT = "P2"
VALID_PRIORITIES = frozenset({"P0", "P1", "P2", "P3", "P4"})

LOG_PROGRESS = "progress"
LOG_BLOCKER = "blocker"
LOG_DECISION = "decision"
LOG_HYPOTHESIS = "hypothesis"
LOG_TRIED = "tried"
LOG_RESULT = "result"
LOG_SECURITY = "security"
LOG_ORCHESTRATION = "orchestration"

FILE_ROLE_IMPLEMENTATION = "implementation"
FILE_ROLE_TEST = "test"
FILE_ROLE_REFERENCE = "reference"
FILE_ROLE_CONFIG = "config"

RELATION_DEPENDS_ON = "depends_on"

VIEW_SWIMLANES = "swimlanes"
VIEW_BACKLOG = "backlog"
VALID_VIEW_MODES = frozenset({VIEW_SWIMLANES, VIEW_BACKLOG})

ALL_ISSUES_BOARD_ID = "bd-all-issues"
ALL_ISSUES_BOARD_NAME = "All Issues"

# Action-log action types
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_RESTORE = "restore"
ACTION_START = "start"
ACTION_REVIEW = "review"
ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
ACTION_BLOCK = "block"
ACTION_UNBLOCK = "unblock"
ACTION_CLOSE = "close"
ACTION_REOPEN = "reopen"
ACTION_ADD_DEP = "add_dependency"
ACTION_REMOVE_DEP = "remove_dependency"
ACTION_LINK_FILE = "link_file"
ACTION_UNLINK_FILE = "unlink_file"
ACTION_HANDOFF = "handoff"
ACTION_BOARD_CREATE = "board_create"
ACTION_BOARD_DELETE = "board_delete"
ACTION_BOARD_UPDATE = "board_update"
ACTION_BOARD_SET_POSITION = "board_set_position"
ACTION_BOARD_UNPOSITION = "board_unposition"
ACTION_WORK_SESSION_TAG = "work_session_tag"
ACTION_WORK_SESSION_UNTAG = "work_session_untag"

# Action-log entity tags
ENTITY_ISSUE = "issue"
ENTITY_DEPENDENCY = "issue_dependencies"
ENTITY_FILE = "issue_files"
ENTITY_BOARD = "board"
ENTITY_BOARD_POSITION = "board_issue_positions"
ENTITY_NOTE = "note"
ENTITY_LOG = "logs"
ENTITY_COMMENT = "comments"
ENTITY_HANDOFF = "handoff"
ENTITY_WORK_SESSION = "work_sessions"
ENTITY_WORK_SESSION_ISSUE = "work_session_issues"

# Entity types GetLastAction / GetRecentActions never offer for undo
NON_UNDOABLE_ENTITY_TYPES = (ENTITY_LOG, ENTITY_COMMENT, ENTITY_WORK_SESSION)

# issue_session_history actions
SESSION_CREATED = "created"
SESSION_STARTED = "started"
SESSION_UNSTARTED = "unstarted"
SESSION_REVIEWED = "reviewed"


def _split_labels(raw: str | None) -> list[str]:
    return [label for label in (raw or "").split(",") if label]


def join_labels(labels: list[str]) -> str:
    return ",".join(labels)


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


@dataclass
class Issue:
    title: str
    id: str = ""
    description: str = ""
    status: str = ""
    type: str = ""
    priority: str = ""
    points: int = 0
    labels: list[str] = field(default_factory=list)
    parent_id: str = ""
    acceptance: str = ""
    sprint: str = ""
    implementer_session: str = ""
    creator_session: str = ""
    reviewer_session: str = ""
    created_at: str = ""
    updated_at: str = ""
    closed_at: str | None = None
    deleted_at: str | None = None
    minor: bool = False
    created_branch: str = ""
    defer_until: str | None = None
    due_date: str | None = None
    defer_count: int = 0

    def to_dict(self) -> IssueDict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "type": self.type,
            "priority": self.priority,
            "points": self.points,
            "labels": list(self.labels),
            "parent_id": self.parent_id,
            "acceptance": self.acceptance,
            "sprint": self.sprint,
            "implementer_session": self.implementer_session,
            "creator_session": self.creator_session,
            "reviewer_session": self.reviewer_session,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "closed_at": self.closed_at,
            "deleted_at": self.deleted_at,
            "minor": self.minor,
            "created_branch": self.created_branch,
            "defer_until": self.defer_until,
            "due_date": self.due_date,
            "defer_count": self.defer_count,
        }


ISSUE_COLUMNS = (
    "id, title, description, status, type, priority, points, labels, parent_id, acceptance, sprint, "
    "implementer_session, creator_session, reviewer_session, created_at, updated_at, closed_at, "
    "deleted_at, minor, created_branch, defer_until, due_date, defer_count"
)


def issue_from_row(row: sqlite3.Row) -> Issue:
    """Build an Issue from a row selected with ``ISSUE_COLUMNS``."""
    return Issue(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        type=row["type"],
        priority=row["priority"],
        points=row["points"] or 0,
        labels=_split_labels(row["labels"]),
        parent_id=row["parent_id"] or "",
        acceptance=row["acceptance"] or "",
        sprint=row["sprint"] or "",
        implementer_session=row["implementer_session"] or "",
        creator_session=row["creator_session"] or "",
        reviewer_session=row["reviewer_session"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        closed_at=row["closed_at"],
        deleted_at=row["deleted_at"],
        minor=bool(row["minor"]),
        created_branch=row["created_branch"] or "",
        defer_until=row["defer_until"] or None,
        due_date=row["due_date"] or None,
        defer_count=row["defer_count"] or 0,
    )


# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------


@dataclass
class IssueDependency:
    id: str
    issue_id: str
    depends_on_id: str
    relation_type: str = RELATION_DEPENDS_ON

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "depends_on_id": self.depends_on_id,
            "relation_type": self.relation_type,
        }


@dataclass
class IssueFile:
    id: str
    issue_id: str
    file_path: str
    role: str = FILE_ROLE_IMPLEMENTATION
    linked_sha: str = ""
    linked_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "file_path": self.file_path,
            "role": self.role,
            "linked_sha": self.linked_sha,
            "linked_at": self.linked_at,
        }


@dataclass
class IssueSessionHistory:
    id: str
    issue_id: str
    session_id: str
    action: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "session_id": self.session_id,
            "action": self.action,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


@dataclass
class Log:
    message: str
    issue_id: str = ""
    session_id: str = ""
    work_session_id: str = ""
    type: str = LOG_PROGRESS
    id: str = ""
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "session_id": self.session_id,
            "work_session_id": self.work_session_id,
            "message": self.message,
            "type": self.type,
            "timestamp": self.timestamp,
        }


@dataclass
class Handoff:
    issue_id: str
    session_id: str = ""
    done: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    uncertain: list[str] = field(default_factory=list)
    id: str = ""
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "session_id": self.session_id,
            "done": list(self.done),
            "remaining": list(self.remaining),
            "decisions": list(self.decisions),
            "uncertain": list(self.uncertain),
            "timestamp": self.timestamp,
        }


@dataclass
class Comment:
    issue_id: str
    text: str
    session_id: str = ""
    id: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "session_id": self.session_id,
            "text": self.text,
            "created_at": self.created_at,
        }


@dataclass
class GitSnapshot:
    issue_id: str
    event: str
    commit_sha: str
    branch: str
    dirty_files: int = 0
    id: str = ""
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "event": self.event,
            "commit_sha": self.commit_sha,
            "branch": self.branch,
            "dirty_files": self.dirty_files,
            "timestamp": self.timestamp,
        }


@dataclass
class ActionLog:
    session_id: str
    action_type: str
    entity_type: str
    entity_id: str
    previous_data: str = ""
    new_data: str = ""
    id: str = ""
    timestamp: str = ""
    undone: bool = False
    synced_at: str | None = None
    server_seq: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "action_type": self.action_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "previous_data": self.previous_data,
            "new_data": self.new_data,
            "timestamp": self.timestamp,
            "undone": self.undone,
            "synced_at": self.synced_at,
            "server_seq": self.server_seq,
        }


# ---------------------------------------------------------------------------
# Boards
# ---------------------------------------------------------------------------


@dataclass
class Board:
    id: str
    name: str
    query: str = ""
    is_builtin: bool = False
    view_mode: str = VIEW_SWIMLANES
    last_viewed_at: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "query": self.query,
            "is_builtin": self.is_builtin,
            "view_mode": self.view_mode,
            "last_viewed_at": self.last_viewed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class BoardIssuePosition:
    id: str
    board_id: str
    issue_id: str
    position: int
    added_at: str = ""
    deleted_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "issue_id": self.issue_id,
            "position": self.position,
            "added_at": self.added_at,
            "deleted_at": self.deleted_at,
        }


@dataclass
class BoardIssueView:
    """An issue as it appears on a board, with its explicit position if any."""

    board_id: str
    issue: Issue
    position: int = 0
    has_position: bool = False
    category: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "board_id": self.board_id,
            "position": self.position,
            "has_position": self.has_position,
            "issue": self.issue.to_dict(),
            "category": self.category,
        }


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


@dataclass
class Note:
    id: str
    title: str
    content: str = ""
    created_at: str = ""
    updated_at: str = ""
    pinned: bool = False
    archived: bool = False
    deleted_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "pinned": self.pinned,
            "archived": self.archived,
            "deleted_at": self.deleted_at,
        }


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class WorkSession:
    name: str
    session_id: str = ""
    id: str = ""
    started_at: str = ""
    ended_at: str | None = None
    start_sha: str = ""
    end_sha: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "session_id": self.session_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "start_sha": self.start_sha,
            "end_sha": self.end_sha,
        }


@dataclass
class Session:
    id: str
    name: str = ""
    branch: str = ""
    agent_type: str = ""
    agent_pid: int = 0
    context_id: str = ""
    previous_session_id: str = ""
    started_at: str = ""
    ended_at: str | None = None
    last_activity: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "branch": self.branch,
            "agent_type": self.agent_type,
            "agent_pid": self.agent_pid,
            "context_id": self.context_id,
            "previous_session_id": self.previous_session_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "last_activity": self.last_activity,
        }


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@dataclass
class SyncState:
    project_id: str
    last_pushed_action_id: int = 0
    last_pulled_server_seq: int = 0
    last_sync_at: str | None = None
    sync_disabled: bool = False


@dataclass
class SyncConflict:
    id: int
    entity_type: str
    entity_id: str
    server_seq: int
    local_data: str
    remote_data: str
    overwritten_at: str


@dataclass
class SyncHistoryEntry:
    direction: str
    action_type: str
    entity_type: str
    entity_id: str
    server_seq: int = 0
    device_id: str = ""
    timestamp: str = ""
    id: int = 0
