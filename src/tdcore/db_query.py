"""QueryMixin — filtered issue listing and search.

``ListIssuesOptions`` is composed into a single SQL predicate: multi-value
filters OR within themselves and AND across each other. The epic filter
expands recursively to descendant ids before the query runs.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from tdcore.db_base import DBMixinProtocol, _placeholders
from tdcore.errors import InvalidInputError
from tdcore.ids import format_timestamp, normalize_issue_id
from tdcore.models import ISSUE_COLUMNS, STATUS_CLOSED, STATUS_IN_REVIEW, Issue, issue_from_row

SORT_COLUMNS = frozenset(
    {
        "id",
        "title",
        "status",
        "type",
        "priority",
        "points",
        "created_at",
        "updated_at",
        "closed_at",
        "deleted_at",
        "due_date",
        "defer_until",
    }
)
DEFAULT_SORT = "priority"

# Score ladder for ranked search
SCORE_EXACT_ID = 100
SCORE_ID_CONTAINS = 90
SCORE_EXACT_TITLE = 80
SCORE_TITLE_PREFIX = 70
SCORE_TITLE_CONTAINS = 60
SCORE_DESCRIPTION = 40
SCORE_LABELS = 20


@dataclass
class ListIssuesOptions:
    """Filters for ``list_issues``. Empty values mean "no constraint"."""

    status: list[str] = field(default_factory=list)
    type: list[str] = field(default_factory=list)
    ids: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    priority: str = ""  # "P1", "<=P2" or ">=P1"
    search: str = ""
    implementer: str = ""
    reviewer: str = ""
    reviewable_by: str = ""
    parent_id: str = ""
    epic_id: str = ""
    points_min: int = 0
    points_max: int = 0
    created_after: datetime | str | None = None
    created_before: datetime | str | None = None
    updated_after: datetime | str | None = None
    updated_before: datetime | str | None = None
    closed_after: datetime | str | None = None
    closed_before: datetime | str | None = None
    include_deleted: bool = False
    only_deleted: bool = False
    exclude_deferred: bool = False
    deferred_only: bool = False
    overdue_only: bool = False
    surfacing_only: bool = False
    due_soon_days: int = 0
    sort_by: str = ""
    sort_desc: bool = False
    limit: int = 0


@dataclass
class RankedIssue:
    issue: Issue
    score: int
    match_field: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"issue": self.issue.to_dict(), "score": self.score, "match_field": self.match_field}


def _today() -> date:
    return datetime.now().astimezone().date()


def _ts_param(value: datetime | str) -> str:
    return format_timestamp(value) if isinstance(value, datetime) else value


def score_issue(issue: Issue, query: str) -> tuple[int, str]:
    """Best-match score for *issue* against *query* (case-insensitive)."""
    q = query.lower()
    if not q:
        return 0, ""
    issue_id = issue.id.lower()
    title = issue.title.lower()
    if issue_id == q:
        return SCORE_EXACT_ID, "id"
    if q in issue_id:
        return SCORE_ID_CONTAINS, "id"
    if title == q:
        return SCORE_EXACT_TITLE, "title"
    if title.startswith(q):
        return SCORE_TITLE_PREFIX, "title"
    if q in title:
        return SCORE_TITLE_CONTAINS, "title"
    if q in issue.description.lower():
        return SCORE_DESCRIPTION, "description"
    if any(q in label.lower() for label in issue.labels):
        return SCORE_LABELS, "labels"
    return 0, ""


class QueryMixin(DBMixinProtocol):
    """Issue listing, search and ranked search."""

    if TYPE_CHECKING:

        def get_descendants(self, parent_id: str) -> list[str]: ...

    def _build_list_query(self, opts: ListIssuesOptions, *, search_labels: bool = False) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        args: list[Any] = []

        if opts.only_deleted:
            clauses.append("deleted_at IS NOT NULL")
        elif not opts.include_deleted:
            clauses.append("deleted_at IS NULL")

        for column, values in (("status", opts.status), ("type", opts.type)):
            if values:
                clauses.append(f"{column} IN ({_placeholders(values)})")
                args.extend(values)
        if opts.ids:
            ids = [normalize_issue_id(i) for i in opts.ids]
            clauses.append(f"id IN ({_placeholders(ids)})")
            args.extend(ids)

        if opts.priority:
            if opts.priority.startswith("<="):
                clauses.append("priority <= ?")
                args.append(opts.priority[2:])
            elif opts.priority.startswith(">="):
                clauses.append("priority >= ?")
                args.append(opts.priority[2:])
            else:
                clauses.append("priority = ?")
                args.append(opts.priority)

        for label in opts.labels:
            clauses.append("(labels LIKE ? OR labels LIKE ? OR labels LIKE ? OR labels = ?)")
            args.extend([f"{label},%", f"%,{label},%", f"%,{label}", label])

        if opts.search:
            pattern = f"%{opts.search}%"
            if search_labels:
                clauses.append("(id LIKE ? OR title LIKE ? OR description LIKE ? OR labels LIKE ?)")
                args.extend([pattern] * 4)
            else:
                clauses.append("(id LIKE ? OR title LIKE ? OR description LIKE ?)")
                args.extend([pattern] * 3)

        if opts.implementer:
            clauses.append("implementer_session = ?")
            args.append(opts.implementer)
        if opts.reviewer:
            clauses.append("reviewer_session = ?")
            args.append(opts.reviewer)
        if opts.reviewable_by:
            clauses.append(
                "status = ? AND implementer_session != '' AND ("
                "minor = 1 OR ("
                "implementer_session != ? "
                "AND (creator_session = '' OR creator_session IS NULL OR creator_session != ?) "
                "AND NOT EXISTS (SELECT 1 FROM issue_session_history "
                "WHERE issue_id = issues.id AND session_id = ?)))"
            )
            args.extend([STATUS_IN_REVIEW, opts.reviewable_by, opts.reviewable_by, opts.reviewable_by])

        if opts.parent_id:
            clauses.append("parent_id = ?")
            args.append(normalize_issue_id(opts.parent_id))
        if opts.epic_id:
            descendants = self.get_descendants(opts.epic_id)
            if descendants:
                clauses.append(f"id IN ({_placeholders(descendants)})")
                args.extend(descendants)
            else:
                clauses.append("1=0")

        if opts.points_min > 0:
            clauses.append("points >= ?")
            args.append(opts.points_min)
        if opts.points_max > 0:
            clauses.append("points <= ?")
            args.append(opts.points_max)

        for column, op, value in (
            ("created_at", ">=", opts.created_after),
            ("created_at", "<=", opts.created_before),
            ("updated_at", ">=", opts.updated_after),
            ("updated_at", "<=", opts.updated_before),
            ("closed_at", ">=", opts.closed_after),
            ("closed_at", "<=", opts.closed_before),
        ):
            if value:
                clauses.append(f"{column} {op} ?")
                args.append(_ts_param(value))

        today = _today()
        today_s = today.isoformat()
        if opts.exclude_deferred:
            clauses.append("(defer_until IS NULL OR defer_until = '' OR defer_until <= ?)")
            args.append(today_s)
        if opts.deferred_only:
            clauses.append("(defer_until IS NOT NULL AND defer_until > ?)")
            args.append(today_s)
        if opts.overdue_only:
            clauses.append("(due_date IS NOT NULL AND due_date != '' AND due_date < ? AND status != ?)")
            args.extend([today_s, STATUS_CLOSED])
        if opts.surfacing_only:
            clauses.append(
                "(defer_until IS NOT NULL AND defer_until != '' AND defer_until <= ? AND defer_count >= 1)"
            )
            args.append(today_s)
        if opts.due_soon_days > 0:
            horizon = (today + timedelta(days=opts.due_soon_days)).isoformat()
            clauses.append("(due_date IS NOT NULL AND due_date >= ? AND due_date <= ? AND status != ?)")
            args.extend([today_s, horizon, STATUS_CLOSED])

        sort_col = opts.sort_by or DEFAULT_SORT
        if sort_col not in SORT_COLUMNS:
            msg = f"invalid sort column: {sort_col}"
            raise InvalidInputError(msg)
        direction = "DESC" if opts.sort_desc else "ASC"

        where = " AND ".join(clauses) if clauses else "1=1"
        # S608: column names come from SORT_COLUMNS, values are bound
        sql = f"SELECT {ISSUE_COLUMNS} FROM issues WHERE {where} ORDER BY {sort_col} {direction}, id ASC"  # noqa: S608
        return sql, args

    def list_issues(self, opts: ListIssuesOptions | None = None) -> list[Issue]:
        opts = opts or ListIssuesOptions()
        sql, args = self._build_list_query(opts)
        if opts.limit > 0:
            sql += " LIMIT ?"
            args.append(opts.limit)
        return [issue_from_row(row) for row in self.conn.execute(sql, args).fetchall()]

    def search_issues(self, query: str, opts: ListIssuesOptions | None = None) -> list[Issue]:
        """``list_issues`` with a ``LIKE %query%`` match on id, title and description."""
        opts = dataclasses.replace(opts or ListIssuesOptions(), search=query)
        return self.list_issues(opts)

    def search_issues_ranked(self, query: str, opts: ListIssuesOptions | None = None) -> list[RankedIssue]:
        """Search and order by match quality, ties broken by priority.

        Scores: exact id 100, id contains 90, exact title 80, title prefix 70,
        title contains 60, description 40, labels 20.
        """
        opts = dataclasses.replace(opts or ListIssuesOptions(), search=query)
        sql, args = self._build_list_query(opts, search_labels=True)
        issues = [issue_from_row(row) for row in self.conn.execute(sql, args).fetchall()]

        ranked = [RankedIssue(issue, *score_issue(issue, query)) for issue in issues]
        ranked.sort(key=lambda r: (-r.score, r.issue.priority))
        if opts.limit > 0:
            ranked = ranked[: opts.limit]
        return ranked
