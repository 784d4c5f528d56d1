"""IssuesMixin — issue CRUD in logged and unlogged form.

Every public mutation has two entry points. The plain one (``create_issue``,
``update_issue`` ...) only writes the issue row; a sync receiver uses it to
apply events that are already on the wire. The ``*_logged`` one writes the
row and appends the matching action_log entry inside the same write window.
Both delegate to one ``_apply_*`` routine that takes an ``emit`` flag.

All methods access ``self.conn``, ``self._write_txn()`` and
``self._append_action()`` via Python's MRO when composed into ``TodoDB``.
"""

from __future__ import annotations

import logging
import sqlite3

from tdcore.db_base import DBMixinProtocol, _now_iso, _placeholders
from tdcore.errors import IDCollisionError, NotFoundError
from tdcore.ids import generate_id, normalize_issue_id
from tdcore.models import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_RESTORE,
    ACTION_UPDATE,
    ENTITY_ISSUE,
    ISSUE_COLUMNS,
    PRIORITY_DEFAULT,
    STATUS_OPEN,
    TYPE_TASK,
    Issue,
    issue_from_row,
    join_labels,
)

logger = logging.getLogger(__name__)

MAX_ID_ATTEMPTS = 3


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint" in str(exc)


class IssuesMixin(DBMixinProtocol):
    """Issue create/read/update/delete/restore.

    Inherits ``DBMixinProtocol`` for type-safe access to shared attributes.
    Actual implementations provided by ``TodoDB`` at composition time via MRO.
    """

    # -- Reads ---------------------------------------------------------------

    def get_issue(self, issue_id: str) -> Issue:
        """Fetch one issue by id, soft-deleted rows included.

        Bare hex ids are accepted (``abc123`` reads ``td-abc123``).
        """
        issue_id = normalize_issue_id(issue_id)
        row = self.conn.execute(f"SELECT {ISSUE_COLUMNS} FROM issues WHERE id = ?", (issue_id,)).fetchone()
        if row is None:
            raise NotFoundError("issue", issue_id)
        return issue_from_row(row)

    def get_issues_by_ids(self, issue_ids: list[str]) -> list[Issue]:
        """Fetch many issues in one query, in input order; unknown ids are skipped."""
        ids = list(dict.fromkeys(normalize_issue_id(i) for i in issue_ids))
        if not ids:
            return []
        rows = self.conn.execute(
            f"SELECT {ISSUE_COLUMNS} FROM issues WHERE id IN ({_placeholders(ids)})",
            ids,
        ).fetchall()
        by_id = {row["id"]: issue_from_row(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def get_issue_titles(self, issue_ids: list[str]) -> dict[str, str]:
        ids = list(dict.fromkeys(normalize_issue_id(i) for i in issue_ids))
        if not ids:
            return {}
        rows = self.conn.execute(f"SELECT id, title FROM issues WHERE id IN ({_placeholders(ids)})", ids).fetchall()
        return {row["id"]: row["title"] for row in rows}

    # -- Create --------------------------------------------------------------

    def create_issue(self, issue: Issue) -> Issue:
        """Insert *issue* without journaling it. Fills id, defaults and timestamps in place."""
        return self._apply_create_issue(issue, "", emit=False)

    def create_issue_logged(self, issue: Issue, session_id: str) -> Issue:
        """Insert *issue* and append a ``create`` action in the same write window."""
        return self._apply_create_issue(issue, session_id, emit=True)

    def _apply_create_issue(self, issue: Issue, session_id: str, *, emit: bool) -> Issue:
        issue.status = issue.status or STATUS_OPEN
        issue.type = issue.type or TYPE_TASK
        issue.priority = issue.priority or PRIORITY_DEFAULT
        issue.parent_id = normalize_issue_id(issue.parent_id)

        with self._write_txn() as conn:
            now = _now_iso()
            issue.created_at = now
            issue.updated_at = now
            for _ in range(MAX_ID_ATTEMPTS):
                issue.id = generate_id()
                try:
                    conn.execute(
                        "INSERT INTO issues (id, title, description, status, type, priority, points, labels, "
                        "parent_id, acceptance, sprint, created_at, updated_at, minor, created_branch, "
                        "creator_session, defer_until, due_date, defer_count) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            issue.id,
                            issue.title,
                            issue.description,
                            issue.status,
                            issue.type,
                            issue.priority,
                            issue.points,
                            join_labels(issue.labels),
                            issue.parent_id,
                            issue.acceptance,
                            issue.sprint,
                            issue.created_at,
                            issue.updated_at,
                            int(issue.minor),
                            issue.created_branch,
                            issue.creator_session,
                            issue.defer_until,
                            issue.due_date,
                            issue.defer_count,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    if not _is_unique_violation(exc):
                        raise
                    continue
                break
            else:
                msg = f"failed to generate unique issue ID after {MAX_ID_ATTEMPTS} attempts"
                raise IDCollisionError(msg)

            if emit:
                created = self.get_issue(issue.id)
                self._append_action(session_id, ACTION_CREATE, ENTITY_ISSUE, issue.id, None, created.to_dict())

        logger.debug("Created issue %s", issue.id, extra={"op": "create_issue", "entity": issue.id})
        return issue

    # -- Update --------------------------------------------------------------

    def update_issue(self, issue: Issue) -> Issue:
        """Overwrite the stored row with *issue* (full-row update, not journaled)."""
        return self._apply_update_issue(issue, "", ACTION_UPDATE, emit=False)

    def update_issue_logged(self, issue: Issue, session_id: str, action_type: str = ACTION_UPDATE) -> Issue:
        """Overwrite the stored row and journal it as *action_type*.

        ``previous_data`` is the row as ``get_issue`` saw it before the write.
        """
        return self._apply_update_issue(issue, session_id, action_type, emit=True)

    def _apply_update_issue(self, issue: Issue, session_id: str, action_type: str, *, emit: bool) -> Issue:
        issue.id = normalize_issue_id(issue.id)
        issue.parent_id = normalize_issue_id(issue.parent_id)
        with self._write_txn() as conn:
            previous = self.get_issue(issue.id) if emit else None
            issue.updated_at = _now_iso()
            conn.execute(
                "UPDATE issues SET title = ?, description = ?, status = ?, type = ?, priority = ?, "
                "points = ?, labels = ?, parent_id = ?, acceptance = ?, sprint = ?, "
                "implementer_session = ?, reviewer_session = ?, updated_at = ?, closed_at = ?, "
                "deleted_at = ?, minor = ?, defer_until = ?, due_date = ?, defer_count = ? "
                "WHERE id = ?",
                (
                    issue.title,
                    issue.description,
                    issue.status,
                    issue.type,
                    issue.priority,
                    issue.points,
                    join_labels(issue.labels),
                    issue.parent_id,
                    issue.acceptance,
                    issue.sprint,
                    issue.implementer_session,
                    issue.reviewer_session,
                    issue.updated_at,
                    issue.closed_at,
                    issue.deleted_at,
                    int(issue.minor),
                    issue.defer_until,
                    issue.due_date,
                    issue.defer_count,
                    issue.id,
                ),
            )
            if previous is not None:
                updated = self.get_issue(issue.id)
                self._append_action(
                    session_id, action_type, ENTITY_ISSUE, issue.id, previous.to_dict(), updated.to_dict()
                )
        return issue

    # -- Delete / restore ----------------------------------------------------

    def delete_issue(self, issue_id: str) -> None:
        """Soft-delete without journaling."""
        self._apply_delete_issue(issue_id, "", emit=False)

    def delete_issue_logged(self, issue_id: str, session_id: str) -> None:
        """Soft-delete and journal a ``delete`` action whose new_data is empty."""
        self._apply_delete_issue(issue_id, session_id, emit=True)

    def _apply_delete_issue(self, issue_id: str, session_id: str, *, emit: bool) -> None:
        issue_id = normalize_issue_id(issue_id)
        with self._write_txn() as conn:
            previous = self.get_issue(issue_id) if emit else None
            now = _now_iso()
            conn.execute("UPDATE issues SET deleted_at = ?, updated_at = ? WHERE id = ?", (now, now, issue_id))
            if previous is not None:
                self._append_action(session_id, ACTION_DELETE, ENTITY_ISSUE, issue_id, previous.to_dict(), None)

    def restore_issue(self, issue_id: str) -> None:
        """Clear ``deleted_at`` without journaling."""
        self._apply_restore_issue(issue_id, "", emit=False)

    def restore_issue_logged(self, issue_id: str, session_id: str) -> None:
        self._apply_restore_issue(issue_id, session_id, emit=True)

    def _apply_restore_issue(self, issue_id: str, session_id: str, *, emit: bool) -> None:
        issue_id = normalize_issue_id(issue_id)
        with self._write_txn() as conn:
            previous = self.get_issue(issue_id) if emit else None
            conn.execute("UPDATE issues SET deleted_at = NULL, updated_at = ? WHERE id = ?", (_now_iso(), issue_id))
            if previous is not None:
                restored = self.get_issue(issue_id)
                self._append_action(
                    session_id, ACTION_RESTORE, ENTITY_ISSUE, issue_id, previous.to_dict(), restored.to_dict()
                )
