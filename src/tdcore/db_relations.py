"""RelationsMixin — dependencies, linked files, the parent tree, and session history.

Dependency and file-link rows carry deterministic ids (``dep_…``,
``ifl_…``) derived from their natural key, so an action_log entry keeps
addressing the same row on every replica even after the row is removed.

All methods access ``self.conn`` and ``self._write_txn()`` via Python's MRO
when composed into ``TodoDB``.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Any

from tdcore.db_base import DBMixinProtocol, _now_iso, _placeholders
from tdcore.ids import dependency_id, generate_history_id, issue_file_id, normalize_issue_id
from tdcore.models import (
    ACTION_ADD_DEP,
    ACTION_LINK_FILE,
    ACTION_REMOVE_DEP,
    ACTION_UNLINK_FILE,
    ENTITY_DEPENDENCY,
    ENTITY_FILE,
    FILE_ROLE_IMPLEMENTATION,
    ISSUE_COLUMNS,
    RELATION_DEPENDS_ON,
    STATUS_CLOSED,
    Issue,
    IssueDependency,
    IssueFile,
    IssueSessionHistory,
    issue_from_row,
)
from tdcore.paths import is_absolute_path, normalize_file_path_for_id, to_repo_relative


class RelationsMixin(DBMixinProtocol):
    """Dependency graph, file links, issue tree and per-issue session history."""

    if TYPE_CHECKING:

        def get_issues_by_ids(self, issue_ids: list[str]) -> list[Issue]: ...

    # -- Dependencies --------------------------------------------------------

    def add_dependency(self, issue_id: str, depends_on_id: str, relation_type: str = RELATION_DEPENDS_ON) -> str:
        """Upsert a dependency row without journaling; returns its id."""
        return self._apply_add_dependency(issue_id, depends_on_id, relation_type, "", emit=False)

    def add_dependency_logged(
        self, issue_id: str, depends_on_id: str, relation_type: str, session_id: str
    ) -> str:
        return self._apply_add_dependency(issue_id, depends_on_id, relation_type, session_id, emit=True)

    def _apply_add_dependency(
        self, issue_id: str, depends_on_id: str, relation_type: str, session_id: str, *, emit: bool
    ) -> str:
        issue_id = normalize_issue_id(issue_id)
        depends_on_id = normalize_issue_id(depends_on_id)
        relation_type = relation_type or RELATION_DEPENDS_ON
        dep = IssueDependency(dependency_id(issue_id, depends_on_id, relation_type), issue_id, depends_on_id, relation_type)
        with self._write_txn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO issue_dependencies (id, issue_id, depends_on_id, relation_type) "
                "VALUES (?, ?, ?, ?)",
                (dep.id, dep.issue_id, dep.depends_on_id, dep.relation_type),
            )
            if emit:
                self._append_action(session_id, ACTION_ADD_DEP, ENTITY_DEPENDENCY, dep.id, None, dep.to_dict())
        return dep.id

    def remove_dependency(self, issue_id: str, depends_on_id: str) -> None:
        """Delete every relation from *issue_id* to *depends_on_id* without journaling."""
        self._apply_remove_dependency(issue_id, depends_on_id, "", emit=False)

    def remove_dependency_logged(self, issue_id: str, depends_on_id: str, session_id: str) -> None:
        self._apply_remove_dependency(issue_id, depends_on_id, session_id, emit=True)

    def _apply_remove_dependency(self, issue_id: str, depends_on_id: str, session_id: str, *, emit: bool) -> None:
        issue_id = normalize_issue_id(issue_id)
        depends_on_id = normalize_issue_id(depends_on_id)
        dep = IssueDependency(
            dependency_id(issue_id, depends_on_id, RELATION_DEPENDS_ON), issue_id, depends_on_id, RELATION_DEPENDS_ON
        )
        with self._write_txn() as conn:
            conn.execute(
                "DELETE FROM issue_dependencies WHERE issue_id = ? AND depends_on_id = ?",
                (issue_id, depends_on_id),
            )
            if emit:
                self._append_action(session_id, ACTION_REMOVE_DEP, ENTITY_DEPENDENCY, dep.id, dep.to_dict(), None)

    def get_dependencies(self, issue_id: str) -> list[str]:
        """Ids *issue_id* depends on."""
        rows = self.conn.execute(
            "SELECT depends_on_id FROM issue_dependencies WHERE issue_id = ? AND relation_type = ?",
            (normalize_issue_id(issue_id), RELATION_DEPENDS_ON),
        ).fetchall()
        return [row[0] for row in rows]

    def get_blocked_by(self, issue_id: str) -> list[str]:
        """Ids of issues that depend on *issue_id*."""
        rows = self.conn.execute(
            "SELECT issue_id FROM issue_dependencies WHERE depends_on_id = ? AND relation_type = ?",
            (normalize_issue_id(issue_id), RELATION_DEPENDS_ON),
        ).fetchall()
        return [row[0] for row in rows]

    def get_all_dependencies(self) -> dict[str, list[str]]:
        deps: dict[str, list[str]] = {}
        for row in self.conn.execute(
            "SELECT issue_id, depends_on_id FROM issue_dependencies WHERE relation_type = ?",
            (RELATION_DEPENDS_ON,),
        ):
            deps.setdefault(row["issue_id"], []).append(row["depends_on_id"])
        return deps

    def get_issues_with_open_deps(self) -> set[str]:
        """Ids with at least one live, non-closed dependency."""
        rows = self.conn.execute(
            "SELECT DISTINCT d.issue_id FROM issue_dependencies d "
            "JOIN issues i ON d.depends_on_id = i.id "
            "WHERE d.relation_type = ? AND i.status != ? AND i.deleted_at IS NULL",
            (RELATION_DEPENDS_ON, STATUS_CLOSED),
        ).fetchall()
        return {row[0] for row in rows}

    def get_issue_statuses(self, issue_ids: list[str]) -> dict[str, str]:
        ids = list(dict.fromkeys(normalize_issue_id(i) for i in issue_ids))
        if not ids:
            return {}
        rows = self.conn.execute(f"SELECT id, status FROM issues WHERE id IN ({_placeholders(ids)})", ids).fetchall()
        return {row["id"]: row["status"] for row in rows}

    # -- Linked files --------------------------------------------------------

    def _repo_path(self, file_path: str) -> str:
        if is_absolute_path(file_path):
            return to_repo_relative(file_path, self.base_dir)
        return normalize_file_path_for_id(file_path)

    def link_file(
        self, issue_id: str, file_path: str, role: str = FILE_ROLE_IMPLEMENTATION, sha: str = ""
    ) -> IssueFile:
        """Link a file without journaling. Absolute paths are stored repo-relative."""
        return self._apply_link_file(issue_id, file_path, role, sha, "", emit=False)

    def link_file_logged(
        self, issue_id: str, file_path: str, role: str, sha: str, session_id: str
    ) -> IssueFile:
        return self._apply_link_file(issue_id, file_path, role, sha, session_id, emit=True)

    def _apply_link_file(
        self, issue_id: str, file_path: str, role: str, sha: str, session_id: str, *, emit: bool
    ) -> IssueFile:
        issue_id = normalize_issue_id(issue_id)
        rel_path = self._repo_path(file_path)
        link = IssueFile(
            id=issue_file_id(issue_id, rel_path),
            issue_id=issue_id,
            file_path=rel_path,
            role=role or FILE_ROLE_IMPLEMENTATION,
            linked_sha=sha,
        )
        with self._write_txn() as conn:
            link.linked_at = _now_iso()
            conn.execute(
                "INSERT OR REPLACE INTO issue_files (id, issue_id, file_path, role, linked_sha, linked_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (link.id, link.issue_id, link.file_path, link.role, link.linked_sha, link.linked_at),
            )
            if emit:
                self._append_action(session_id, ACTION_LINK_FILE, ENTITY_FILE, link.id, None, link.to_dict())
        return link

    def unlink_file(self, issue_id: str, file_path: str) -> None:
        self._apply_unlink_file(issue_id, file_path, "", emit=False)

    def unlink_file_logged(self, issue_id: str, file_path: str, session_id: str) -> None:
        self._apply_unlink_file(issue_id, file_path, session_id, emit=True)

    def _apply_unlink_file(self, issue_id: str, file_path: str, session_id: str, *, emit: bool) -> None:
        issue_id = normalize_issue_id(issue_id)
        rel_path = self._repo_path(file_path)
        file_id = issue_file_id(issue_id, rel_path)
        with self._write_txn() as conn:
            previous: dict[str, Any] | None = None
            if emit:
                row = conn.execute(
                    "SELECT id, issue_id, file_path, role, linked_sha, linked_at FROM issue_files "
                    "WHERE issue_id = ? AND file_path = ?",
                    (issue_id, rel_path),
                ).fetchone()
                previous = (
                    _file_from_row(row).to_dict()
                    if row is not None
                    else {"id": file_id, "issue_id": issue_id, "file_path": rel_path}
                )
            conn.execute("DELETE FROM issue_files WHERE issue_id = ? AND file_path = ?", (issue_id, rel_path))
            if previous is not None:
                self._append_action(session_id, ACTION_UNLINK_FILE, ENTITY_FILE, file_id, previous, None)

    def get_linked_files(self, issue_id: str) -> list[IssueFile]:
        rows = self.conn.execute(
            "SELECT CAST(id AS TEXT) AS id, issue_id, file_path, role, linked_sha, linked_at "
            "FROM issue_files WHERE issue_id = ? ORDER BY role, file_path",
            (normalize_issue_id(issue_id),),
        ).fetchall()
        return [_file_from_row(row) for row in rows]

    # -- Tree ----------------------------------------------------------------

    def get_descendants(self, parent_id: str) -> list[str]:
        """All live descendant ids, breadth first. Cycles in parent_id are tolerated."""
        descendants: list[str] = []
        visited: set[str] = set()
        queue: deque[str] = deque([normalize_issue_id(parent_id)])
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            children = [
                row[0]
                for row in self.conn.execute(
                    "SELECT id FROM issues WHERE parent_id = ? AND deleted_at IS NULL", (current,)
                )
            ]
            descendants.extend(children)
            queue.extend(children)
        return descendants

    def has_children(self, issue_id: str) -> bool:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM issues WHERE parent_id = ? AND deleted_at IS NULL",
            (normalize_issue_id(issue_id),),
        ).fetchone()
        return bool(row[0])

    def get_direct_children(self, issue_id: str) -> list[Issue]:
        rows = self.conn.execute(
            f"SELECT {ISSUE_COLUMNS} FROM issues WHERE parent_id = ? AND deleted_at IS NULL",
            (normalize_issue_id(issue_id),),
        ).fetchall()
        return [issue_from_row(row) for row in rows]

    def get_descendant_issues(self, issue_id: str, statuses: list[str] | None = None) -> list[Issue]:
        """Descendants filtered by *statuses* (empty or None means all)."""
        wanted = set(statuses or ())
        issues = self.get_issues_by_ids(self.get_descendants(issue_id))
        return [i for i in issues if not wanted or i.status in wanted]

    # -- Session history -----------------------------------------------------

    def record_session_action(self, issue_id: str, session_id: str, action: str) -> IssueSessionHistory:
        entry = IssueSessionHistory(
            id=generate_history_id(),
            issue_id=normalize_issue_id(issue_id),
            session_id=session_id,
            action=action,
            created_at=_now_iso(),
        )
        with self._write_txn() as conn:
            conn.execute(
                "INSERT INTO issue_session_history (id, issue_id, session_id, action, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (entry.id, entry.issue_id, entry.session_id, entry.action, entry.created_at),
            )
        return entry

    def was_session_involved(self, issue_id: str, session_id: str) -> bool:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM issue_session_history WHERE issue_id = ? AND session_id = ?",
            (normalize_issue_id(issue_id), session_id),
        ).fetchone()
        return bool(row[0])

    def get_session_history(self, issue_id: str) -> list[IssueSessionHistory]:
        rows = self.conn.execute(
            "SELECT id, issue_id, session_id, action, created_at FROM issue_session_history "
            "WHERE issue_id = ? ORDER BY created_at ASC",
            (normalize_issue_id(issue_id),),
        ).fetchall()
        return [IssueSessionHistory(**dict(row)) for row in rows]

    def get_issue_session_log(self, session_id: str) -> list[str]:
        """Issue ids a session has written logs against."""
        rows = self.conn.execute("SELECT DISTINCT issue_id FROM logs WHERE session_id = ?", (session_id,)).fetchall()
        return [row[0] for row in rows]


def _file_from_row(row: Any) -> IssueFile:
    return IssueFile(
        id=str(row["id"]),
        issue_id=row["issue_id"],
        file_path=row["file_path"],
        role=row["role"],
        linked_sha=row["linked_sha"] or "",
        linked_at=row["linked_at"],
    )
