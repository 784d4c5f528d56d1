"""SessionsMixin — agent sessions and work sessions.

Agent sessions (``sessions`` table) identify the process talking to the
tracker and are local bookkeeping only. Work sessions group issues under a
named effort; their creation, updates and issue tags are journaled.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime

from tdcore.db_base import DBMixinProtocol, _now_iso
from tdcore.errors import NotFoundError
from tdcore.ids import format_timestamp, generate_ws_id, normalize_issue_id, wsi_id
from tdcore.models import (
    ACTION_CREATE,
    ACTION_UPDATE,
    ACTION_WORK_SESSION_TAG,
    ACTION_WORK_SESSION_UNTAG,
    ENTITY_WORK_SESSION,
    ENTITY_WORK_SESSION_ISSUE,
    Session,
    WorkSession,
)

_SESSION_COLUMNS = (
    "id, name, branch, agent_type, agent_pid, context_id, previous_session_id, started_at, ended_at, last_activity"
)
_WORK_SESSION_COLUMNS = "id, name, session_id, started_at, ended_at, start_sha, end_sha"


def _ts(value: datetime | str | None) -> str | None:
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


def _session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        name=row["name"] or "",
        branch=row["branch"] or "",
        agent_type=row["agent_type"] or "",
        agent_pid=row["agent_pid"] or 0,
        context_id=row["context_id"] or "",
        previous_session_id=row["previous_session_id"] or "",
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        # Never-touched sessions report their start as last activity
        last_activity=row["last_activity"] or row["started_at"],
    )


def _work_session_from_row(row: sqlite3.Row) -> WorkSession:
    return WorkSession(
        id=row["id"],
        name=row["name"],
        session_id=row["session_id"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        start_sha=row["start_sha"] or "",
        end_sha=row["end_sha"] or "",
    )


class SessionsMixin(DBMixinProtocol):
    """Agent session registry and work-session grouping."""

    # -- Agent sessions ------------------------------------------------------

    def upsert_session(self, session: Session) -> Session:
        """Insert or replace an agent session row."""
        session.started_at = session.started_at or _now_iso()
        session.last_activity = session.last_activity or session.started_at
        with self._write_txn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sessions (id, name, branch, agent_type, agent_pid, context_id, "
                "previous_session_id, started_at, ended_at, last_activity) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.name,
                    session.branch,
                    session.agent_type,
                    session.agent_pid,
                    session.context_id,
                    session.previous_session_id,
                    session.started_at,
                    session.ended_at,
                    session.last_activity,
                ),
            )
        return session

    def get_session_by_branch_agent(self, branch: str, agent_type: str, agent_pid: int) -> Session | None:
        """Most recently active session for the (branch, agent, pid) triple."""
        row = self.conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE branch = ? AND agent_type = ? AND agent_pid = ? "
            "ORDER BY COALESCE(last_activity, started_at) DESC LIMIT 1",
            (branch, agent_type, agent_pid),
        ).fetchone()
        return _session_from_row(row) if row is not None else None

    def get_session_by_id(self, session_id: str) -> Session | None:
        row = self.conn.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _session_from_row(row) if row is not None else None

    def update_session_activity(self, session_id: str, when: datetime | str | None = None) -> None:
        with self._write_txn() as conn:
            conn.execute(
                "UPDATE sessions SET last_activity = ? WHERE id = ?", (_ts(when) or _now_iso(), session_id)
            )

    def update_session_name(self, session_id: str, name: str) -> None:
        with self._write_txn() as conn:
            conn.execute("UPDATE sessions SET name = ? WHERE id = ?", (name, session_id))

    def list_all_sessions(self) -> list[Session]:
        rows = self.conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY COALESCE(last_activity, started_at) DESC"
        ).fetchall()
        return [_session_from_row(row) for row in rows]

    def delete_stale_sessions(self, before: datetime | str) -> int:
        """Delete sessions idle since before *before*. Returns how many went."""
        with self._write_txn() as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE COALESCE(last_activity, started_at) < ?", (_ts(before),)
            )
            return cur.rowcount

    # -- Work sessions -------------------------------------------------------

    def create_work_session(self, ws: WorkSession) -> WorkSession:
        with self._write_txn() as conn:
            ws.id = generate_ws_id()
            ws.started_at = _now_iso()
            conn.execute(
                "INSERT INTO work_sessions (id, name, session_id, started_at, start_sha) VALUES (?, ?, ?, ?, ?)",
                (ws.id, ws.name, ws.session_id, ws.started_at, ws.start_sha),
            )
            self._append_action(ws.session_id, ACTION_CREATE, ENTITY_WORK_SESSION, ws.id, None, ws.to_dict())
        return ws

    def get_work_session(self, ws_id: str) -> WorkSession:
        row = self.conn.execute(
            f"SELECT {_WORK_SESSION_COLUMNS} FROM work_sessions WHERE id = ?", (ws_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError("work session", ws_id)
        return _work_session_from_row(row)

    def update_work_session(self, ws: WorkSession) -> WorkSession:
        """Persist name, end time and end sha; journaled as an ``update``."""
        with self._write_txn() as conn:
            previous = self.get_work_session(ws.id)
            conn.execute(
                "UPDATE work_sessions SET name = ?, ended_at = ?, end_sha = ? WHERE id = ?",
                (ws.name, _ts(ws.ended_at), ws.end_sha, ws.id),
            )
            updated = self.get_work_session(ws.id)
            self._append_action(
                ws.session_id, ACTION_UPDATE, ENTITY_WORK_SESSION, ws.id, previous.to_dict(), updated.to_dict()
            )
        return updated

    def list_work_sessions(self, limit: int = 0) -> list[WorkSession]:
        """Most recently started first."""
        sql = f"SELECT {_WORK_SESSION_COLUMNS} FROM work_sessions ORDER BY started_at DESC"
        args: list[object] = []
        if limit > 0:
            sql += " LIMIT ?"
            args.append(limit)
        return [_work_session_from_row(row) for row in self.conn.execute(sql, args).fetchall()]

    def tag_issue_to_work_session(self, ws_id: str, issue_id: str, session_id: str) -> str:
        """Tag an issue to a work session (idempotent). Returns the ``wsi_`` row id."""
        issue_id = normalize_issue_id(issue_id)
        row_id = wsi_id(ws_id, issue_id)
        with self._write_txn() as conn:
            now = _now_iso()
            conn.execute(
                "INSERT OR IGNORE INTO work_session_issues (id, work_session_id, issue_id, tagged_at) "
                "VALUES (?, ?, ?, ?)",
                (row_id, ws_id, issue_id, now),
            )
            self._append_action(
                session_id,
                ACTION_WORK_SESSION_TAG,
                ENTITY_WORK_SESSION_ISSUE,
                row_id,
                None,
                {"id": row_id, "work_session_id": ws_id, "issue_id": issue_id, "tagged_at": now},
            )
        return row_id

    def untag_issue_from_work_session(self, ws_id: str, issue_id: str, session_id: str) -> None:
        issue_id = normalize_issue_id(issue_id)
        row_id = wsi_id(ws_id, issue_id)
        with self._write_txn() as conn:
            conn.execute("DELETE FROM work_session_issues WHERE id = ?", (row_id,))
            self._append_action(
                session_id,
                ACTION_WORK_SESSION_UNTAG,
                ENTITY_WORK_SESSION_ISSUE,
                row_id,
                {"id": row_id, "work_session_id": ws_id, "issue_id": issue_id},
                None,
            )

    def get_work_session_issues(self, ws_id: str) -> list[str]:
        """Issue ids tagged to *ws_id*, in tagging order."""
        rows = self.conn.execute(
            "SELECT issue_id FROM work_session_issues WHERE work_session_id = ? ORDER BY tagged_at, rowid", (ws_id,)
        ).fetchall()
        return [row[0] for row in rows]
