"""ActivityMixin — progress logs, handoffs, comments, and git snapshots.

Log, handoff and comment writes are journaled (entity types ``logs``,
``handoff`` and ``comments``) so they replicate; git snapshots are local only.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime

from tdcore.db_base import DBMixinProtocol, _dump_list, _load_list, _now_iso
from tdcore.ids import (
    format_timestamp,
    generate_comment_id,
    generate_handoff_id,
    generate_log_id,
    generate_snapshot_id,
    normalize_issue_id,
)
from tdcore.models import (
    ACTION_CREATE,
    ACTION_HANDOFF,
    ENTITY_COMMENT,
    ENTITY_HANDOFF,
    ENTITY_LOG,
    LOG_PROGRESS,
    Comment,
    GitSnapshot,
    Handoff,
    Log,
)

_LOG_COLUMNS = "CAST(id AS TEXT) AS id, issue_id, session_id, work_session_id, message, type, timestamp"
_HANDOFF_COLUMNS = "CAST(id AS TEXT) AS id, issue_id, session_id, done, remaining, decisions, uncertain, timestamp"
_COMMENT_COLUMNS = "CAST(id AS TEXT) AS id, issue_id, session_id, text, created_at"
_SNAPSHOT_COLUMNS = "CAST(id AS TEXT) AS id, issue_id, event, commit_sha, branch, dirty_files, timestamp"


def _log_from_row(row: sqlite3.Row) -> Log:
    return Log(
        id=row["id"],
        issue_id=row["issue_id"] or "",
        session_id=row["session_id"],
        work_session_id=row["work_session_id"] or "",
        message=row["message"],
        type=row["type"],
        timestamp=row["timestamp"],
    )


def _handoff_from_row(row: sqlite3.Row) -> Handoff:
    return Handoff(
        id=row["id"],
        issue_id=row["issue_id"],
        session_id=row["session_id"],
        done=_load_list(row["done"], "done"),
        remaining=_load_list(row["remaining"], "remaining"),
        decisions=_load_list(row["decisions"], "decisions"),
        uncertain=_load_list(row["uncertain"], "uncertain"),
        timestamp=row["timestamp"],
    )


def _comment_from_row(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        issue_id=row["issue_id"],
        session_id=row["session_id"],
        text=row["text"],
        created_at=row["created_at"],
    )


def _since_param(since: datetime | str) -> str:
    return format_timestamp(since) if isinstance(since, datetime) else since


class ActivityMixin(DBMixinProtocol):
    """Logs, handoffs, comments and git snapshots."""

    # -- Logs ----------------------------------------------------------------

    def _insert_log(self, log: Log) -> Log:
        """Insert a log row without journaling. Caller holds the write window."""
        log.id = generate_log_id()
        log.issue_id = normalize_issue_id(log.issue_id)
        log.type = log.type or LOG_PROGRESS
        log.timestamp = _now_iso()
        self.conn.execute(
            "INSERT INTO logs (id, issue_id, session_id, work_session_id, message, type, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (log.id, log.issue_id, log.session_id, log.work_session_id, log.message, log.type, log.timestamp),
        )
        return log

    def add_log(self, log: Log) -> Log:
        """Append a log entry and journal it as a ``create`` on ``logs``."""
        with self._write_txn():
            self._insert_log(log)
            self._append_action(log.session_id, ACTION_CREATE, ENTITY_LOG, log.id, None, log.to_dict())
        return log

    def get_logs(self, issue_id: str, limit: int = 0) -> list[Log]:
        """Logs on the issue plus issue-less logs of work sessions it is tagged to.

        With *limit*, the newest entries are kept. Returned oldest first.
        """
        issue_id = normalize_issue_id(issue_id)
        sql = (
            f"SELECT {_LOG_COLUMNS} FROM logs "
            "WHERE issue_id = ? OR (issue_id = '' AND work_session_id IN "
            "(SELECT work_session_id FROM work_session_issues WHERE issue_id = ?)) "
            "ORDER BY timestamp DESC"
        )
        args: list[object] = [issue_id, issue_id]
        if limit > 0:
            sql += " LIMIT ?"
            args.append(limit)
        logs = [_log_from_row(row) for row in self.conn.execute(sql, args).fetchall()]
        logs.reverse()
        return logs

    def get_logs_by_work_session(self, ws_id: str) -> list[Log]:
        rows = self.conn.execute(
            f"SELECT {_LOG_COLUMNS} FROM logs WHERE work_session_id = ? ORDER BY timestamp", (ws_id,)
        ).fetchall()
        return [_log_from_row(row) for row in rows]

    def get_recent_logs_all(self, limit: int = 0) -> list[Log]:
        sql = f"SELECT {_LOG_COLUMNS} FROM logs ORDER BY timestamp DESC"
        args: list[object] = []
        if limit > 0:
            sql += " LIMIT ?"
            args.append(limit)
        return [_log_from_row(row) for row in self.conn.execute(sql, args).fetchall()]

    def get_active_sessions(self, since: datetime | str) -> list[str]:
        """Session ids with log activity after *since*, most recently active first."""
        rows = self.conn.execute(
            "SELECT session_id FROM logs WHERE session_id != '' AND timestamp > ? "
            "GROUP BY session_id ORDER BY MAX(timestamp) DESC",
            (_since_param(since),),
        ).fetchall()
        return [row[0] for row in rows]

    # -- Handoffs ------------------------------------------------------------

    def add_handoff(self, handoff: Handoff) -> Handoff:
        """Store a handoff and journal it (action ``handoff``, entity ``handoff``)."""
        handoff.issue_id = normalize_issue_id(handoff.issue_id)
        with self._write_txn() as conn:
            handoff.id = generate_handoff_id()
            handoff.timestamp = _now_iso()
            conn.execute(
                "INSERT INTO handoffs (id, issue_id, session_id, done, remaining, decisions, uncertain, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    handoff.id,
                    handoff.issue_id,
                    handoff.session_id,
                    _dump_list(handoff.done),
                    _dump_list(handoff.remaining),
                    _dump_list(handoff.decisions),
                    _dump_list(handoff.uncertain),
                    handoff.timestamp,
                ),
            )
            self._append_action(handoff.session_id, ACTION_HANDOFF, ENTITY_HANDOFF, handoff.id, None, handoff.to_dict())
        return handoff

    def get_latest_handoff(self, issue_id: str) -> Handoff | None:
        row = self.conn.execute(
            f"SELECT {_HANDOFF_COLUMNS} FROM handoffs WHERE issue_id = ? ORDER BY timestamp DESC LIMIT 1",
            (normalize_issue_id(issue_id),),
        ).fetchone()
        return _handoff_from_row(row) if row is not None else None

    def delete_handoff(self, handoff_id: str) -> None:
        """Remove a handoff (used when undoing one); not journaled."""
        with self._write_txn() as conn:
            conn.execute("DELETE FROM handoffs WHERE id = ?", (handoff_id,))

    def get_recent_handoffs(self, limit: int, since: datetime | str) -> list[Handoff]:
        rows = self.conn.execute(
            f"SELECT {_HANDOFF_COLUMNS} FROM handoffs WHERE timestamp > ? ORDER BY timestamp DESC LIMIT ?",
            (_since_param(since), limit),
        ).fetchall()
        return [_handoff_from_row(row) for row in rows]

    # -- Comments ------------------------------------------------------------

    def add_comment(self, comment: Comment) -> Comment:
        comment.issue_id = normalize_issue_id(comment.issue_id)
        with self._write_txn() as conn:
            comment.id = generate_comment_id()
            comment.created_at = _now_iso()
            conn.execute(
                "INSERT INTO comments (id, issue_id, session_id, text, created_at) VALUES (?, ?, ?, ?, ?)",
                (comment.id, comment.issue_id, comment.session_id, comment.text, comment.created_at),
            )
            self._append_action(comment.session_id, ACTION_CREATE, ENTITY_COMMENT, comment.id, None, comment.to_dict())
        return comment

    def get_comments(self, issue_id: str) -> list[Comment]:
        rows = self.conn.execute(
            f"SELECT {_COMMENT_COLUMNS} FROM comments WHERE issue_id = ? ORDER BY created_at",
            (normalize_issue_id(issue_id),),
        ).fetchall()
        return [_comment_from_row(row) for row in rows]

    def get_recent_comments_all(self, limit: int = 0) -> list[Comment]:
        sql = f"SELECT {_COMMENT_COLUMNS} FROM comments ORDER BY created_at DESC"
        args: list[object] = []
        if limit > 0:
            sql += " LIMIT ?"
            args.append(limit)
        return [_comment_from_row(row) for row in self.conn.execute(sql, args).fetchall()]

    # -- Git snapshots -------------------------------------------------------

    def add_git_snapshot(self, snapshot: GitSnapshot) -> GitSnapshot:
        snapshot.issue_id = normalize_issue_id(snapshot.issue_id)
        with self._write_txn() as conn:
            snapshot.id = generate_snapshot_id()
            snapshot.timestamp = _now_iso()
            conn.execute(
                "INSERT INTO git_snapshots (id, issue_id, event, commit_sha, branch, dirty_files, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    snapshot.id,
                    snapshot.issue_id,
                    snapshot.event,
                    snapshot.commit_sha,
                    snapshot.branch,
                    snapshot.dirty_files,
                    snapshot.timestamp,
                ),
            )
        return snapshot

    def get_start_snapshot(self, issue_id: str) -> GitSnapshot | None:
        row = self.conn.execute(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM git_snapshots WHERE issue_id = ? AND event = 'start' "
            "ORDER BY timestamp DESC LIMIT 1",
            (normalize_issue_id(issue_id),),
        ).fetchone()
        if row is None:
            return None
        return GitSnapshot(
            id=row["id"],
            issue_id=row["issue_id"],
            event=row["event"],
            commit_sha=row["commit_sha"],
            branch=row["branch"],
            dirty_files=row["dirty_files"] or 0,
            timestamp=row["timestamp"],
        )
