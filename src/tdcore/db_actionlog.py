"""ActionLogMixin — the append-only journal behind undo and sync push.

Rows are written by ``_append_action`` inside the caller's write window, so a
mutation and its journal entry commit or roll back together.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from typing import Any

from tdcore.db_base import DBMixinProtocol, _now_iso, _placeholders, dump_payload
from tdcore.ids import generate_action_id
from tdcore.models import (
    ACTION_APPROVE,
    ACTION_REJECT,
    ACTION_REVIEW,
    ENTITY_ISSUE,
    NON_UNDOABLE_ENTITY_TYPES,
    STATUS_IN_PROGRESS,
    ActionLog,
)

ACTION_COLUMNS = (
    "id, session_id, action_type, entity_type, entity_id, previous_data, new_data, "
    "timestamp, undone, synced_at, server_seq"
)

_UNDOABLE_FILTER = f"entity_type NOT IN ({_placeholders(NON_UNDOABLE_ENTITY_TYPES)})"


def action_from_row(row: sqlite3.Row) -> ActionLog:
    return ActionLog(
        id=row["id"],
        session_id=row["session_id"],
        action_type=row["action_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        previous_data=row["previous_data"] or "",
        new_data=row["new_data"] or "",
        timestamp=row["timestamp"],
        undone=bool(row["undone"]),
        synced_at=row["synced_at"],
        server_seq=row["server_seq"],
    )


class ActionLogMixin(DBMixinProtocol):
    """Append, read and mark-undone over ``action_log``."""

    def _append_action(
        self,
        session_id: str,
        action_type: str,
        entity_type: str,
        entity_id: str,
        previous: Mapping[str, Any] | None = None,
        new: Mapping[str, Any] | None = None,
    ) -> str:
        """Insert one journal row. Must run inside ``_write_txn``; returns the new id."""
        action_id = generate_action_id()
        self.conn.execute(
            "INSERT INTO action_log (id, session_id, action_type, entity_type, entity_id, "
            "previous_data, new_data, timestamp, undone) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)",
            (
                action_id,
                session_id,
                action_type,
                entity_type,
                entity_id,
                dump_payload(previous),
                dump_payload(new),
                _now_iso(),
            ),
        )
        return action_id

    def log_action(self, action: ActionLog) -> ActionLog:
        """Journal a caller-built action whose payloads are already JSON text."""
        with self._write_txn() as conn:
            action.id = generate_action_id()
            action.timestamp = _now_iso()
            conn.execute(
                "INSERT INTO action_log (id, session_id, action_type, entity_type, entity_id, "
                "previous_data, new_data, timestamp, undone) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    action.id,
                    action.session_id,
                    action.action_type,
                    action.entity_type,
                    action.entity_id,
                    action.previous_data,
                    action.new_data,
                    action.timestamp,
                    int(action.undone),
                ),
            )
        return action

    def get_last_action(self, session_id: str) -> ActionLog | None:
        """Most recent not-undone, undoable action of *session_id*, or ``None``."""
        row = self.conn.execute(
            f"SELECT {ACTION_COLUMNS} FROM action_log "
            f"WHERE session_id = ? AND undone = 0 AND {_UNDOABLE_FILTER} "
            "ORDER BY timestamp DESC, rowid DESC LIMIT 1",
            (session_id, *NON_UNDOABLE_ENTITY_TYPES),
        ).fetchone()
        return action_from_row(row) if row is not None else None

    def get_recent_actions(self, session_id: str, limit: int) -> list[ActionLog]:
        rows = self.conn.execute(
            f"SELECT {ACTION_COLUMNS} FROM action_log "
            f"WHERE session_id = ? AND {_UNDOABLE_FILTER} "
            "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (session_id, *NON_UNDOABLE_ENTITY_TYPES, limit),
        ).fetchall()
        return [action_from_row(row) for row in rows]

    def get_recent_actions_all(self, limit: int) -> list[ActionLog]:
        """Newest actions across every session and entity type."""
        rows = self.conn.execute(
            f"SELECT {ACTION_COLUMNS} FROM action_log ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [action_from_row(row) for row in rows]

    def mark_action_undone(self, action_id: str) -> None:
        with self._write_txn() as conn:
            conn.execute("UPDATE action_log SET undone = 1 WHERE id = ?", (action_id,))

    def get_actions_for_entity(self, entity_id: str) -> list[ActionLog]:
        """Every journal row for *entity_id*, oldest first."""
        rows = self.conn.execute(
            f"SELECT {ACTION_COLUMNS} FROM action_log WHERE entity_id = ? ORDER BY timestamp, rowid",
            (entity_id,),
        ).fetchall()
        return [action_from_row(row) for row in rows]

    def get_rejected_in_progress_issue_ids(self) -> set[str]:
        """In-progress issues whose latest review-cycle action is a rejection."""
        rows = self.conn.execute(
            "SELECT i.id FROM issues i WHERE i.status = ? AND i.deleted_at IS NULL AND ("
            "SELECT al.action_type FROM action_log al "
            "WHERE al.entity_type = ? AND al.entity_id = i.id AND al.undone = 0 "
            "AND al.action_type IN (?, ?, ?) "
            "ORDER BY al.timestamp DESC, al.rowid DESC LIMIT 1) = ?",
            (STATUS_IN_PROGRESS, ENTITY_ISSUE, ACTION_REVIEW, ACTION_APPROVE, ACTION_REJECT, ACTION_REJECT),
        ).fetchall()
        return {row[0] for row in rows}
