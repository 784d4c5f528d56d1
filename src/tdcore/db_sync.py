"""SyncMixin — local bookkeeping for the sync client.

The transport itself lives elsewhere; this mixin tracks which journal rows
have been pushed, the linked project, overwritten-entity conflicts and a
bounded push/pull history.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any

from tdcore.db_actionlog import ACTION_COLUMNS, action_from_row
from tdcore.db_base import DBMixinProtocol, _now_iso
from tdcore.errors import InvalidInputError
from tdcore.ids import format_timestamp
from tdcore.models import ActionLog, SyncConflict, SyncHistoryEntry, SyncState

logger = logging.getLogger(__name__)

_HISTORY_COLUMNS = (
    "id, direction, action_type, entity_type, entity_id, COALESCE(server_seq, 0) AS server_seq, "
    "COALESCE(device_id, '') AS device_id, timestamp"
)


def _history_from_row(row: sqlite3.Row) -> SyncHistoryEntry:
    return SyncHistoryEntry(
        id=row["id"],
        direction=row["direction"],
        action_type=row["action_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        server_seq=row["server_seq"],
        device_id=row["device_id"],
        timestamp=row["timestamp"],
    )


class SyncMixin(DBMixinProtocol):
    """Sync state, pending events, conflicts and history."""

    # -- Link state ----------------------------------------------------------

    def get_sync_state(self) -> SyncState | None:
        """Current link state, or ``None`` when the project is not linked."""
        row = self.conn.execute(
            "SELECT project_id, last_pushed_action_id, last_pulled_server_seq, last_sync_at, sync_disabled "
            "FROM sync_state LIMIT 1"
        ).fetchone()
        if row is None:
            return None
        return SyncState(
            project_id=row["project_id"],
            last_pushed_action_id=row["last_pushed_action_id"] or 0,
            last_pulled_server_seq=row["last_pulled_server_seq"] or 0,
            last_sync_at=row["last_sync_at"],
            sync_disabled=bool(row["sync_disabled"]),
        )

    def set_sync_state(self, project_id: str) -> None:
        """Link to *project_id*, resetting both cursors."""
        with self._write_txn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_state "
                "(project_id, last_pushed_action_id, last_pulled_server_seq, sync_disabled) VALUES (?, 0, 0, 0)",
                (project_id,),
            )

    def update_sync_pushed(self, last_action_id: int) -> None:
        with self._write_txn() as conn:
            conn.execute(
                "UPDATE sync_state SET last_pushed_action_id = ?, last_sync_at = ?", (last_action_id, _now_iso())
            )

    def update_sync_pulled(self, last_server_seq: int) -> None:
        with self._write_txn() as conn:
            conn.execute(
                "UPDATE sync_state SET last_pulled_server_seq = ?, last_sync_at = ?", (last_server_seq, _now_iso())
            )

    def clear_sync_state(self) -> None:
        with self._write_txn() as conn:
            conn.execute("DELETE FROM sync_state")

    # -- Pending events ------------------------------------------------------

    def count_pending_events(self) -> int:
        """Journal rows not yet pushed (undone rows excluded)."""
        row = self.conn.execute("SELECT COUNT(*) FROM action_log WHERE synced_at IS NULL AND undone = 0").fetchone()
        return int(row[0])

    def count_synced_events(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM action_log WHERE synced_at IS NOT NULL").fetchone()
        return int(row[0])

    def clear_action_log_sync_state(self) -> int:
        """Forget push state so every row is re-sent to a new server. Returns rows affected."""
        with self._write_txn() as conn:
            cur = conn.execute(
                "UPDATE action_log SET synced_at = NULL, server_seq = NULL WHERE synced_at IS NOT NULL"
            )
            affected = cur.rowcount
        logger.info("Cleared sync state on %d action_log rows", affected, extra={"op": "clear_sync_state"})
        return affected

    def get_pending_actions(self, limit: int = 0) -> list[tuple[int, ActionLog]]:
        """Unpushed, not-undone rows in journal order, paired with their rowid.

        The rowid is the monotonically increasing push cursor stored by
        ``update_sync_pushed``.
        """
        sql = (
            f"SELECT rowid AS push_id, {ACTION_COLUMNS} FROM action_log "
            "WHERE synced_at IS NULL AND undone = 0 ORDER BY rowid"
        )
        args: list[Any] = []
        if limit > 0:
            sql += " LIMIT ?"
            args.append(limit)
        return [(row["push_id"], action_from_row(row)) for row in self.conn.execute(sql, args).fetchall()]

    def mark_actions_synced(self, action_ids: list[str], server_seqs: list[int]) -> None:
        """Stamp ``synced_at`` and the server-assigned sequence on each pushed row."""
        if len(action_ids) != len(server_seqs):
            msg = f"mismatched ids and server_seqs: {len(action_ids)} != {len(server_seqs)}"
            raise InvalidInputError(msg)
        if not action_ids:
            return
        with self._write_txn() as conn:
            now = _now_iso()
            conn.executemany(
                "UPDATE action_log SET synced_at = ?, server_seq = ? WHERE id = ?",
                [(now, seq, action_id) for action_id, seq in zip(action_ids, server_seqs)],
            )

    # -- Conflicts -----------------------------------------------------------

    def record_sync_conflict(
        self,
        entity_type: str,
        entity_id: str,
        server_seq: int,
        local_data: dict[str, Any] | None,
        remote_data: dict[str, Any] | None,
    ) -> int:
        """Remember a local entity overwritten by a pulled event. Returns the row id."""
        with self._write_txn() as conn:
            cur = conn.execute(
                "INSERT INTO sync_conflicts (entity_type, entity_id, server_seq, local_data, remote_data, "
                "overwritten_at) VALUES (?, ?, ?, ?, ?, ?)",
                (entity_type, entity_id, server_seq, json.dumps(local_data), json.dumps(remote_data), _now_iso()),
            )
            return int(cur.lastrowid or 0)

    def get_recent_conflicts(self, limit: int, since: datetime | str | None = None) -> list[SyncConflict]:
        """Conflicts newest first, optionally only those at or after *since*."""
        sql = (
            "SELECT id, entity_type, entity_id, server_seq, COALESCE(local_data, 'null') AS local_data, "
            "COALESCE(remote_data, 'null') AS remote_data, overwritten_at FROM sync_conflicts"
        )
        args: list[Any] = []
        if since is not None:
            sql += " WHERE overwritten_at >= ?"
            args.append(format_timestamp(since) if isinstance(since, datetime) else since)
        sql += " ORDER BY overwritten_at DESC, id DESC LIMIT ?"
        args.append(limit)
        return [
            SyncConflict(
                id=row["id"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                server_seq=row["server_seq"],
                local_data=row["local_data"],
                remote_data=row["remote_data"],
                overwritten_at=row["overwritten_at"],
            )
            for row in self.conn.execute(sql, args).fetchall()
        ]

    # -- History -------------------------------------------------------------

    def record_sync_history(self, entries: list[SyncHistoryEntry]) -> None:
        if not entries:
            return
        with self._write_txn() as conn:
            now = _now_iso()
            conn.executemany(
                "INSERT INTO sync_history (direction, action_type, entity_type, entity_id, server_seq, "
                "device_id, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (e.direction, e.action_type, e.entity_type, e.entity_id, e.server_seq, e.device_id, e.timestamp or now)
                    for e in entries
                ],
            )

    def get_sync_history_tail(self, limit: int) -> list[SyncHistoryEntry]:
        """Last *limit* entries, oldest first."""
        rows = self.conn.execute(
            f"SELECT {_HISTORY_COLUMNS} FROM sync_history ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        entries = [_history_from_row(row) for row in rows]
        entries.reverse()
        return entries

    def get_sync_history(self, after_id: int, limit: int) -> list[SyncHistoryEntry]:
        """Entries with ``id > after_id`` in id order (follow-mode polling)."""
        rows = self.conn.execute(
            f"SELECT {_HISTORY_COLUMNS} FROM sync_history WHERE id > ? ORDER BY id ASC LIMIT ?",
            (after_id, limit),
        ).fetchall()
        return [_history_from_row(row) for row in rows]

    def prune_sync_history(self, max_rows: int) -> int:
        """Keep only the newest *max_rows* entries. Returns rows deleted."""
        with self._write_txn() as conn:
            cur = conn.execute(
                "DELETE FROM sync_history WHERE id NOT IN (SELECT id FROM sync_history ORDER BY id DESC LIMIT ?)",
                (max_rows,),
            )
            return cur.rowcount
