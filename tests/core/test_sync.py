"""Sync link state, push bookkeeping, conflicts and history."""

from __future__ import annotations

import json
import logging

import pytest

from tdcore.core import TodoDB
from tdcore.errors import InvalidInputError
from tdcore.models import Issue, SyncHistoryEntry


class TestSyncState:
    def test_absent_means_unlinked(self, db: TodoDB) -> None:
        assert db.get_sync_state() is None

    def test_link_and_cursors(self, db: TodoDB) -> None:
        db.set_sync_state("proj-1")
        state = db.get_sync_state()
        assert state is not None
        assert state.project_id == "proj-1"
        assert (state.last_pushed_action_id, state.last_pulled_server_seq) == (0, 0)

        db.update_sync_pushed(12)
        db.update_sync_pulled(40)
        state = db.get_sync_state()
        assert state is not None
        assert state.last_pushed_action_id == 12
        assert state.last_pulled_server_seq == 40
        assert state.last_sync_at is not None
        assert state.last_sync_at.endswith("Z")

        db.clear_sync_state()
        assert db.get_sync_state() is None


class TestPendingEvents:
    def test_pending_excludes_synced_and_undone(self, db: TodoDB) -> None:
        for n in range(3):
            db.create_issue_logged(Issue(title=f"i{n}"), "s1")
        pending = db.get_pending_actions()
        assert db.count_pending_events() == 3
        assert [rowid for rowid, _ in pending] == sorted(rowid for rowid, _ in pending)

        db.mark_action_undone(pending[0][1].id)
        db.mark_actions_synced([pending[1][1].id], [101])
        assert db.count_pending_events() == 1
        assert db.count_synced_events() == 1
        assert [a.id for _, a in db.get_pending_actions()] == [pending[2][1].id]

        synced = db.get_actions_for_entity(pending[1][1].entity_id)[0]
        assert synced.server_seq == 101
        assert synced.synced_at is not None

    def test_limit(self, db: TodoDB) -> None:
        for n in range(3):
            db.create_issue_logged(Issue(title=f"i{n}"), "s1")
        assert len(db.get_pending_actions(limit=2)) == 2

    def test_mismatched_lengths_rejected(self, db: TodoDB) -> None:
        with pytest.raises(InvalidInputError, match="mismatched"):
            db.mark_actions_synced(["al-1", "al-2"], [1])

    def test_clear_action_log_sync_state(self, db: TodoDB, caplog: pytest.LogCaptureFixture) -> None:
        db.create_issue_logged(Issue(title="a"), "s1")
        db.create_issue_logged(Issue(title="b"), "s1")
        ids = [a.id for _, a in db.get_pending_actions()]
        db.mark_actions_synced(ids, [1, 2])
        assert db.count_pending_events() == 0
        with caplog.at_level(logging.INFO, logger="tdcore"):
            assert db.clear_action_log_sync_state() == 2
        assert db.count_pending_events() == 2
        assert "Cleared sync state on 2" in caplog.text


class TestConflicts:
    def test_record_and_read(self, db: TodoDB) -> None:
        first = db.record_sync_conflict("issue", "td-aaaa0000", 5, {"title": "local"}, {"title": "remote"})
        second = db.record_sync_conflict("issue", "td-bbbb0000", 6, None, {"title": "r"})
        conflicts = db.get_recent_conflicts(10)
        assert [c.id for c in conflicts] == [second, first]
        assert json.loads(conflicts[1].local_data) == {"title": "local"}
        assert conflicts[0].local_data == "null"
        assert conflicts[0].overwritten_at.endswith("Z")

    def test_since_filter(self, db: TodoDB) -> None:
        db.record_sync_conflict("issue", "td-aaaa0000", 5, {}, {})
        assert db.get_recent_conflicts(10, since="9999-01-01T00:00:00.000000Z") == []


class TestHistory:
    def _entries(self, n: int) -> list[SyncHistoryEntry]:
        return [
            SyncHistoryEntry(direction="push", action_type="create", entity_type="issue", entity_id=f"td-{i:08x}")
            for i in range(n)
        ]

    def test_tail_and_follow(self, db: TodoDB) -> None:
        db.record_sync_history(self._entries(5))
        tail = db.get_sync_history_tail(2)
        assert [e.entity_id for e in tail] == ["td-00000003", "td-00000004"]
        assert all(e.timestamp.endswith("Z") for e in tail)
        after = db.get_sync_history(tail[0].id, 10)
        assert [e.entity_id for e in after] == ["td-00000004"]

    def test_prune(self, db: TodoDB) -> None:
        db.record_sync_history(self._entries(5))
        assert db.prune_sync_history(3) == 2
        assert [e.entity_id for e in db.get_sync_history(0, 10)] == ["td-00000002", "td-00000003", "td-00000004"]

    def test_empty_batch_is_noop(self, db: TodoDB) -> None:
        db.record_sync_history([])
        assert db.get_sync_history_tail(5) == []
