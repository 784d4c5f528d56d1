"""Action log reads, undo bookkeeping and review-cycle queries."""

from __future__ import annotations

import json

from tdcore.core import TodoDB
from tdcore.models import (
    ACTION_REJECT,
    ACTION_REVIEW,
    ACTION_UPDATE,
    ENTITY_ISSUE,
    STATUS_IN_PROGRESS,
    STATUS_IN_REVIEW,
    ActionLog,
    Issue,
    Log,
)


class TestLastAction:
    def test_last_action_per_session(self, db: TodoDB) -> None:
        a = db.create_issue_logged(Issue(title="a"), "s1")
        db.create_issue_logged(Issue(title="b"), "s2")
        last = db.get_last_action("s1")
        assert last is not None
        assert last.entity_id == a.id
        assert db.get_last_action("nobody") is None

    def test_non_undoable_entities_skipped(self, db: TodoDB) -> None:
        issue = db.create_issue_logged(Issue(title="a"), "s1")
        db.add_log(Log(message="progress", issue_id=issue.id, session_id="s1"))
        last = db.get_last_action("s1")
        assert last is not None
        assert last.entity_type == ENTITY_ISSUE

    def test_mark_undone(self, db: TodoDB) -> None:
        first = db.create_issue_logged(Issue(title="a"), "s1")
        second = db.create_issue_logged(Issue(title="b"), "s1")
        last = db.get_last_action("s1")
        assert last is not None
        assert last.entity_id == second.id
        db.mark_action_undone(last.id)
        again = db.get_last_action("s1")
        assert again is not None
        assert again.entity_id == first.id

    def test_recent_actions(self, db: TodoDB) -> None:
        for n in range(3):
            db.create_issue_logged(Issue(title=f"i{n}"), "s1")
        db.create_issue_logged(Issue(title="other"), "s2")
        assert len(db.get_recent_actions("s1", 2)) == 2
        assert len(db.get_recent_actions_all(10)) == 4

    def test_actions_for_entity_oldest_first(self, db: TodoDB) -> None:
        issue = db.create_issue_logged(Issue(title="a"), "s1")
        issue.title = "b"
        db.update_issue_logged(issue, "s1", ACTION_UPDATE)
        actions = db.get_actions_for_entity(issue.id)
        assert [a.action_type for a in actions] == ["create", "update"]
        assert json.loads(actions[1].new_data)["title"] == "b"


class TestLogAction:
    def test_log_action_assigns_id_and_timestamp(self, db: TodoDB) -> None:
        action = db.log_action(
            ActionLog(session_id="s1", action_type="update", entity_type="issue", entity_id="td-12345678")
        )
        assert action.id.startswith("al-")
        assert action.timestamp.endswith("Z")
        assert db.get_last_action("s1") == action


class TestRejectedInProgress:
    def _cycle(self, db: TodoDB, issue: Issue, status: str, action: str) -> None:
        issue.status = status
        db.update_issue_logged(issue, "s1", action)

    def test_rejected_issue_reported(self, db: TodoDB) -> None:
        rejected = db.create_issue(Issue(title="r"))
        self._cycle(db, rejected, STATUS_IN_REVIEW, ACTION_REVIEW)
        self._cycle(db, rejected, STATUS_IN_PROGRESS, ACTION_REJECT)

        plain = db.create_issue(Issue(title="p", status=STATUS_IN_PROGRESS))
        rereviewed = db.create_issue(Issue(title="rr"))
        self._cycle(db, rereviewed, STATUS_IN_REVIEW, ACTION_REVIEW)
        self._cycle(db, rereviewed, STATUS_IN_PROGRESS, ACTION_REJECT)
        self._cycle(db, rereviewed, STATUS_IN_REVIEW, ACTION_REVIEW)
        self._cycle(db, rereviewed, STATUS_IN_PROGRESS, ACTION_UPDATE)

        found = db.get_rejected_in_progress_issue_ids()
        assert rejected.id in found
        assert plain.id not in found
        assert rereviewed.id not in found
