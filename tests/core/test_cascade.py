"""Epic status cascade and dependent unblocking."""

from __future__ import annotations

from tdcore.core import TodoDB
from tdcore.models import (
    ACTION_CLOSE,
    ACTION_REVIEW,
    ACTION_UNBLOCK,
    STATUS_BLOCKED,
    STATUS_CLOSED,
    STATUS_IN_REVIEW,
    STATUS_OPEN,
    TYPE_EPIC,
    Issue,
)
from tests.core.conftest import actions_for


def _move(db: TodoDB, issue_id: str, status: str, session_id: str = "s1") -> None:
    issue = db.get_issue(issue_id)
    issue.status = status
    db.update_issue_logged(issue, session_id)


class TestCascadeUp:
    def test_review_cascades_to_epic(self, db: TodoDB) -> None:
        epic = db.create_issue(Issue(title="E", type=TYPE_EPIC))
        c1 = db.create_issue(Issue(title="C1", parent_id=epic.id))
        c2 = db.create_issue(Issue(title="C2", parent_id=epic.id))
        _move(db, c1.id, STATUS_IN_REVIEW)
        _move(db, c2.id, STATUS_IN_REVIEW)

        count, cascaded = db.cascade_up_parent_status(c2.id, STATUS_IN_REVIEW, "s1")

        assert (count, cascaded) == (1, [epic.id])
        assert db.get_issue(epic.id).status == STATUS_IN_REVIEW
        rows = actions_for(db, epic.id)
        assert rows[-1]["action_type"] == ACTION_REVIEW
        assert any("Auto-cascaded" in log.message for log in db.get_logs(epic.id))

    def test_closed_child_satisfies_review(self, db: TodoDB) -> None:
        epic = db.create_issue(Issue(title="E", type=TYPE_EPIC))
        c1 = db.create_issue(Issue(title="C1", parent_id=epic.id))
        c2 = db.create_issue(Issue(title="C2", parent_id=epic.id))
        _move(db, c1.id, STATUS_CLOSED)
        _move(db, c2.id, STATUS_IN_REVIEW)
        assert db.cascade_up_parent_status(c2.id, STATUS_IN_REVIEW, "s1") == (1, [epic.id])

    def test_incomplete_children_block_cascade(self, db: TodoDB) -> None:
        epic = db.create_issue(Issue(title="E", type=TYPE_EPIC))
        db.create_issue(Issue(title="C1", parent_id=epic.id))
        c2 = db.create_issue(Issue(title="C2", parent_id=epic.id))
        _move(db, c2.id, STATUS_CLOSED)
        assert db.cascade_up_parent_status(c2.id, STATUS_CLOSED, "s1") == (0, [])
        assert db.get_issue(epic.id).status == STATUS_OPEN

    def test_non_epic_parent_not_touched(self, db: TodoDB) -> None:
        parent = db.create_issue(Issue(title="P"))
        child = db.create_issue(Issue(title="C", parent_id=parent.id))
        _move(db, child.id, STATUS_CLOSED)
        assert db.cascade_up_parent_status(child.id, STATUS_CLOSED, "s1") == (0, [])

    def test_close_recurses_through_epics(self, db: TodoDB) -> None:
        top = db.create_issue(Issue(title="Top", type=TYPE_EPIC))
        mid = db.create_issue(Issue(title="Mid", type=TYPE_EPIC, parent_id=top.id))
        leaf = db.create_issue(Issue(title="Leaf", parent_id=mid.id))
        _move(db, leaf.id, STATUS_CLOSED)

        count, cascaded = db.cascade_up_parent_status(leaf.id, STATUS_CLOSED, "s1")

        assert (count, cascaded) == (2, [mid.id, top.id])
        closed_top = db.get_issue(top.id)
        assert closed_top.status == STATUS_CLOSED
        assert closed_top.closed_at is not None
        assert actions_for(db, top.id)[-1]["action_type"] == ACTION_CLOSE

    def test_already_at_target_is_noop(self, db: TodoDB) -> None:
        epic = db.create_issue(Issue(title="E", type=TYPE_EPIC, status=STATUS_IN_REVIEW))
        child = db.create_issue(Issue(title="C", parent_id=epic.id, status=STATUS_IN_REVIEW))
        assert db.cascade_up_parent_status(child.id, STATUS_IN_REVIEW, "s1") == (0, [])

    def test_unknown_target_is_noop(self, db: TodoDB) -> None:
        epic = db.create_issue(Issue(title="E", type=TYPE_EPIC))
        child = db.create_issue(Issue(title="C", parent_id=epic.id))
        assert db.cascade_up_parent_status(child.id, "in_progress", "s1") == (0, [])


class TestUnblockDependents:
    def test_unblocks_when_all_deps_closed(self, db: TodoDB) -> None:
        dep1 = db.create_issue(Issue(title="dep1"))
        dep2 = db.create_issue(Issue(title="dep2"))
        blocked = db.create_issue(Issue(title="blocked", status=STATUS_BLOCKED))
        db.add_dependency(blocked.id, dep1.id)
        db.add_dependency(blocked.id, dep2.id)

        _move(db, dep1.id, STATUS_CLOSED)
        assert db.cascade_unblock_dependents(dep1.id, "s1") == (0, [])
        assert db.get_issue(blocked.id).status == STATUS_BLOCKED

        _move(db, dep2.id, STATUS_CLOSED)
        assert db.cascade_unblock_dependents(dep2.id, "s1") == (1, [blocked.id])
        assert db.get_issue(blocked.id).status == STATUS_OPEN
        assert actions_for(db, blocked.id)[-1]["action_type"] == ACTION_UNBLOCK
        assert any("Auto-unblocked" in log.message for log in db.get_logs(blocked.id))

    def test_non_blocked_dependents_left_alone(self, db: TodoDB) -> None:
        dep = db.create_issue(Issue(title="dep"))
        waiting = db.create_issue(Issue(title="waiting"))
        db.add_dependency(waiting.id, dep.id)
        _move(db, dep.id, STATUS_CLOSED)
        assert db.cascade_unblock_dependents(dep.id, "s1") == (0, [])

    def test_closing_epic_via_cascade_unblocks(self, db: TodoDB) -> None:
        epic = db.create_issue(Issue(title="E", type=TYPE_EPIC))
        child = db.create_issue(Issue(title="C", parent_id=epic.id))
        waiting = db.create_issue(Issue(title="W", status=STATUS_BLOCKED))
        db.add_dependency(waiting.id, epic.id)
        _move(db, child.id, STATUS_CLOSED)
        db.cascade_up_parent_status(child.id, STATUS_CLOSED, "s1")
        assert db.get_issue(waiting.id).status == STATUS_OPEN
