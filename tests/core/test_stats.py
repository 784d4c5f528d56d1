"""Summary and extended statistics."""

from __future__ import annotations

from tdcore.core import TodoDB
from tdcore.models import Handoff, Issue, Log


class TestStats:
    def test_flat_counts(self, populated_db: TodoDB) -> None:
        stats = populated_db.get_stats()
        assert stats["total"] == 4
        assert stats["open"] == 3
        assert stats["closed"] == 1
        assert stats["type_epic"] == 1
        assert stats["type_task"] == 3

    def test_deleted_not_counted(self, populated_db: TodoDB) -> None:
        ids = populated_db._test_ids  # type: ignore[attr-defined]
        populated_db.delete_issue(ids["b"])
        assert populated_db.get_stats()["total"] == 3

    def test_extended(self, db: TodoDB) -> None:
        a = db.create_issue(Issue(title="a", points=3))
        db.create_issue(Issue(title="b", points=5, type="bug"))
        db.add_log(Log(message="x", issue_id=a.id, session_id="busy"))
        db.add_log(Log(message="y", issue_id=a.id, session_id="busy"))
        db.add_log(Log(message="z", issue_id=a.id, session_id="quiet"))
        db.add_handoff(Handoff(issue_id=a.id, session_id="busy"))

        stats = db.get_extended_stats()
        assert stats["total"] == 2
        assert stats["total_points"] == 8
        assert stats["created_today"] == 2
        assert stats["created_this_week"] == 2
        assert stats["total_logs"] == 3
        assert stats["total_handoffs"] == 1
        assert stats["by_type"] == {"task": 1, "bug": 1}
        assert stats["by_priority"] == {"P2": 2}
        assert stats["avg_points_per_task"] == 4.0
        assert stats["completion_rate"] == 0.0
        assert stats["most_active_session"] == "busy"
        assert stats["oldest_open"] is not None
        assert stats["oldest_open"]["id"] == a.id
        assert stats["last_closed"] is None

    def test_extended_empty(self, db: TodoDB) -> None:
        stats = db.get_extended_stats()
        assert stats["total"] == 0
        assert stats["avg_points_per_task"] == 0.0
        assert stats["newest_task"] is None
        assert stats["most_active_session"] == ""

    def test_extended_highlights(self, populated_db: TodoDB) -> None:
        ids = populated_db._test_ids  # type: ignore[attr-defined]
        stats = populated_db.get_extended_stats()
        assert stats["last_closed"] is not None
        assert stats["last_closed"]["id"] == ids["c"]
        assert stats["newest_task"] is not None
        assert stats["newest_task"]["id"] == ids["c"]
        assert stats["oldest_open"] is not None
        assert stats["oldest_open"]["id"] == ids["epic"]

    def test_extended_runs_three_queries(self, populated_db: TodoDB) -> None:
        statements: list[str] = []
        populated_db.conn.set_trace_callback(statements.append)
        try:
            populated_db.get_extended_stats()
        finally:
            populated_db.conn.set_trace_callback(None)
        assert len([s for s in statements if s.lstrip().upper().startswith("SELECT")]) == 3
