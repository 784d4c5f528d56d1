"""StatsMixin — dashboard counts over live (non-deleted) issues."""

from __future__ import annotations

from datetime import datetime, timedelta

from tdcore.db_base import DBMixinProtocol
from tdcore.ids import format_timestamp
from tdcore.models import ISSUE_COLUMNS, STATUS_CLOSED, STATUS_OPEN, Issue, issue_from_row
from tdcore.types.core import ExtendedStats, IssueDict, StatsResult


class StatsMixin(DBMixinProtocol):
    """Summary and extended statistics."""

    def get_stats(self) -> StatsResult:
        """Flat counts: ``total``, one key per status, and ``type_<type>`` per type."""
        stats: StatsResult = {}
        stats["total"] = self.conn.execute("SELECT COUNT(*) FROM issues WHERE deleted_at IS NULL").fetchone()[0]
        for row in self.conn.execute(
            "SELECT status, COUNT(*) AS cnt FROM issues WHERE deleted_at IS NULL GROUP BY status"
        ).fetchall():
            stats[row["status"]] = row["cnt"]
        for row in self.conn.execute(
            "SELECT type, COUNT(*) AS cnt FROM issues WHERE deleted_at IS NULL GROUP BY type"
        ).fetchall():
            stats[f"type_{row['type']}"] = row["cnt"]
        return stats

    def get_extended_stats(self) -> ExtendedStats:
        """Counts, breakdowns and highlights for the stats dashboard.

        Three queries: totals (with the most active session), the
        status/type/priority breakdown, and the oldest-open, newest and
        last-closed highlights. "Today" and "this week" are measured from
        local midnight and now minus seven days respectively.
        """
        now = datetime.now().astimezone()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow = today + timedelta(days=1)
        week_ago = now - timedelta(days=7)

        row = self.conn.execute(
            "SELECT COUNT(*) AS total, COALESCE(SUM(points), 0) AS points, "
            "COALESCE(SUM(CASE WHEN created_at >= ? AND created_at < ? THEN 1 ELSE 0 END), 0) AS today, "
            "COALESCE(SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END), 0) AS week, "
            "(SELECT COUNT(*) FROM logs) AS logs, (SELECT COUNT(*) FROM handoffs) AS handoffs, "
            "(SELECT session_id FROM logs WHERE session_id != '' "
            "GROUP BY session_id ORDER BY COUNT(*) DESC LIMIT 1) AS active_session "
            "FROM issues WHERE deleted_at IS NULL",
            (format_timestamp(today), format_timestamp(tomorrow), format_timestamp(week_ago)),
        ).fetchone()

        breakdown: dict[str, dict[str, int]] = {"status": {}, "type": {}, "priority": {}}
        for r in self.conn.execute(
            "SELECT 'status' AS category, status AS value, COUNT(*) AS cnt FROM issues "
            "WHERE deleted_at IS NULL GROUP BY status "
            "UNION ALL SELECT 'type', type, COUNT(*) FROM issues WHERE deleted_at IS NULL GROUP BY type "
            "UNION ALL SELECT 'priority', priority, COUNT(*) FROM issues WHERE deleted_at IS NULL GROUP BY priority"
        ).fetchall():
            breakdown[r["category"]][r["value"]] = r["cnt"]

        highlights: dict[str, Issue] = {}
        for r in self.conn.execute(
            f"SELECT 'oldest_open' AS slot, * FROM (SELECT {ISSUE_COLUMNS} FROM issues "  # noqa: S608
            "WHERE status = ? AND deleted_at IS NULL ORDER BY created_at ASC LIMIT 1) "
            f"UNION ALL SELECT 'newest_task', * FROM (SELECT {ISSUE_COLUMNS} FROM issues "
            "WHERE deleted_at IS NULL ORDER BY created_at DESC LIMIT 1) "
            f"UNION ALL SELECT 'last_closed', * FROM (SELECT {ISSUE_COLUMNS} FROM issues "
            "WHERE status = ? AND closed_at IS NOT NULL AND deleted_at IS NULL ORDER BY closed_at DESC LIMIT 1)",
            (STATUS_OPEN, STATUS_CLOSED),
        ).fetchall():
            highlights[r["slot"]] = issue_from_row(r)

        def _highlight(slot: str) -> IssueDict | None:
            issue = highlights.get(slot)
            return issue.to_dict() if issue else None

        total = row["total"]
        return {
            "total": total,
            "total_points": row["points"],
            "created_today": row["today"],
            "created_this_week": row["week"],
            "total_logs": row["logs"],
            "total_handoffs": row["handoffs"],
            "by_status": breakdown["status"],
            "by_type": breakdown["type"],
            "by_priority": breakdown["priority"],
            "oldest_open": _highlight("oldest_open"),
            "newest_task": _highlight("newest_task"),
            "last_closed": _highlight("last_closed"),
            "avg_points_per_task": row["points"] / total if total else 0.0,
            "completion_rate": breakdown["status"].get(STATUS_CLOSED, 0) / total if total else 0.0,
            "most_active_session": row["active_session"] or "",
        }
