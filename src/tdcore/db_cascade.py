"""CascadeMixin — bottom-up parent status propagation and auto-unblock.

When every direct child of an epic reaches a target status, the epic follows
(``review`` for in_review, ``close`` for closed) and the check repeats one
level up. Closing an epic also reopens blocked issues whose dependencies are
now all closed.

Each parent's update, its action-log row and its progress log entry share one
write transaction; separate parents commit separately.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tdcore.db_base import DBMixinProtocol, _now_iso
from tdcore.errors import NotFoundError
from tdcore.models import (
    ACTION_CLOSE,
    ACTION_REVIEW,
    ACTION_UNBLOCK,
    LOG_PROGRESS,
    STATUS_BLOCKED,
    STATUS_CLOSED,
    STATUS_IN_REVIEW,
    STATUS_OPEN,
    TYPE_EPIC,
    Issue,
    Log,
)

logger = logging.getLogger(__name__)

# Child statuses that satisfy each cascade target
_SATISFIES = {
    STATUS_IN_REVIEW: frozenset({STATUS_IN_REVIEW, STATUS_CLOSED}),
    STATUS_CLOSED: frozenset({STATUS_CLOSED}),
}


class CascadeMixin(DBMixinProtocol):
    """Epic status cascade and dependency auto-unblock."""

    if TYPE_CHECKING:

        def update_issue_logged(self, issue: Issue, session_id: str, action_type: str = ...) -> Issue: ...

        def get_direct_children(self, issue_id: str) -> list[Issue]: ...

        def get_blocked_by(self, issue_id: str) -> list[str]: ...

        def get_dependencies(self, issue_id: str) -> list[str]: ...

        def get_issue_statuses(self, issue_ids: list[str]) -> dict[str, str]: ...

        def _insert_log(self, log: Log) -> Log: ...

    def cascade_up_parent_status(self, issue_id: str, target: str, session_id: str) -> tuple[int, list[str]]:
        """Move epic ancestors of *issue_id* to *target* once all their children qualify.

        Returns ``(count, ids)`` of the parents that changed, nearest first.
        """
        cascaded: list[str] = []
        current_id = issue_id
        while True:
            parent = self._cascade_one(current_id, target, session_id)
            if parent is None:
                break
            cascaded.append(parent.id)
            if target == STATUS_CLOSED:
                self.cascade_unblock_dependents(parent.id, session_id)
            current_id = parent.id
        return len(cascaded), cascaded

    def _cascade_one(self, issue_id: str, target: str, session_id: str) -> Issue | None:
        satisfying = _SATISFIES.get(target)
        if satisfying is None:
            return None
        with self._write_txn():
            try:
                issue = self.get_issue(issue_id)
                if not issue.parent_id:
                    return None
                parent = self.get_issue(issue.parent_id)
            except NotFoundError:
                return None
            if parent.type != TYPE_EPIC or parent.status in (target, STATUS_CLOSED):
                return None

            children = self.get_direct_children(parent.id)
            if not children or any(child.status not in satisfying for child in children):
                return None

            parent.status = target
            action = ACTION_REVIEW
            if target == STATUS_CLOSED:
                parent.closed_at = _now_iso()
                action = ACTION_CLOSE
            self.update_issue_logged(parent, session_id, action)
            self._insert_log(
                Log(
                    message=f"Auto-cascaded to {target} (all children complete)",
                    issue_id=parent.id,
                    session_id=session_id,
                    type=LOG_PROGRESS,
                )
            )
        logger.debug("Cascaded %s to %s", parent.id, target, extra={"op": "cascade", "entity": parent.id})
        return parent

    def cascade_unblock_dependents(self, closed_id: str, session_id: str) -> tuple[int, list[str]]:
        """Reopen blocked dependents of *closed_id* whose dependencies are all closed."""
        unblocked: list[str] = []
        for dependent_id in self.get_blocked_by(closed_id):
            with self._write_txn():
                try:
                    issue = self.get_issue(dependent_id)
                except NotFoundError:
                    continue
                if issue.status != STATUS_BLOCKED:
                    continue
                deps = self.get_dependencies(dependent_id)
                statuses = self.get_issue_statuses(deps)
                if any(statuses.get(dep) != STATUS_CLOSED for dep in deps):
                    continue

                issue.status = STATUS_OPEN
                self.update_issue_logged(issue, session_id, ACTION_UNBLOCK)
                self._insert_log(
                    Log(
                        message=f"Auto-unblocked (dependency {closed_id} closed)",
                        issue_id=dependent_id,
                        session_id=session_id,
                        type=LOG_PROGRESS,
                    )
                )
            unblocked.append(dependent_id)
        return len(unblocked), unblocked
