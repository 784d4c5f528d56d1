"""BoardsMixin — named issue views and their explicit orderings.

Positions on a board are kept dense: the live rows of a board always hold
positions ``0..n-1``. Inserting at ``p`` shifts rows at ``>= p`` up by one;
moving or removing an issue first closes the gap it leaves. Shifts go through
a large offset so the partial unique index on ``(board_id, position)`` never
sees two live rows on the same slot.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from tdcore.db_base import DBMixinProtocol, _now_iso
from tdcore.errors import IDCollisionError, ImmutableBoardError, InvalidInputError, NotFoundError
from tdcore.ids import BOARD_ID_PREFIX, board_issue_pos_id, generate_board_id, normalize_issue_id
from tdcore.models import (
    ACTION_BOARD_CREATE,
    ACTION_BOARD_DELETE,
    ACTION_BOARD_SET_POSITION,
    ACTION_BOARD_UNPOSITION,
    ACTION_BOARD_UPDATE,
    ALL_ISSUES_BOARD_ID,
    ENTITY_BOARD,
    ENTITY_BOARD_POSITION,
    VALID_VIEW_MODES,
    VIEW_SWIMLANES,
    Board,
    BoardIssuePosition,
    BoardIssueView,
    Issue,
)

if TYPE_CHECKING:
    from tdcore.db_query import ListIssuesOptions

logger = logging.getLogger(__name__)

SHIFT_OFFSET = 1_000_000
MAX_ID_ATTEMPTS = 3

_BOARD_COLUMNS = "id, name, query, is_builtin, view_mode, last_viewed_at, created_at, updated_at"
_POSITION_COLUMNS = "id, board_id, issue_id, position, added_at, deleted_at"


def _board_from_row(row: sqlite3.Row) -> Board:
    return Board(
        id=row["id"],
        name=row["name"],
        query=row["query"] or "",
        is_builtin=bool(row["is_builtin"]),
        view_mode=row["view_mode"] or VIEW_SWIMLANES,
        last_viewed_at=row["last_viewed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _position_from_row(row: sqlite3.Row) -> BoardIssuePosition:
    return BoardIssuePosition(
        id=row["id"],
        board_id=row["board_id"],
        issue_id=row["issue_id"],
        position=row["position"],
        added_at=row["added_at"] or "",
        deleted_at=row["deleted_at"],
    )


def _validate_query(query: str) -> None:
    """Run the registered board-query validator, if any."""
    if not query:
        return
    import tdcore.core

    validator = tdcore.core.QUERY_VALIDATOR
    if validator is None:
        return
    try:
        validator(query)
    except ValueError as exc:
        msg = f"invalid query: {exc}"
        raise InvalidInputError(msg) from exc


class BoardsMixin(DBMixinProtocol):
    """Board CRUD, view state and per-board issue positions."""

    if TYPE_CHECKING:

        def list_issues(self, opts: ListIssuesOptions | None = None) -> list[Issue]: ...

    # -- Reads ---------------------------------------------------------------

    def get_board(self, board_id: str) -> Board:
        row = self.conn.execute(f"SELECT {_BOARD_COLUMNS} FROM boards WHERE id = ?", (board_id,)).fetchone()
        if row is None:
            raise NotFoundError("board", board_id)
        return _board_from_row(row)

    def get_board_by_name(self, name: str) -> Board:
        """Case-insensitive lookup by name."""
        row = self.conn.execute(
            f"SELECT {_BOARD_COLUMNS} FROM boards WHERE name = ? COLLATE NOCASE", (name,)
        ).fetchone()
        if row is None:
            raise NotFoundError("board", name)
        return _board_from_row(row)

    def resolve_board_ref(self, ref: str) -> Board:
        """``bd-``-prefixed refs are ids; anything else is a name."""
        if ref.startswith(BOARD_ID_PREFIX):
            return self.get_board(ref)
        return self.get_board_by_name(ref)

    def list_boards(self) -> list[Board]:
        """Viewed boards most recent first, then never-viewed boards, each by name."""
        rows = self.conn.execute(
            f"SELECT {_BOARD_COLUMNS} FROM boards "
            "ORDER BY CASE WHEN last_viewed_at IS NULL THEN 1 ELSE 0 END, last_viewed_at DESC, name ASC"
        ).fetchall()
        return [_board_from_row(row) for row in rows]

    def get_last_viewed_board(self) -> Board:
        """The most recently viewed board, falling back to the builtin All Issues board."""
        row = self.conn.execute(
            f"SELECT {_BOARD_COLUMNS} FROM boards WHERE last_viewed_at IS NOT NULL "
            "ORDER BY last_viewed_at DESC LIMIT 1"
        ).fetchone()
        if row is None:
            return self.get_board(ALL_ISSUES_BOARD_ID)
        return _board_from_row(row)

    # -- Create / update / delete --------------------------------------------

    def create_board(self, name: str, query: str = "") -> Board:
        return self._apply_create_board(name, query, "", emit=False)

    def create_board_logged(self, name: str, query: str, session_id: str) -> Board:
        return self._apply_create_board(name, query, session_id, emit=True)

    def _apply_create_board(self, name: str, query: str, session_id: str, *, emit: bool) -> Board:
        _validate_query(query)
        with self._write_txn() as conn:
            now = _now_iso()
            board = Board(id="", name=name, query=query, view_mode=VIEW_SWIMLANES, created_at=now, updated_at=now)
            for _ in range(MAX_ID_ATTEMPTS):
                board.id = generate_board_id()
                try:
                    conn.execute(
                        "INSERT INTO boards (id, name, query, is_builtin, view_mode, created_at, updated_at) "
                        "VALUES (?, ?, ?, 0, ?, ?, ?)",
                        (board.id, board.name, board.query, board.view_mode, board.created_at, board.updated_at),
                    )
                except sqlite3.IntegrityError as exc:
                    if "boards.name" in str(exc):
                        msg = f"board already exists: {name}"
                        raise InvalidInputError(msg) from exc
                    if "boards.id" not in str(exc):
                        raise
                    continue
                break
            else:
                msg = f"failed to generate unique board ID after {MAX_ID_ATTEMPTS} attempts"
                raise IDCollisionError(msg)
            if emit:
                self._append_action(session_id, ACTION_BOARD_CREATE, ENTITY_BOARD, board.id, None, board.to_dict())
        logger.debug("Created board %s", board.id, extra={"op": "create_board", "entity": board.id})
        return board

    def update_board(self, board: Board) -> Board:
        """Persist *board*'s name and query. Builtin boards are immutable."""
        return self._apply_update_board(board, "", emit=False)

    def update_board_logged(self, board: Board, session_id: str) -> Board:
        return self._apply_update_board(board, session_id, emit=True)

    def _apply_update_board(self, board: Board, session_id: str, *, emit: bool) -> Board:
        with self._write_txn() as conn:
            previous = self.get_board(board.id)
            if previous.is_builtin:
                msg = "cannot modify builtin board"
                raise ImmutableBoardError(msg)
            _validate_query(board.query)
            board.updated_at = _now_iso()
            conn.execute(
                "UPDATE boards SET name = ?, query = ?, updated_at = ? WHERE id = ?",
                (board.name, board.query, board.updated_at, board.id),
            )
            if emit:
                updated = self.get_board(board.id)
                self._append_action(
                    session_id, ACTION_BOARD_UPDATE, ENTITY_BOARD, board.id, previous.to_dict(), updated.to_dict()
                )
        return board

    def delete_board(self, board_id: str) -> None:
        """Delete a board and soft-delete its positions. Builtin boards cannot be deleted."""
        self._apply_delete_board(board_id, "", emit=False)

    def delete_board_logged(self, board_id: str, session_id: str) -> None:
        """As ``delete_board``, journaling one ``board_unposition`` per live position and a ``board_delete``."""
        self._apply_delete_board(board_id, session_id, emit=True)

    def _apply_delete_board(self, board_id: str, session_id: str, *, emit: bool) -> None:
        with self._write_txn() as conn:
            previous = self.get_board(board_id)
            if previous.is_builtin:
                msg = "cannot delete builtin board"
                raise ImmutableBoardError(msg)
            positions = self.get_board_issue_positions(board_id)
            now = _now_iso()
            conn.execute(
                "UPDATE board_issue_positions SET deleted_at = ? WHERE board_id = ? AND deleted_at IS NULL",
                (now, board_id),
            )
            conn.execute("DELETE FROM boards WHERE id = ?", (board_id,))
            if emit:
                for pos in positions:
                    self._append_action(
                        session_id, ACTION_BOARD_UNPOSITION, ENTITY_BOARD_POSITION, pos.id, pos.to_dict(), None
                    )
                self._append_action(session_id, ACTION_BOARD_DELETE, ENTITY_BOARD, board_id, previous.to_dict(), None)
        logger.debug("Deleted board %s", board_id, extra={"op": "delete_board", "entity": board_id})

    # -- View state ----------------------------------------------------------

    def update_board_last_viewed(self, board_id: str) -> None:
        with self._write_txn() as conn:
            conn.execute("UPDATE boards SET last_viewed_at = ? WHERE id = ?", (_now_iso(), board_id))

    def update_board_view_mode(self, board_id: str, view_mode: str) -> None:
        if view_mode not in VALID_VIEW_MODES:
            msg = f"invalid view mode: {view_mode} (must be 'swimlanes' or 'backlog')"
            raise InvalidInputError(msg)
        with self._write_txn() as conn:
            conn.execute(
                "UPDATE boards SET view_mode = ?, updated_at = ? WHERE id = ?", (view_mode, _now_iso(), board_id)
            )

    # -- Positions -----------------------------------------------------------

    def _get_position_row(self, board_id: str, issue_id: str) -> BoardIssuePosition | None:
        row = self.conn.execute(
            f"SELECT {_POSITION_COLUMNS} FROM board_issue_positions WHERE board_id = ? AND issue_id = ?",
            (board_id, issue_id),
        ).fetchone()
        return _position_from_row(row) if row is not None else None

    def _shift_positions(self, board_id: str, from_position: int, delta: int) -> None:
        """Move every live row at ``>= from_position`` by *delta* (+1 or -1)."""
        conn = self.conn
        conn.execute(
            "UPDATE board_issue_positions SET position = position + ? "
            "WHERE board_id = ? AND position >= ? AND deleted_at IS NULL",
            (SHIFT_OFFSET, board_id, from_position),
        )
        conn.execute(
            "UPDATE board_issue_positions SET position = position - ? + ? "
            "WHERE board_id = ? AND position >= ? AND deleted_at IS NULL",
            (SHIFT_OFFSET, delta, board_id, SHIFT_OFFSET),
        )

    def _live_count(self, board_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM board_issue_positions WHERE board_id = ? AND deleted_at IS NULL", (board_id,)
        ).fetchone()
        return int(row[0])

    def set_issue_position(self, board_id: str, issue_id: str, position: int) -> BoardIssuePosition:
        return self._apply_set_position(board_id, issue_id, position, "", emit=False)

    def set_issue_position_logged(
        self, board_id: str, issue_id: str, position: int, session_id: str
    ) -> BoardIssuePosition:
        return self._apply_set_position(board_id, issue_id, position, session_id, emit=True)

    def _apply_set_position(
        self, board_id: str, issue_id: str, position: int, session_id: str, *, emit: bool
    ) -> BoardIssuePosition:
        """Place *issue_id* at *position* (clamped to ``0..n``), shifting the rest."""
        issue_id = normalize_issue_id(issue_id)
        pos_id = board_issue_pos_id(board_id, issue_id)
        with self._write_txn() as conn:
            now = _now_iso()
            existing = self._get_position_row(board_id, issue_id)
            previous = existing if existing is not None and existing.deleted_at is None else None
            if previous is not None:
                conn.execute("UPDATE board_issue_positions SET deleted_at = ? WHERE id = ?", (now, previous.id))
                self._shift_positions(board_id, previous.position + 1, -1)

            position = max(0, min(position, self._live_count(board_id)))
            self._shift_positions(board_id, position, +1)

            if existing is not None:
                conn.execute(
                    "UPDATE board_issue_positions SET position = ?, deleted_at = NULL, added_at = ? WHERE id = ?",
                    (position, now, existing.id),
                )
            else:
                conn.execute(
                    "INSERT INTO board_issue_positions (id, board_id, issue_id, position, added_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (pos_id, board_id, issue_id, position, now),
                )
            placed = BoardIssuePosition(
                id=existing.id if existing is not None else pos_id,
                board_id=board_id,
                issue_id=issue_id,
                position=position,
                added_at=now,
            )
            if emit:
                self._append_action(
                    session_id,
                    ACTION_BOARD_SET_POSITION,
                    ENTITY_BOARD_POSITION,
                    placed.id,
                    previous.to_dict() if previous is not None else None,
                    placed.to_dict(),
                )
        return placed

    def swap_issue_positions(self, board_id: str, issue_a: str, issue_b: str) -> None:
        """Exchange the positions of two positioned issues."""
        issue_a = normalize_issue_id(issue_a)
        issue_b = normalize_issue_id(issue_b)
        with self._write_txn() as conn:
            rows = {}
            for issue_id in (issue_a, issue_b):
                row = self._get_position_row(board_id, issue_id)
                if row is None or row.deleted_at is not None:
                    msg = f"issue {issue_id} not positioned on board"
                    raise InvalidInputError(msg)
                rows[issue_id] = row
            conn.execute("UPDATE board_issue_positions SET position = -1 WHERE id = ?", (rows[issue_a].id,))
            conn.execute(
                "UPDATE board_issue_positions SET position = ? WHERE id = ?", (rows[issue_a].position, rows[issue_b].id)
            )
            conn.execute(
                "UPDATE board_issue_positions SET position = ? WHERE id = ?", (rows[issue_b].position, rows[issue_a].id)
            )

    def remove_issue_position(self, board_id: str, issue_id: str) -> None:
        self._apply_remove_position(board_id, issue_id, "", emit=False)

    def remove_issue_position_logged(self, board_id: str, issue_id: str, session_id: str) -> None:
        self._apply_remove_position(board_id, issue_id, session_id, emit=True)

    def _apply_remove_position(self, board_id: str, issue_id: str, session_id: str, *, emit: bool) -> None:
        """Soft-delete the issue's live position and close the gap."""
        issue_id = normalize_issue_id(issue_id)
        with self._write_txn() as conn:
            existing = self._get_position_row(board_id, issue_id)
            if existing is None or existing.deleted_at is not None:
                if emit:
                    msg = f"issue {issue_id} not positioned on board"
                    raise InvalidInputError(msg)
                return
            conn.execute("UPDATE board_issue_positions SET deleted_at = ? WHERE id = ?", (_now_iso(), existing.id))
            self._shift_positions(board_id, existing.position + 1, -1)
            if emit:
                self._append_action(
                    session_id, ACTION_BOARD_UNPOSITION, ENTITY_BOARD_POSITION, existing.id, existing.to_dict(), None
                )

    def get_board_issue_positions(self, board_id: str) -> list[BoardIssuePosition]:
        """Live positions of a board, lowest first."""
        rows = self.conn.execute(
            f"SELECT {_POSITION_COLUMNS} FROM board_issue_positions "
            "WHERE board_id = ? AND deleted_at IS NULL ORDER BY position ASC",
            (board_id,),
        ).fetchall()
        return [_position_from_row(row) for row in rows]

    def get_max_board_position(self, board_id: str) -> int:
        """Highest live position on the board, 0 when none."""
        row = self.conn.execute(
            "SELECT MAX(position) FROM board_issue_positions WHERE board_id = ? AND deleted_at IS NULL", (board_id,)
        ).fetchone()
        return int(row[0]) if row[0] is not None else 0

    # -- Board views ---------------------------------------------------------

    def get_board_issues(
        self, board_id: str, session_id: str = "", status_filter: list[str] | None = None
    ) -> list[BoardIssueView]:
        """All non-deleted issues (optionally by status) ordered for *board_id*.

        Board queries are not evaluated here; callers with a query engine run
        it themselves and pass the result to ``apply_board_positions``.
        """
        from tdcore.db_query import ListIssuesOptions

        self.get_board(board_id)
        issues = self.list_issues(ListIssuesOptions(status=list(status_filter or []), sort_by="priority"))
        return self.apply_board_positions(board_id, issues)

    def apply_board_positions(self, board_id: str, issues: list[Issue]) -> list[BoardIssueView]:
        """Positioned issues first by position, then the rest in input order."""
        position_map = {p.issue_id: p.position for p in self.get_board_issue_positions(board_id)}
        positioned: list[BoardIssueView] = []
        unpositioned: list[BoardIssueView] = []
        for issue in issues:
            if issue.id in position_map:
                positioned.append(
                    BoardIssueView(board_id=board_id, issue=issue, position=position_map[issue.id], has_position=True)
                )
            else:
                unpositioned.append(BoardIssueView(board_id=board_id, issue=issue))
        positioned.sort(key=lambda view: view.position)
        return positioned + unpositioned
