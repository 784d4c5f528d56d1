"""NotesMixin — free-form project notes.

Notes are not tied to an agent session: every mutation is journaled with an
empty session id under entity type ``note``.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any

from tdcore.db_base import DBMixinProtocol, _now_iso
from tdcore.errors import IDCollisionError, NotFoundError
from tdcore.ids import generate_note_id
from tdcore.models import ACTION_CREATE, ACTION_DELETE, ACTION_UPDATE, ENTITY_NOTE, Note

MAX_ID_ATTEMPTS = 3
DEFAULT_NOTES_LIMIT = 50

_NOTE_COLUMNS = "id, title, content, created_at, updated_at, pinned, archived, deleted_at"


@dataclass
class ListNotesOptions:
    """``pinned`` / ``archived``: ``None`` = either, ``True`` = only, ``False`` = exclude."""

    pinned: bool | None = None
    archived: bool | None = None
    include_deleted: bool = False
    search: str = ""
    limit: int = DEFAULT_NOTES_LIMIT


def _note_from_row(row: sqlite3.Row) -> Note:
    return Note(
        id=row["id"],
        title=row["title"],
        content=row["content"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        pinned=bool(row["pinned"]),
        archived=bool(row["archived"]),
        deleted_at=row["deleted_at"] or None,
    )


class NotesMixin(DBMixinProtocol):
    """Note CRUD with pin/archive flags."""

    def _read_note(self, note_id: str) -> Note:
        row = self.conn.execute(f"SELECT {_NOTE_COLUMNS} FROM notes WHERE id = ?", (note_id,)).fetchone()
        if row is None:
            raise NotFoundError("note", note_id)
        return _note_from_row(row)

    def get_note(self, note_id: str) -> Note:
        """Fetch a live note; soft-deleted notes are reported as not found."""
        note = self._read_note(note_id)
        if note.deleted_at is not None:
            raise NotFoundError("note", note_id)
        return note

    def create_note(self, title: str, content: str = "") -> Note:
        with self._write_txn() as conn:
            now = _now_iso()
            note = Note(id="", title=title, content=content, created_at=now, updated_at=now)
            for _ in range(MAX_ID_ATTEMPTS):
                note.id = generate_note_id()
                try:
                    conn.execute(
                        "INSERT INTO notes (id, title, content, created_at, updated_at, pinned, archived) "
                        "VALUES (?, ?, ?, ?, ?, 0, 0)",
                        (note.id, note.title, note.content, note.created_at, note.updated_at),
                    )
                except sqlite3.IntegrityError as exc:
                    if "UNIQUE constraint" not in str(exc):
                        raise
                    continue
                break
            else:
                msg = f"failed to generate unique note ID after {MAX_ID_ATTEMPTS} attempts"
                raise IDCollisionError(msg)
            self._append_action("", ACTION_CREATE, ENTITY_NOTE, note.id, None, note.to_dict())
        return note

    def list_notes(self, opts: ListNotesOptions | None = None) -> list[Note]:
        """Pinned notes first, then most recently updated."""
        opts = opts or ListNotesOptions()
        clauses: list[str] = []
        args: list[Any] = []
        if not opts.include_deleted:
            clauses.append("deleted_at IS NULL")
        if opts.pinned is not None:
            clauses.append("pinned = ?")
            args.append(int(opts.pinned))
        if opts.archived is not None:
            clauses.append("archived = ?")
            args.append(int(opts.archived))
        if opts.search:
            clauses.append("(title LIKE ? OR content LIKE ?)")
            pattern = f"%{opts.search}%"
            args.extend([pattern, pattern])
        where = " AND ".join(clauses) if clauses else "1=1"
        args.append(opts.limit if opts.limit > 0 else DEFAULT_NOTES_LIMIT)
        rows = self.conn.execute(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE {where} ORDER BY pinned DESC, updated_at DESC LIMIT ?",  # noqa: S608
            args,
        ).fetchall()
        return [_note_from_row(row) for row in rows]

    def update_note(self, note_id: str, title: str, content: str) -> Note:
        return self._apply_note_change(note_id, {"title": title, "content": content})

    def delete_note(self, note_id: str) -> None:
        """Soft-delete; the journal row has empty new_data."""
        with self._write_txn() as conn:
            previous = self.get_note(note_id)
            now = _now_iso()
            conn.execute("UPDATE notes SET deleted_at = ?, updated_at = ? WHERE id = ?", (now, now, note_id))
            self._append_action("", ACTION_DELETE, ENTITY_NOTE, note_id, previous.to_dict(), None)

    def pin_note(self, note_id: str) -> Note:
        return self._apply_note_change(note_id, {"pinned": 1})

    def unpin_note(self, note_id: str) -> Note:
        return self._apply_note_change(note_id, {"pinned": 0})

    def archive_note(self, note_id: str) -> Note:
        return self._apply_note_change(note_id, {"archived": 1})

    def unarchive_note(self, note_id: str) -> Note:
        return self._apply_note_change(note_id, {"archived": 0})

    def _apply_note_change(self, note_id: str, changes: dict[str, Any]) -> Note:
        """Apply column *changes* to a live note and journal it as an ``update``."""
        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self._write_txn() as conn:
            previous = self.get_note(note_id)
            conn.execute(
                f"UPDATE notes SET {assignments}, updated_at = ? WHERE id = ?",  # noqa: S608
                (*changes.values(), _now_iso(), note_id),
            )
            updated = self.get_note(note_id)
            self._append_action("", ACTION_UPDATE, ENTITY_NOTE, note_id, previous.to_dict(), updated.to_dict())
        return updated
