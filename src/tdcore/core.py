"""Core database handle for the td issue store.

Single owner of the SQLite connection for one project. Every mutation in the
mixins runs inside ``TodoDB._write_txn()``, which takes the cross-process
write lock, opens an IMMEDIATE transaction, and commits or rolls back as one
unit. Reads go straight to the connection and rely on WAL snapshots.

Convention-based discovery: each project has a ``.todos/`` directory
containing ``issues.db`` (SQLite), the ``lock`` file, and the sideband JSONL
logs.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

from tdcore.db_actionlog import ActionLogMixin
from tdcore.db_activity import ActivityMixin
from tdcore.db_boards import BoardsMixin
from tdcore.db_cascade import CascadeMixin
from tdcore.db_issues import IssuesMixin
from tdcore.db_notes import NotesMixin
from tdcore.db_query import QueryMixin
from tdcore.db_relations import RelationsMixin
from tdcore.db_schema import CURRENT_SCHEMA_VERSION, SCHEMA_SQL
from tdcore.db_sessions import SessionsMixin
from tdcore.db_stats import StatsMixin
from tdcore.db_sync import SyncMixin
from tdcore.errors import NotInitializedError
from tdcore.lock import DEFAULT_LOCK_TIMEOUT, WriteLock
from tdcore.migrations import apply_pending_migrations
from tdcore.migrations import get_schema_version as _read_schema_version
from tdcore.migrations import set_schema_version as _write_schema_version

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

TODOS_DIR_NAME = ".todos"
DB_FILENAME = "issues.db"
BUSY_TIMEOUT_MS = 500


def find_todos_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for a .todos/ directory.

    Returns the project root (the directory that contains ``.todos/``).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        if (parent / TODOS_DIR_NAME).is_dir():
            return parent
    msg = f"No {TODOS_DIR_NAME}/ directory found in {current} or any parent"
    raise NotInitializedError(msg)


# ---------------------------------------------------------------------------
# Board query validation hook
# ---------------------------------------------------------------------------

QueryValidator = Callable[[str], None]

# Process-wide; None means any non-empty board query is accepted.
QUERY_VALIDATOR: QueryValidator | None = None


def set_query_validator(fn: QueryValidator | None) -> None:
    """Install the validator boards use to reject malformed queries (``ValueError``)."""
    global QUERY_VALIDATOR
    QUERY_VALIDATOR = fn


# ---------------------------------------------------------------------------
# TodoDB — the core
# ---------------------------------------------------------------------------


class TodoDB(
    IssuesMixin,
    QueryMixin,
    RelationsMixin,
    CascadeMixin,
    BoardsMixin,
    NotesMixin,
    ActivityMixin,
    ActionLogMixin,
    SessionsMixin,
    SyncMixin,
    StatsMixin,
):
    """Direct SQLite operations over ``<base_dir>/.todos/issues.db``."""

    def __init__(
        self,
        base_dir: str | Path,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        check_same_thread: bool = True,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.todos_dir = self.base_dir / TODOS_DIR_NAME
        self.db_path = self.todos_dir / DB_FILENAME
        self.lock_timeout = lock_timeout
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread
        self._lock = WriteLock(self.todos_dir)
        self._txn_depth = 0
        self._txn_owner: int | None = None

    @classmethod
    def open(
        cls,
        base_dir: str | Path,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        check_same_thread: bool = True,
    ) -> TodoDB:
        """Open an existing project database and bring its schema up to date."""
        db = cls(base_dir, lock_timeout=lock_timeout, check_same_thread=check_same_thread)
        if not db.db_path.exists():
            msg = "database not found: run 'td init' first"
            raise NotInitializedError(msg)
        db.ensure_schema()
        return db

    @classmethod
    def initialize(
        cls,
        base_dir: str | Path,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        check_same_thread: bool = True,
    ) -> TodoDB:
        """Create ``.todos/`` and the database if needed, then migrate."""
        db = cls(base_dir, lock_timeout=lock_timeout, check_same_thread=check_same_thread)
        db.todos_dir.mkdir(parents=True, exist_ok=True)
        db.ensure_schema()
        return db

    @classmethod
    def from_project(cls, project_path: Path | None = None) -> TodoDB:
        """Open the project found by walking up from project_path (or cwd)."""
        return cls.open(find_todos_root(project_path))

    def __enter__(self) -> TodoDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
            # References between tables are soft; replicas may apply rows out of order.
            self._conn.execute("PRAGMA foreign_keys=OFF")
        return self._conn

    def ensure_schema(self) -> int:
        """Apply the base DDL and any pending migrations; return how many migrations ran."""
        self.conn.executescript(SCHEMA_SQL)
        applied = self.run_migrations()
        if applied:
            logger.info("Applied %d schema migration(s) to %s", applied, self.db_path)
        return applied

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as exc:
            logger.warning("WAL checkpoint failed for %s: %s", self.db_path, exc)
        self._conn.close()
        self._conn = None

    # -- Schema version ------------------------------------------------------

    def get_schema_version(self) -> int:
        """Return ``schema_info.version``; absent or unreadable reads as 0."""
        return _read_schema_version(self.conn)

    def set_schema_version(self, version: int) -> None:
        with self._write_txn() as conn:
            _write_schema_version(conn, version)

    def run_migrations(self) -> int:
        """Apply pending migrations under the write lock; return how many ran."""
        if self.get_schema_version() >= CURRENT_SCHEMA_VERSION:
            return 0
        with self._lock.held(self.lock_timeout):
            return apply_pending_migrations(self.conn, self.base_dir)

    # -- Write window --------------------------------------------------------

    @contextlib.contextmanager
    def _write_txn(self) -> Iterator[sqlite3.Connection]:
        """Hold the write lock and one IMMEDIATE transaction for the block.

        Re-entrant per thread: nested windows on the owning thread join the
        outermost one, which alone commits (or rolls back on any exception)
        and releases the lock. Other threads sharing the handle wait on the lock.
        """
        if self._txn_depth and self._txn_owner == threading.get_ident():
            self._txn_depth += 1
            try:
                yield self.conn
            finally:
                self._txn_depth -= 1
            return

        self._lock.acquire(self.lock_timeout)
        try:
            conn = self.conn
            if conn.in_transaction:
                conn.commit()
            conn.execute("BEGIN IMMEDIATE")
            self._txn_owner = threading.get_ident()
            self._txn_depth = 1
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._txn_depth = 0
                self._txn_owner = None
        finally:
            self._lock.release()
