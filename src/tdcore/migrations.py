"""Schema migration framework for tdcore.

Migrations are version-keyed functions that transform the database schema
from one version to the next. Each migration receives a raw
sqlite3.Connection plus the project root, and must be idempotent: every step
probes the live schema (``PRAGMA table_info``, ``sqlite_master``) before it
changes anything, so the chain is safe to replay against a database whose
``schema_info`` row was lost or whose columns were added by hand.

The migration runner:
  1. Reads the current version from ``schema_info(key='version')``
  2. Applies each pending migration in order
  3. Writes the new version after each successful migration
  4. Wraps each migration in a BEGIN IMMEDIATE transaction (rollback on failure)

Usage, adding a new migration:
  1. Increment CURRENT_SCHEMA_VERSION in db_schema.py
  2. Add a function here: def migrate_v<N>_to_v<N+1>(conn, base_dir) -> None
  3. Register it in MIGRATIONS: N: migrate_v<N>_to_v<N+1>
  4. Add a test in tests/migrations/test_migrations.py

SQLite ALTER TABLE limitations (why helpers exist):
  - ADD COLUMN: supported (but only with constant defaults, no NOT NULL without DEFAULT)
  - RENAME TABLE / RENAME COLUMN: supported
  - ALTER column type/constraints or primary key: NOT supported, use rebuild_table()
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import sqlite3
from pathlib import Path
from typing import Any, Protocol

from tdcore.db_schema import CURRENT_SCHEMA_VERSION
from tdcore.errors import InvalidInputError, MigrationError, TodoError
from tdcore.ids import (
    ACTION_ID_PREFIX,
    BOARD_ISSUE_POS_ID_PREFIX,
    COMMENT_ID_PREFIX,
    DEPENDENCY_ID_PREFIX,
    HANDOFF_ID_PREFIX,
    ISSUE_FILE_ID_PREFIX,
    LOG_ID_PREFIX,
    SNAPSHOT_ID_PREFIX,
    action_log_timestamp_now,
    board_issue_pos_id,
    dependency_id,
    issue_file_id,
    wsi_id,
)
from tdcore.models import (
    ALL_ISSUES_BOARD_ID,
    ALL_ISSUES_BOARD_NAME,
    ENTITY_BOARD_POSITION,
    ENTITY_DEPENDENCY,
    ENTITY_FILE,
    ENTITY_HANDOFF,
    RELATION_DEPENDS_ON,
)
from tdcore.paths import is_absolute_path, normalize_file_path_for_id, to_repo_relative

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Migration function protocol
# ---------------------------------------------------------------------------


class MigrationFn(Protocol):
    """Protocol for migration functions."""

    def __call__(self, conn: sqlite3.Connection, base_dir: Path) -> None: ...


# ---------------------------------------------------------------------------
# Schema version bookkeeping
# ---------------------------------------------------------------------------


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Return ``schema_info.version``; a missing table, row or bad value reads as 0."""
    try:
        row = conn.execute("SELECT value FROM schema_info WHERE key = 'version'").fetchone()
    except sqlite3.OperationalError:
        return 0
    if row is None:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('version', ?)",
        (str(version),),
    )


# ---------------------------------------------------------------------------
# SQLite migration helpers
#
# These handle the quirks of SQLite's limited ALTER TABLE support.
# ---------------------------------------------------------------------------


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute("SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)).fetchone()
    return bool(row[0])


def _table_info(conn: sqlite3.Connection, table: str) -> list[tuple[Any, ...]]:
    return [tuple(row) for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return any(row[1] == column for row in _table_info(conn, table))


def _column_notnull(conn: sqlite3.Connection, table: str, column: str) -> bool:
    for row in _table_info(conn, table):
        if row[1] == column:
            return bool(row[3])
    return False


def _has_integer_pk(conn: sqlite3.Connection, table: str) -> bool:
    """True when ``table.id`` is an INTEGER primary key (pre-text-id layout)."""
    if not table_exists(conn, table):
        return False
    for row in _table_info(conn, table):
        if row[1] == "id" and row[5] == 1:
            return str(row[2]).upper() == "INTEGER"
    return False


def add_column(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    col_type: str = "TEXT",
    default: str | None = "''",
) -> bool:
    """Add a column to a table (idempotent).

    Args:
        conn: SQLite connection.
        table: Table name.
        column: New column name.
        col_type: SQL type, optionally with constraints (``"INTEGER NOT NULL"``).
        default: DEFAULT value as a SQL literal (e.g., "''" or "0").
                 If None, no DEFAULT clause is added.

    Returns:
        True when the column was added, False when it already existed.
    """
    if column_exists(conn, table, column):
        return False

    default_clause = f" DEFAULT {default}" if default is not None else ""
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}{default_clause}")
    return True


def add_index(
    conn: sqlite3.Connection,
    index_name: str,
    table: str,
    columns: list[str],
    *,
    unique: bool = False,
    where: str | None = None,
) -> None:
    """Create an index (idempotent via IF NOT EXISTS).

    Args:
        conn: SQLite connection.
        index_name: Name for the index.
        table: Table to index.
        columns: Column names to include.
        unique: Whether to create a UNIQUE index.
        where: Optional partial-index predicate.
    """
    unique_kw = "UNIQUE " if unique else ""
    cols = ", ".join(columns)
    where_clause = f" WHERE {where}" if where else ""
    conn.execute(f"CREATE {unique_kw}INDEX IF NOT EXISTS {index_name} ON {table}({cols}){where_clause}")


def drop_index(conn: sqlite3.Connection, index_name: str) -> None:
    """Drop an index (idempotent via IF EXISTS)."""
    conn.execute(f"DROP INDEX IF EXISTS {index_name}")


def rebuild_table(
    conn: sqlite3.Connection,
    table: str,
    new_schema_sql: str,
    column_mapping: dict[str, str] | None = None,
) -> None:
    """Recreate a table with a new schema, preserving data.

    The usual SQLite pattern for changes ALTER TABLE can't express (new
    primary key, dropped NOT NULL, constraint changes):
      1. Create new table with temp name
      2. Copy data from old table
      3. Drop old table
      4. Rename new table to original name

    Args:
        conn: SQLite connection.
        table: Existing table name.
        new_schema_sql: Full CREATE TABLE statement using the real table name;
                        this function handles the rename dance.
        column_mapping: Optional mapping of {new_col: old_col_or_expr}.
                        If None, copies all columns that exist in both schemas.
                        Values may be SQL expressions, including the id
                        functions registered by ``register_id_functions``.

    Warning: This drops all indexes that reference the table.
             Recreate them after calling this function.
    """
    temp_table = f"_tdcore_migrate_{table}"

    pattern = re.compile(
        rf"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?{re.escape(table)}\b",
        re.IGNORECASE,
    )
    temp_schema = pattern.sub(f"CREATE TABLE {temp_table}", new_schema_sql, count=1)

    conn.execute(f"DROP TABLE IF EXISTS {temp_table}")  # leftover from a failed run
    conn.execute(temp_schema)

    if column_mapping is None:
        old_cols = {row[1] for row in _table_info(conn, table)}
        new_cols = [row[1] for row in _table_info(conn, temp_table)]
        shared = [c for c in new_cols if c in old_cols]
        if not shared:
            conn.execute(f"DROP TABLE IF EXISTS {temp_table}")
            msg = f"No shared columns between old and new schema for table '{table}'"
            raise ValueError(msg)
        select_cols = ", ".join(shared)
        insert_cols = select_cols
    else:
        insert_cols = ", ".join(column_mapping.keys())
        select_cols = ", ".join(column_mapping.values())

    # S608: table/column names are from internal schema, not user input
    conn.execute(f"INSERT INTO {temp_table} ({insert_cols}) SELECT {select_cols} FROM {table}")  # noqa: S608
    conn.execute(f"DROP TABLE {table}")
    conn.execute(f"ALTER TABLE {temp_table} RENAME TO {table}")


def register_id_functions(conn: sqlite3.Connection) -> None:
    """Expose the deterministic id helpers to SQL for table rebuilds."""
    conn.create_function("td_board_issue_pos_id", 2, board_issue_pos_id, deterministic=True)
    conn.create_function("td_dependency_id", 3, dependency_id, deterministic=True)
    conn.create_function("td_wsi_id", 2, wsi_id, deterministic=True)


def _text_id(prefix: str) -> str:
    return prefix + secrets.token_hex(4)


# ---------------------------------------------------------------------------
# Migration registry
#
# Keys are the version being migrated FROM (i.e., the current schema version).
# Values are functions that transform the schema to the next version.
# Version 1 is the base layout in db_schema.SCHEMA_SQL.
# ---------------------------------------------------------------------------


def migrate_v1_to_v2(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v1 → v2: Add the action_log table for undo support."""
    conn.execute("""\
        CREATE TABLE IF NOT EXISTS action_log (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id    TEXT NOT NULL,
            action_type   TEXT NOT NULL,
            entity_type   TEXT NOT NULL,
            entity_id     TEXT NOT NULL,
            previous_data TEXT DEFAULT '',
            new_data      TEXT DEFAULT '',
            timestamp     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            undone        INTEGER DEFAULT 0
        )""")
    add_index(conn, "idx_action_log_session", "action_log", ["session_id"])
    add_index(conn, "idx_action_log_timestamp", "action_log", ["timestamp"])


def migrate_v2_to_v3(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v2 → v3: Allow work-session logs without an issue_id.

    Only databases whose ``logs.issue_id`` is NOT NULL are rebuilt.
    """
    if _column_notnull(conn, "logs", "issue_id"):
        rebuild_table(
            conn,
            "logs",
            """\
            CREATE TABLE logs (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                issue_id        TEXT DEFAULT '',
                session_id      TEXT NOT NULL,
                work_session_id TEXT DEFAULT '',
                message         TEXT NOT NULL,
                type            TEXT NOT NULL DEFAULT 'progress',
                timestamp       DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )""",
        )
    add_index(conn, "idx_logs_issue", "logs", ["issue_id"])
    add_index(conn, "idx_logs_work_session", "logs", ["work_session_id"])


def migrate_v3_to_v4(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v3 → v4: Add issues.minor (self-reviewable tasks)."""
    if not add_column(conn, "issues", "minor", "INTEGER", "0"):
        logger.info("Column issues.minor already present; recording schema v4 only")


def migrate_v4_to_v5(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v4 → v5: Add issues.created_branch."""
    if not add_column(conn, "issues", "created_branch", "TEXT", "''"):
        logger.info("Column issues.created_branch already present; recording schema v5 only")


def migrate_v5_to_v6(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v5 → v6: Add issues.creator_session for review enforcement."""
    add_column(conn, "issues", "creator_session", "TEXT", "''")


def migrate_v6_to_v7(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v6 → v7: Add issue_session_history for review enforcement."""
    conn.execute("""\
        CREATE TABLE IF NOT EXISTS issue_session_history (
            id          TEXT PRIMARY KEY,
            issue_id    TEXT NOT NULL,
            session_id  TEXT NOT NULL,
            action      TEXT NOT NULL,
            created_at  DATETIME DEFAULT CURRENT_TIMESTAMP
        )""")
    add_index(conn, "idx_ish_issue", "issue_session_history", ["issue_id"])
    add_index(conn, "idx_ish_session", "issue_session_history", ["session_id"])


def migrate_v7_to_v8(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v7 → v8: Timestamp indexes for activity queries."""
    add_index(conn, "idx_handoffs_timestamp", "handoffs", ["timestamp"])
    add_index(conn, "idx_issues_deleted_status", "issues", ["deleted_at", "status"])


def migrate_v8_to_v9(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v8 → v9: Add boards and board membership with ordering."""
    conn.execute("""\
        CREATE TABLE IF NOT EXISTS boards (
            id             TEXT PRIMARY KEY,
            name           TEXT NOT NULL COLLATE NOCASE UNIQUE,
            last_viewed_at DATETIME,
            created_at     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )""")
    if not table_exists(conn, "board_issue_positions"):
        conn.execute("""\
            CREATE TABLE IF NOT EXISTS board_issues (
                board_id  TEXT NOT NULL,
                issue_id  TEXT NOT NULL,
                position  INTEGER NOT NULL,
                added_at  DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (board_id, issue_id)
            )""")
        add_index(conn, "idx_board_issues_position", "board_issues", ["board_id", "position"], unique=True)


def migrate_v9_to_v10(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v9 → v10: Query-based boards, board_issue_positions, sprint, builtin board.

    Changes:
      - boards: add 'query' and 'is_builtin'
      - board_issues renamed to board_issue_positions
      - issues: add 'sprint'
      - builtin "All Issues" board (empty query matches everything)
    """
    add_column(conn, "boards", "query", "TEXT NOT NULL", "''")
    add_column(conn, "boards", "is_builtin", "INTEGER NOT NULL", "0")

    if table_exists(conn, "board_issues") and not table_exists(conn, "board_issue_positions"):
        drop_index(conn, "idx_board_issues_position")
        conn.execute("ALTER TABLE board_issues RENAME TO board_issue_positions")
    if table_exists(conn, "board_issue_positions"):
        add_index(
            conn, "idx_board_positions_position", "board_issue_positions", ["board_id", "position"], unique=True
        )

    add_column(conn, "issues", "sprint", "TEXT", "''")

    now = action_log_timestamp_now()
    conn.execute(
        "INSERT INTO boards (id, name, query, is_builtin, created_at, updated_at) "
        "VALUES (?, ?, '', 1, ?, ?) "
        "ON CONFLICT(name) DO UPDATE SET query = excluded.query, is_builtin = 1, updated_at = excluded.updated_at",
        (ALL_ISSUES_BOARD_ID, ALL_ISSUES_BOARD_NAME, now, now),
    )


def migrate_v10_to_v11(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v10 → v11: Add boards.view_mode (swimlanes/backlog)."""
    add_column(conn, "boards", "view_mode", "TEXT NOT NULL", "'swimlanes'")


def migrate_v11_to_v12(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v11 → v12: Add the notes table."""
    conn.execute("""\
        CREATE TABLE IF NOT EXISTS notes (
            id          TEXT PRIMARY KEY,
            title       TEXT NOT NULL DEFAULT '',
            content     TEXT NOT NULL DEFAULT '',
            created_at  DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at  DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            pinned      INTEGER NOT NULL DEFAULT 0,
            archived    INTEGER NOT NULL DEFAULT 0,
            deleted_at  DATETIME
        )""")
    add_column(conn, "notes", "pinned", "INTEGER NOT NULL", "0")
    add_column(conn, "notes", "archived", "INTEGER NOT NULL", "0")
    add_index(conn, "idx_notes_updated", "notes", ["updated_at"])


_SESSIONS_SQL = """\
CREATE TABLE sessions (
    id                  TEXT PRIMARY KEY,
    name                TEXT DEFAULT '',
    branch              TEXT DEFAULT '',
    agent_type          TEXT DEFAULT '',
    agent_pid           INTEGER DEFAULT 0,
    context_id          TEXT DEFAULT '',
    previous_session_id TEXT DEFAULT '',
    started_at          DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    ended_at            DATETIME,
    last_activity       DATETIME
)"""


def migrate_v12_to_v13(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v12 → v13: Agent sessions keyed by branch and agent.

    Changes:
      - sessions: add branch, agent_type, agent_pid, last_activity
      - sessions: context_id no longer required
    """
    if not table_exists(conn, "sessions"):
        conn.execute(_SESSIONS_SQL)
    elif not column_exists(conn, "sessions", "branch"):
        rebuild_table(
            conn,
            "sessions",
            _SESSIONS_SQL,
            column_mapping={
                "id": "id",
                "name": "name",
                "context_id": "context_id",
                "previous_session_id": "previous_session_id",
                "started_at": "started_at",
                "ended_at": "ended_at",
            },
        )
    add_index(conn, "idx_sessions_branch", "sessions", ["branch"])
    add_index(conn, "idx_sessions_branch_agent", "sessions", ["branch", "agent_type", "agent_pid"])


def migrate_v13_to_v14(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v13 → v14: Deferral and due dates on issues."""
    add_column(conn, "issues", "defer_until", "TEXT", None)
    add_column(conn, "issues", "due_date", "TEXT", None)
    add_column(conn, "issues", "defer_count", "INTEGER", "0")
    add_index(conn, "idx_issues_defer_until", "issues", ["defer_until"])
    add_index(conn, "idx_issues_due_date", "issues", ["due_date"])


# (table, id prefix, action-log entity type whose entity_id must follow, CREATE, columns)
_TEXT_ID_TABLES: list[tuple[str, str, str, str, list[str]]] = [
    (
        "logs",
        LOG_ID_PREFIX,
        "",
        """\
        CREATE TABLE logs (
            id              TEXT PRIMARY KEY,
            issue_id        TEXT DEFAULT '',
            session_id      TEXT NOT NULL,
            work_session_id TEXT DEFAULT '',
            message         TEXT NOT NULL,
            type            TEXT NOT NULL DEFAULT 'progress',
            timestamp       DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )""",
        ["id", "issue_id", "session_id", "work_session_id", "message", "type", "timestamp"],
    ),
    (
        "handoffs",
        HANDOFF_ID_PREFIX,
        ENTITY_HANDOFF,
        """\
        CREATE TABLE handoffs (
            id          TEXT PRIMARY KEY,
            issue_id    TEXT NOT NULL,
            session_id  TEXT NOT NULL,
            done        TEXT DEFAULT '[]',
            remaining   TEXT DEFAULT '[]',
            decisions   TEXT DEFAULT '[]',
            uncertain   TEXT DEFAULT '[]',
            timestamp   DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )""",
        ["id", "issue_id", "session_id", "done", "remaining", "decisions", "uncertain", "timestamp"],
    ),
    (
        "git_snapshots",
        SNAPSHOT_ID_PREFIX,
        "",
        """\
        CREATE TABLE git_snapshots (
            id          TEXT PRIMARY KEY,
            issue_id    TEXT NOT NULL,
            event       TEXT NOT NULL,
            commit_sha  TEXT NOT NULL,
            branch      TEXT NOT NULL,
            dirty_files INTEGER DEFAULT 0,
            timestamp   DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )""",
        ["id", "issue_id", "event", "commit_sha", "branch", "dirty_files", "timestamp"],
    ),
    (
        "issue_files",
        "if-",
        "",
        """\
        CREATE TABLE issue_files (
            id          TEXT PRIMARY KEY,
            issue_id    TEXT NOT NULL,
            file_path   TEXT NOT NULL,
            role        TEXT NOT NULL DEFAULT 'implementation',
            linked_sha  TEXT DEFAULT '',
            linked_at   DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(issue_id, file_path)
        )""",
        ["id", "issue_id", "file_path", "role", "linked_sha", "linked_at"],
    ),
    (
        "comments",
        COMMENT_ID_PREFIX,
        "",
        """\
        CREATE TABLE comments (
            id          TEXT PRIMARY KEY,
            issue_id    TEXT NOT NULL,
            session_id  TEXT NOT NULL,
            text        TEXT NOT NULL,
            created_at  DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )""",
        ["id", "issue_id", "session_id", "text", "created_at"],
    ),
    (
        "action_log",
        ACTION_ID_PREFIX,
        "",
        """\
        CREATE TABLE action_log (
            id            TEXT PRIMARY KEY,
            session_id    TEXT NOT NULL,
            action_type   TEXT NOT NULL,
            entity_type   TEXT NOT NULL,
            entity_id     TEXT NOT NULL,
            previous_data TEXT DEFAULT '',
            new_data      TEXT DEFAULT '',
            timestamp     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            undone        INTEGER DEFAULT 0
        )""",
        ["id", "session_id", "action_type", "entity_type", "entity_id", "previous_data", "new_data", "timestamp", "undone"],
    ),
]


def _rekey_with_text_ids(
    conn: sqlite3.Connection, table: str, prefix: str, create_sql: str, columns: list[str]
) -> dict[str, str]:
    """Copy *table* into a TEXT-keyed replacement, returning ``{old_id: new_id}``."""
    temp_table = f"_tdcore_migrate_{table}"
    conn.execute(f"DROP TABLE IF EXISTS {temp_table}")
    conn.execute(re.sub(rf"CREATE TABLE {table}\b", f"CREATE TABLE {temp_table}", create_sql, count=1))

    cols = ", ".join(columns)
    placeholders = ", ".join("?" for _ in columns)
    rows = conn.execute(f"SELECT {cols} FROM {table} ORDER BY id").fetchall()  # noqa: S608
    mapping: dict[str, str] = {}
    for row in rows:
        values = list(row)
        new_id = _text_id(prefix)
        mapping[str(values[0])] = new_id
        values[0] = new_id
        conn.execute(f"INSERT INTO {temp_table} ({cols}) VALUES ({placeholders})", values)  # noqa: S608

    conn.execute(f"DROP TABLE {table}")
    conn.execute(f"ALTER TABLE {temp_table} RENAME TO {table}")
    return mapping


def migrate_v14_to_v15(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v14 → v15: Replace INTEGER AUTOINCREMENT keys with prefixed text ids.

    Changes:
      - logs, handoffs, git_snapshots, issue_files, comments, action_log
        get ``TEXT PRIMARY KEY`` ids (only tables still on INTEGER keys)
      - action_log rows that reference handoffs follow the new ids
    """
    remap: dict[str, dict[str, str]] = {}
    for table, prefix, entity_type, create_sql, columns in _TEXT_ID_TABLES:
        if not _has_integer_pk(conn, table):
            continue
        mapping = _rekey_with_text_ids(conn, table, prefix, create_sql, columns)
        if entity_type:
            remap[entity_type] = mapping

    for entity_type, mapping in remap.items():
        for old_id, new_id in mapping.items():
            conn.execute(
                "UPDATE action_log SET entity_id = ? WHERE entity_type = ? AND entity_id = ?",
                (new_id, entity_type, old_id),
            )

    add_index(conn, "idx_logs_issue", "logs", ["issue_id"])
    add_index(conn, "idx_logs_work_session", "logs", ["work_session_id"])
    add_index(conn, "idx_logs_timestamp", "logs", ["timestamp"])
    add_index(conn, "idx_handoffs_issue", "handoffs", ["issue_id"])
    add_index(conn, "idx_handoffs_timestamp", "handoffs", ["timestamp"])
    add_index(conn, "idx_git_snapshots_issue", "git_snapshots", ["issue_id"])
    add_index(conn, "idx_issue_files_issue", "issue_files", ["issue_id"])
    add_index(conn, "idx_comments_issue", "comments", ["issue_id"])
    add_index(conn, "idx_comments_created_at", "comments", ["created_at"])
    _action_log_indexes(conn)


def _action_log_indexes(conn: sqlite3.Connection) -> None:
    add_index(conn, "idx_action_log_session", "action_log", ["session_id"])
    add_index(conn, "idx_action_log_timestamp", "action_log", ["timestamp"])
    add_index(conn, "idx_action_log_entity_type", "action_log", ["entity_id", "action_type"])


def migrate_v15_to_v16(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v15 → v16: sync_state table and action_log sync columns."""
    conn.execute("""\
        CREATE TABLE IF NOT EXISTS sync_state (
            project_id             TEXT PRIMARY KEY,
            last_pushed_action_id  INTEGER DEFAULT 0,
            last_pulled_server_seq INTEGER DEFAULT 0,
            last_sync_at           DATETIME,
            sync_disabled          INTEGER DEFAULT 0
        )""")
    add_column(conn, "action_log", "synced_at", "DATETIME", None)
    add_column(conn, "action_log", "server_seq", "INTEGER", None)


def migrate_v16_to_v17(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v16 → v17: sync_conflicts and sync_history tables."""
    conn.execute("""\
        CREATE TABLE IF NOT EXISTS sync_conflicts (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type    TEXT NOT NULL,
            entity_id      TEXT NOT NULL,
            server_seq     INTEGER NOT NULL,
            local_data     JSON,
            remote_data    JSON,
            overwritten_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )""")
    add_index(conn, "idx_sync_conflicts_entity", "sync_conflicts", ["entity_type", "entity_id"])
    add_index(conn, "idx_sync_conflicts_time", "sync_conflicts", ["overwritten_at"])
    add_index(conn, "idx_sync_conflicts_seq", "sync_conflicts", ["server_seq"])

    conn.execute("""\
        CREATE TABLE IF NOT EXISTS sync_history (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            direction   TEXT NOT NULL,
            action_type TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id   TEXT NOT NULL,
            server_seq  INTEGER,
            device_id   TEXT,
            timestamp   DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )""")
    add_index(conn, "idx_sync_history_timestamp", "sync_history", ["timestamp"])


def migrate_v17_to_v18(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v17 → v18: Deterministic ids for join rows.

    Changes:
      - board_issue_positions: id = hash(board_id, issue_id), UNIQUE(board_id, issue_id)
      - issue_dependencies: id = hash(issue_id, depends_on_id, relation_type)
      - issue_files: ids recomputed from (issue_id, normalized path); duplicates dropped
    """
    if table_exists(conn, "board_issue_positions") and not column_exists(conn, "board_issue_positions", "id"):
        rebuild_table(
            conn,
            "board_issue_positions",
            """\
            CREATE TABLE board_issue_positions (
                id        TEXT PRIMARY KEY,
                board_id  TEXT NOT NULL,
                issue_id  TEXT NOT NULL,
                position  INTEGER NOT NULL,
                added_at  DATETIME DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(board_id, issue_id)
            )""",
            column_mapping={
                "id": "td_board_issue_pos_id(board_id, issue_id)",
                "board_id": "board_id",
                "issue_id": "issue_id",
                "position": "position",
                "added_at": "added_at",
            },
        )
        add_index(
            conn, "idx_board_positions_position", "board_issue_positions", ["board_id", "position"], unique=True
        )

    if table_exists(conn, "issue_dependencies") and not column_exists(conn, "issue_dependencies", "id"):
        rebuild_table(
            conn,
            "issue_dependencies",
            """\
            CREATE TABLE issue_dependencies (
                id             TEXT PRIMARY KEY,
                issue_id       TEXT NOT NULL,
                depends_on_id  TEXT NOT NULL,
                relation_type  TEXT NOT NULL DEFAULT 'depends_on',
                UNIQUE(issue_id, depends_on_id, relation_type)
            )""",
            column_mapping={
                "id": "td_dependency_id(issue_id, depends_on_id, relation_type)",
                "issue_id": "issue_id",
                "depends_on_id": "depends_on_id",
                "relation_type": "relation_type",
            },
        )
    add_index(conn, "idx_issue_dependencies_issue", "issue_dependencies", ["issue_id"])
    add_index(conn, "idx_issue_dependencies_depends_on", "issue_dependencies", ["depends_on_id"])

    if table_exists(conn, "issue_files"):
        seen: set[str] = set()
        rows = conn.execute("SELECT id, issue_id, file_path FROM issue_files ORDER BY rowid").fetchall()
        for old_id, issue_id, file_path in rows:
            new_id = issue_file_id(issue_id, file_path)
            if new_id in seen:
                conn.execute("DELETE FROM issue_files WHERE id = ?", (old_id,))
                continue
            seen.add(new_id)
            if old_id != new_id:
                conn.execute("UPDATE issue_files SET id = ? WHERE id = ?", (new_id, old_id))


def migrate_v18_to_v19(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v18 → v19: Store linked file paths relative to the project root.

    Paths outside the project stay absolute. When the relative form already
    exists for the same issue, the absolute duplicate is dropped.
    """
    if not table_exists(conn, "issue_files"):
        return
    rows = conn.execute("SELECT id, issue_id, file_path FROM issue_files").fetchall()
    for row_id, issue_id, file_path in rows:
        if not is_absolute_path(file_path):
            continue
        try:
            rel_path = to_repo_relative(file_path, base_dir)
        except InvalidInputError:
            continue
        existing = conn.execute(
            "SELECT COUNT(*) FROM issue_files WHERE issue_id = ? AND file_path = ?",
            (issue_id, rel_path),
        ).fetchone()[0]
        if existing:
            conn.execute("DELETE FROM issue_files WHERE id = ?", (row_id,))
            continue
        conn.execute(
            "UPDATE issue_files SET file_path = ?, id = ? WHERE id = ?",
            (rel_path, issue_file_id(issue_id, rel_path), row_id),
        )


# Entity tags written by releases that predate the table-named tags
_LEGACY_ENTITY_TYPES = {
    "board_position": ENTITY_BOARD_POSITION,
    "dependency": ENTITY_DEPENDENCY,
    "file_link": ENTITY_FILE,
}

_DELETE_ACTIONS = frozenset(
    {"delete", "remove_dependency", "unlink_file", "board_unposition", "board_delete", "board_remove_issue"}
)


def _str_field(fields: dict[str, Any], key: str) -> str:
    value = fields.get(key)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _split_legacy_entity_id(entity_id: str) -> tuple[str, str] | None:
    """Split ``a:b`` or ``a|b`` composite ids written before hashed ids existed."""
    for sep in (":", "|"):
        left, found, right = entity_id.partition(sep)
        if found and left and right:
            return left, right
    return None


def _looks_like_path(value: str) -> bool:
    return is_absolute_path(value) or "/" in value or "\\" in value


def _resolve_position_entity(fields: dict[str, Any], entity_id: str) -> str | None:
    board_id = _str_field(fields, "board_id")
    issue_id = _str_field(fields, "issue_id")
    if not board_id or not issue_id:
        split = _split_legacy_entity_id(entity_id)
        if split is not None:
            board_id, issue_id = split
            fields["board_id"] = board_id
            fields["issue_id"] = issue_id
    if not board_id or not issue_id:
        if entity_id.startswith(BOARD_ISSUE_POS_ID_PREFIX):
            fields["id"] = entity_id
            return entity_id
        return None
    new_id = board_issue_pos_id(board_id, issue_id)
    fields["id"] = new_id
    return new_id


def _resolve_dependency_entity(fields: dict[str, Any], entity_id: str) -> str | None:
    issue_id = _str_field(fields, "issue_id")
    depends_on_id = _str_field(fields, "depends_on_id")
    if not issue_id or not depends_on_id:
        split = _split_legacy_entity_id(entity_id)
        if split is not None:
            issue_id, depends_on_id = split
            fields["issue_id"] = issue_id
            fields["depends_on_id"] = depends_on_id
    if not issue_id or not depends_on_id:
        if entity_id.startswith(DEPENDENCY_ID_PREFIX):
            fields["id"] = entity_id
            return entity_id
        return None
    relation_type = _str_field(fields, "relation_type")
    if not relation_type:
        relation_type = RELATION_DEPENDS_ON
        fields["relation_type"] = relation_type
    new_id = dependency_id(issue_id, depends_on_id, relation_type)
    fields["id"] = new_id
    return new_id


def _resolve_file_entity(fields: dict[str, Any], entity_id: str, base_dir: Path) -> str | None:
    issue_id = _str_field(fields, "issue_id")
    if not issue_id:
        return None
    file_path = _str_field(fields, "file_path")
    if not file_path:
        if _looks_like_path(entity_id):
            file_path = entity_id
        elif entity_id.startswith(ISSUE_FILE_ID_PREFIX):
            fields["id"] = entity_id
            return entity_id
        else:
            return None
    if is_absolute_path(file_path):
        try:
            file_path = to_repo_relative(file_path, base_dir)
        except InvalidInputError:
            return None
    file_path = normalize_file_path_for_id(file_path)
    fields["file_path"] = file_path
    new_id = issue_file_id(issue_id, file_path)
    fields["id"] = new_id
    return new_id


def migrate_v19_to_v20(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v19 → v20: Normalize unsynced action_log rows for join entities.

    Rows tagged with legacy entity types, or whose entity_id is a ``a:b`` /
    ``a|b`` composite, are rewritten to the table-named tag and the hashed
    id. Rows that cannot be resolved (missing keys, file outside the
    project) are marked synced so they are never pushed.
    """
    if not table_exists(conn, "action_log"):
        return
    rows = conn.execute(
        "SELECT id, action_type, entity_type, entity_id, new_data FROM action_log "
        "WHERE synced_at IS NULL AND undone = 0 AND entity_type IN "
        "('board_position', 'board_issue_positions', 'dependency', 'issue_dependencies', 'file_link', 'issue_files')"
    ).fetchall()

    now = action_log_timestamp_now()
    for action_id, action_type, entity_type, entity_id, new_data in rows:
        fields: dict[str, Any] = {}
        if new_data:
            try:
                fields = json.loads(new_data)
            except json.JSONDecodeError as exc:
                msg = f"parse action_log new_data {action_id}: {exc}"
                raise TodoError(msg) from exc
        original = dict(fields)
        canonical = _LEGACY_ENTITY_TYPES.get(entity_type, entity_type)

        if canonical == ENTITY_BOARD_POSITION:
            new_id = _resolve_position_entity(fields, entity_id)
        elif canonical == ENTITY_DEPENDENCY:
            new_id = _resolve_dependency_entity(fields, entity_id)
        else:
            new_id = _resolve_file_entity(fields, entity_id, base_dir)

        if new_id is None:
            conn.execute("UPDATE action_log SET synced_at = ? WHERE id = ?", (now, action_id))
            continue

        if canonical == entity_type and new_id == entity_id and fields == original:
            continue

        if action_type in _DELETE_ACTIONS and canonical == ENTITY_FILE and not _str_field(fields, "file_path"):
            conn.execute(
                "UPDATE action_log SET entity_type = ?, entity_id = ? WHERE id = ?",
                (canonical, new_id, action_id),
            )
            continue

        conn.execute(
            "UPDATE action_log SET entity_type = ?, entity_id = ?, new_data = ? WHERE id = ?",
            (canonical, new_id, json.dumps(fields), action_id),
        )


def migrate_v20_to_v21(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v20 → v21: Deterministic ids for work_session_issues."""
    if not table_exists(conn, "work_session_issues") or column_exists(conn, "work_session_issues", "id"):
        return
    rebuild_table(
        conn,
        "work_session_issues",
        """\
        CREATE TABLE work_session_issues (
            id              TEXT PRIMARY KEY,
            work_session_id TEXT NOT NULL,
            issue_id        TEXT NOT NULL,
            tagged_at       DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(work_session_id, issue_id)
        )""",
        column_mapping={
            "id": "td_wsi_id(work_session_id, issue_id)",
            "work_session_id": "work_session_id",
            "issue_id": "issue_id",
            "tagged_at": "tagged_at",
        },
    )


def migrate_v21_to_v22(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v21 → v22: Soft delete for board positions.

    Changes:
      - board_issue_positions: add 'deleted_at'
      - position uniqueness applies to live rows only (partial unique index)
    """
    if not table_exists(conn, "board_issue_positions"):
        return
    add_column(conn, "board_issue_positions", "deleted_at", "DATETIME", None)
    drop_index(conn, "idx_board_positions_position")
    add_index(
        conn,
        "idx_board_positions_position",
        "board_issue_positions",
        ["board_id", "position"],
        unique=True,
        where="deleted_at IS NULL",
    )


def migrate_v22_to_v23(conn: sqlite3.Connection, base_dir: Path) -> None:
    """v22 → v23: action_log.id becomes TEXT NOT NULL.

    NULL or empty ids are backfilled with fresh ``al-`` ids first.
    """
    if not table_exists(conn, "action_log"):
        return
    if _column_notnull(conn, "action_log", "id"):
        _action_log_indexes(conn)
        return
    conn.execute("UPDATE action_log SET id = 'al-' || lower(hex(randomblob(4))) WHERE id IS NULL OR id = ''")
    rebuild_table(
        conn,
        "action_log",
        """\
        CREATE TABLE action_log (
            id            TEXT NOT NULL PRIMARY KEY,
            session_id    TEXT NOT NULL,
            action_type   TEXT NOT NULL,
            entity_type   TEXT NOT NULL,
            entity_id     TEXT NOT NULL,
            previous_data TEXT DEFAULT '',
            new_data      TEXT DEFAULT '',
            timestamp     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            undone        INTEGER DEFAULT 0,
            synced_at     DATETIME,
            server_seq    INTEGER
        )""",
        column_mapping={
            col: col
            for col in (
                "id",
                "session_id",
                "action_type",
                "entity_type",
                "entity_id",
                "previous_data",
                "new_data",
                "timestamp",
                "undone",
                "synced_at",
                "server_seq",
            )
        },
    )
    _action_log_indexes(conn)


MIGRATIONS: dict[int, MigrationFn] = {
    1: migrate_v1_to_v2,
    2: migrate_v2_to_v3,
    3: migrate_v3_to_v4,
    4: migrate_v4_to_v5,
    5: migrate_v5_to_v6,
    6: migrate_v6_to_v7,
    7: migrate_v7_to_v8,
    8: migrate_v8_to_v9,
    9: migrate_v9_to_v10,
    10: migrate_v10_to_v11,
    11: migrate_v11_to_v12,
    12: migrate_v12_to_v13,
    13: migrate_v13_to_v14,
    14: migrate_v14_to_v15,
    15: migrate_v15_to_v16,
    16: migrate_v16_to_v17,
    17: migrate_v17_to_v18,
    18: migrate_v18_to_v19,
    19: migrate_v19_to_v20,
    20: migrate_v20_to_v21,
    21: migrate_v21_to_v22,
    22: migrate_v22_to_v23,
}


# ---------------------------------------------------------------------------
# Migration runner
# ---------------------------------------------------------------------------


def apply_pending_migrations(
    conn: sqlite3.Connection,
    base_dir: Path,
    target_version: int = CURRENT_SCHEMA_VERSION,
) -> int:
    """Apply all pending migrations from the stored version up to target_version.

    The caller holds the project write lock.

    Args:
        conn: Open SQLite connection with the base schema applied.
        base_dir: Project root; file-path migrations resolve against it.
        target_version: Normally CURRENT_SCHEMA_VERSION.

    Returns:
        Number of migrations applied (0 if already up to date). A database
        that starts at version 0 is stamped with target_version at the end.

    Raises:
        MigrationError: If any individual migration fails (that step is
            rolled back; earlier steps stay committed).
    """
    conn.execute("CREATE TABLE IF NOT EXISTS schema_info (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
    current = get_schema_version(conn)
    if current >= target_version:
        return 0

    register_id_functions(conn)
    applied = 0
    for version in range(max(current, 1), target_version):
        migration = MIGRATIONS.get(version)
        if migration is None:
            msg = (
                f"No migration registered for v{version} → v{version + 1}. "
                f"Database is at v{version}, target is v{target_version}. "
                f"Register the migration in tdcore.migrations.MIGRATIONS."
            )
            raise MigrationError(version, version + 1, KeyError(msg))

        logger.info("Applying migration v%d → v%d ...", version, version + 1)
        try:
            conn.execute("BEGIN IMMEDIATE")
            migration(conn, base_dir)
            set_schema_version(conn, version + 1)
            conn.commit()
            applied += 1
            logger.info("Migration v%d → v%d complete.", version, version + 1)
        except Exception as exc:
            conn.rollback()
            raise MigrationError(version, version + 1, exc) from exc

    if current == 0:
        set_schema_version(conn, target_version)
        conn.commit()

    return applied
