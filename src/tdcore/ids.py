"""Identifier and timestamp factory.

Primary entities get short random ids (``td-1a2b3c4d``); join rows get
deterministic ids hashed from their natural key so that an action-log
``entity_id`` keeps addressing the same row on every replica.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import UTC, datetime

from tdcore.paths import normalize_file_path_for_id

ISSUE_ID_PREFIX = "td-"
WORK_SESSION_ID_PREFIX = "ws-"
BOARD_ID_PREFIX = "bd-"
NOTE_ID_PREFIX = "nt-"
LOG_ID_PREFIX = "lg-"
HANDOFF_ID_PREFIX = "ho-"
COMMENT_ID_PREFIX = "cm-"
SNAPSHOT_ID_PREFIX = "gs-"
ACTION_ID_PREFIX = "al-"
HISTORY_ID_PREFIX = "ish-"

BOARD_ISSUE_POS_ID_PREFIX = "bip_"
DEPENDENCY_ID_PREFIX = "dep_"
ISSUE_FILE_ID_PREFIX = "ifl_"
WSI_ID_PREFIX = "wsi_"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# ---------------------------------------------------------------------------
# Random ids
# ---------------------------------------------------------------------------


def _random_id(prefix: str, nbytes: int = 4) -> str:
    return prefix + secrets.token_hex(nbytes)


def generate_id() -> str:
    """Issue id: ``td-`` + 8 hex chars. Callers retry on collision."""
    return _random_id(ISSUE_ID_PREFIX)


def generate_ws_id() -> str:
    return _random_id(WORK_SESSION_ID_PREFIX, 2)


def generate_board_id() -> str:
    return _random_id(BOARD_ID_PREFIX)


def generate_note_id() -> str:
    return _random_id(NOTE_ID_PREFIX)


def generate_log_id() -> str:
    return _random_id(LOG_ID_PREFIX)


def generate_handoff_id() -> str:
    return _random_id(HANDOFF_ID_PREFIX)


def generate_comment_id() -> str:
    return _random_id(COMMENT_ID_PREFIX)


def generate_snapshot_id() -> str:
    return _random_id(SNAPSHOT_ID_PREFIX)


def generate_action_id() -> str:
    return _random_id(ACTION_ID_PREFIX)


def generate_history_id() -> str:
    return _random_id(HISTORY_ID_PREFIX)


# ---------------------------------------------------------------------------
# Deterministic composite ids
# ---------------------------------------------------------------------------


def _deterministic_id(prefix: str, *parts: str) -> str:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return prefix + digest[:16]


def board_issue_pos_id(board_id: str, issue_id: str) -> str:
    return _deterministic_id(BOARD_ISSUE_POS_ID_PREFIX, board_id, issue_id)


def dependency_id(issue_id: str, depends_on_id: str, relation_type: str) -> str:
    return _deterministic_id(DEPENDENCY_ID_PREFIX, issue_id, depends_on_id, relation_type)


def issue_file_id(issue_id: str, file_path: str) -> str:
    """File-link id; the path is normalized first so separators never matter."""
    return _deterministic_id(ISSUE_FILE_ID_PREFIX, issue_id, normalize_file_path_for_id(file_path))


def wsi_id(work_session_id: str, issue_id: str) -> str:
    return _deterministic_id(WSI_ID_PREFIX, work_session_id, issue_id)


def normalize_issue_id(issue_id: str) -> str:
    """Prepend ``td-`` to bare ids; empty strings pass through."""
    if not issue_id or issue_id.startswith(ISSUE_ID_PREFIX):
        return issue_id
    return ISSUE_ID_PREFIX + issue_id


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def format_timestamp(dt: datetime) -> str:
    """Canonical UTC text: fixed-width microseconds and a trailing ``Z``.

    Fixed width keeps lexicographic order identical to chronological order.
    Naive datetimes are taken to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def action_log_timestamp_now() -> str:
    return format_timestamp(datetime.now(UTC))


def parse_timestamp(value: str) -> datetime:
    """Parse canonical text and the legacy forms older databases contain.

    Accepts ``...Z``, ``+00:00`` offsets, and SQLite's
    ``YYYY-MM-DD HH:MM:SS`` CURRENT_TIMESTAMP form. Always returns an
    aware UTC datetime.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
