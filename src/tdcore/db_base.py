"""Shared utilities, types, and Protocol for DB mixins."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from contextlib import AbstractContextManager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from tdcore.errors import SerializationError
from tdcore.ids import action_log_timestamp_now

if TYPE_CHECKING:
    from tdcore.lock import WriteLock
    from tdcore.models import Issue


def _now_iso() -> str:
    return action_log_timestamp_now()


def dump_payload(data: Mapping[str, Any] | None) -> str:
    """Serialize an action-log payload; ``None`` is stored as the empty string."""
    if data is None:
        return ""
    return json.dumps(data)


def _dump_list(values: list[str] | None) -> str:
    return json.dumps(list(values or []))


def _load_list(raw: str | None, field_name: str) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"failed to unmarshal {field_name}"
        raise SerializationError(msg) from exc
    if not isinstance(value, list):
        msg = f"failed to unmarshal {field_name}"
        raise SerializationError(msg)
    return [str(v) for v in value]


def _placeholders(values: list[Any] | tuple[Any, ...]) -> str:
    return ",".join("?" * len(values))


class DBMixinProtocol(Protocol):
    """Shared attributes and methods that DB mixins access via self.

    Mixins inherit this Protocol so mypy can type-check self.conn,
    self._write_txn(), self._append_action(), etc. Actual implementations
    are provided by TodoDB at composition time.
    """

    base_dir: Path
    todos_dir: Path
    _conn: sqlite3.Connection | None
    _lock: WriteLock

    @property
    def conn(self) -> sqlite3.Connection: ...

    def _write_txn(self) -> AbstractContextManager[sqlite3.Connection]: ...

    def get_issue(self, issue_id: str) -> Issue: ...

    def _append_action(
        self,
        session_id: str,
        action_type: str,
        entity_type: str,
        entity_id: str,
        previous: Mapping[str, Any] | None = None,
        new: Mapping[str, Any] | None = None,
    ) -> str: ...


