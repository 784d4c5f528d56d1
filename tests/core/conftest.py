"""Fixtures for core engine tests."""

from __future__ import annotations

import json
from typing import Any

import pytest

from tdcore.core import TodoDB


def actions_for(db: TodoDB, entity_id: str) -> list[dict[str, Any]]:
    """Raw action_log rows for *entity_id* with payloads decoded, oldest first."""
    rows = db.conn.execute(
        "SELECT action_type, entity_type, entity_id, previous_data, new_data, timestamp, session_id "
        "FROM action_log WHERE entity_id = ? ORDER BY rowid",
        (entity_id,),
    ).fetchall()
    out = []
    for row in rows:
        item = dict(row)
        item["previous"] = json.loads(row["previous_data"]) if row["previous_data"] else None
        item["new"] = json.loads(row["new_data"]) if row["new_data"] else None
        out.append(item)
    return out


def action_count(db: TodoDB) -> int:
    return int(db.conn.execute("SELECT COUNT(*) FROM action_log").fetchone()[0])


@pytest.fixture
def session_id() -> str:
    return "ses-test"
