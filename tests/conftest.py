"""Shared pytest fixtures for tdcore tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from tdcore.core import TodoDB
from tdcore.models import STATUS_CLOSED, TYPE_EPIC, Comment, Issue
from tests._db_factory import make_db


@pytest.fixture
def db(tmp_path: Path) -> Generator[TodoDB, None, None]:
    """Fresh TodoDB for each test."""
    d = make_db(tmp_path)
    yield d
    d.close()


@pytest.fixture
def populated_db(db: TodoDB) -> TodoDB:
    """TodoDB pre-populated with a representative issue set.

    Creates:
    - Epic E with child A
    - A (open P1, labels bug/urgent), B (open P2), C (closed P3)
    - Dependency: A depends on B
    - Comment on B
    """
    epic = db.create_issue(Issue(title="Epic E", type=TYPE_EPIC, priority="P1"))
    a = db.create_issue(Issue(title="Issue A", priority="P1", labels=["bug", "urgent"], parent_id=epic.id))
    b = db.create_issue(Issue(title="Issue B", priority="P2"))
    c = db.create_issue(Issue(title="Issue C", priority="P3"))
    c.status = STATUS_CLOSED
    db.update_issue(c)
    db.add_dependency(a.id, b.id)
    db.add_comment(Comment(issue_id=b.id, text="Test comment", session_id="tester"))
    db._test_ids: dict[str, str] = {"epic": epic.id, "a": a.id, "b": b.id, "c": c.id}  # type: ignore[attr-defined]
    return db


@pytest.fixture
def todo_project(tmp_path: Path) -> Path:
    """A tmp directory set up as a td project (.todos/ with a migrated db).

    Returns the project root (parent of .todos/).
    """
    TodoDB.initialize(tmp_path).close()
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
