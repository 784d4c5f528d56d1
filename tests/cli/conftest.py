"""Fixtures for CLI tests."""

from __future__ import annotations

import re
from pathlib import Path

import pytest
from click.testing import CliRunner

_ID_RE = re.compile(r"td-[0-9a-f]{8}")


@pytest.fixture
def cli_in_project(todo_project: Path, cli_runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> tuple[CliRunner, Path]:
    """A CliRunner whose cwd is an initialized project."""
    monkeypatch.chdir(todo_project)
    monkeypatch.delenv("TD_SESSION_ID", raising=False)
    monkeypatch.delenv("TD_ANALYTICS", raising=False)
    return cli_runner, todo_project


def _extract_id(output: str) -> str:
    """Pull the first issue id out of CLI output."""
    match = _ID_RE.search(output)
    assert match, f"no issue id in output: {output!r}"
    return match.group(0)
