"""Repo-relative path helpers for linked files."""

from __future__ import annotations

import os
import posixpath
import re

from tdcore.errors import InvalidInputError

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def normalize_file_path_for_id(path: str) -> str:
    """Convert separators to ``/`` and lexically clean ``.`` and ``..`` segments.

    The result is what deterministic file-link ids are hashed from, so the
    same logical path yields the same id on every platform.
    """
    cleaned = posixpath.normpath(path.replace("\\", "/"))
    return cleaned


def is_absolute_path(path: str) -> bool:
    """True for POSIX absolute paths, UNC/backslash roots and Windows drive paths."""
    if not path:
        return False
    if path.startswith(("/", "\\")):
        return True
    return bool(_DRIVE_RE.match(path))


def to_repo_relative(abs_path: str, repo_root: str | os.PathLike[str]) -> str:
    """Return *abs_path* relative to *repo_root* with forward slashes.

    Raises InvalidInputError when the path escapes the root.
    """
    root = os.path.abspath(os.fspath(repo_root))
    target = os.path.abspath(abs_path)
    try:
        rel = os.path.relpath(target, root)
    except ValueError as exc:
        # Different drives on Windows
        msg = f"path {abs_path} is outside repo root {root}"
        raise InvalidInputError(msg) from exc
    rel = rel.replace(os.sep, "/")
    if rel == ".." or rel.startswith("../"):
        msg = f"path {abs_path} is outside repo root {root}"
        raise InvalidInputError(msg)
    return rel
