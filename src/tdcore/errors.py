"""Exception types raised by the tdcore engine.

Each error also inherits the built-in exception a Python caller would
naturally catch (``KeyError`` for lookups, ``ValueError`` for bad input,
``TimeoutError`` for lock contention), so callers that only know the
standard library keep working.
"""

from __future__ import annotations


class TodoError(Exception):
    """Base class for every tdcore error."""


class NotInitializedError(TodoError, FileNotFoundError):
    """The project has no ``.todos/issues.db``."""


class LockTimeoutError(TodoError, TimeoutError):
    """The write lock could not be acquired before the deadline."""

    def __init__(self, message: str, *, holder: str = "") -> None:
        super().__init__(message)
        self.holder = holder


class NotFoundError(TodoError, KeyError):
    """A row lookup by id returned nothing."""

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")

    def __str__(self) -> str:
        return str(self.args[0])


class IDCollisionError(TodoError, RuntimeError):
    """Random id generation kept colliding with existing rows."""


class ImmutableBoardError(TodoError, ValueError):
    """Attempt to modify or delete a builtin board."""


class InvalidInputError(TodoError, ValueError):
    """Caller supplied a value the store refuses (path, sort column, view mode, query)."""


class SerializationError(TodoError, ValueError):
    """A stored JSON column could not be decoded."""


class MigrationError(TodoError, RuntimeError):
    """A schema migration step failed; that step was rolled back."""

    def __init__(self, from_version: int, to_version: int, cause: Exception) -> None:
        self.from_version = from_version
        self.to_version = to_version
        self.cause = cause
        super().__init__(f"Migration v{from_version} → v{to_version} failed: {cause}")
