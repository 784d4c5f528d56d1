"""tdcore — the mutation, action-log and locking engine behind a local td issue tracker."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tdcore")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from tdcore.core import TodoDB
from tdcore.models import Issue

__all__ = ["Issue", "TodoDB", "__version__"]
