# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from core.py, db_base.py, or any mixin; this prevents circular imports.
"""Typed return-value contracts for tdcore."""

from __future__ import annotations

from tdcore.types.core import ExtendedStats, ISOTimestamp, IssueDict, StatsResult
from tdcore.types.events import AgentErrorEvent, AnalyticsSummary, CommandUsageEvent

__all__ = [
    "AgentErrorEvent",
    "AnalyticsSummary",
    "CommandUsageEvent",
    "ExtendedStats",
    "ISOTimestamp",
    "IssueDict",
    "StatsResult",
]
