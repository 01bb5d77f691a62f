"""Central Enum definitions for billing & reconciliation states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and business logic.
"""
from __future__ import annotations
import enum


class RunMode(str, enum.Enum):
    DRY_RUN = "dry_run"
    APPLY = "apply"


class RunStatus(str, enum.Enum):
    CREATED = "CREATED"
    COMPUTING = "COMPUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


class DiffOutcome(str, enum.Enum):
    CHANGED = "CHANGED"
    UNCHANGED = "UNCHANGED"


__all__ = [
    "RunMode",
    "RunStatus",
    "TERMINAL_RUN_STATUSES",
    "DiffOutcome",
]
