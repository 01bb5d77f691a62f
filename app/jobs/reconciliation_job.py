"""Queued reconciliation run payload."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.models.db.enums import RunMode


def priority_for(mode: RunMode) -> str:
    """Apply runs jump ahead of previews."""
    return "high" if mode == RunMode.APPLY else "normal"


@dataclass(slots=True)
class ReconciliationJob:
    run_id: int
    tariff_version: Optional[int] = None
    priority: str = "normal"
    correlation_id: Optional[str] = None

    def key(self) -> str:
        return f"run:{self.run_id}"


__all__ = ["ReconciliationJob", "priority_for"]
