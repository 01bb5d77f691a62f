"""Read-only projection of a reconciliation run and its diff rows.

Runs and diff rows are immutable audit history; this module never writes. It
offers the views the API needs: filtering, sorting, pagination, statistics and
a JSON-ready serialisation.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.exceptions import RunNotFound
from app.models.db.enums import DiffOutcome
from app.models.db.reconciliation_runs import DiffRecord, ReconciliationRun
from app.utils.metrics import money_sum, pct_change, safe_div, to_money

SORT_KEYS: dict[str, Callable[[DiffRecord], Any]] = {
    "difference": lambda r: r.difference,
    "abs_difference": lambda r: abs(r.difference),
    "session_id": lambda r: r.session_id,
    "business_date": lambda r: r.business_date,
    "new_amount": lambda r: r.new_amount,
    "old_amount": lambda r: to_money(r.old_amount),
}

DIRECTIONS = ("increase", "decrease")


@dataclass(frozen=True)
class DiffReportQuery:
    sort_by: str = "abs_difference"
    descending: bool = True
    outcome: Optional[DiffOutcome] = None
    changed_only: bool = False
    min_abs_difference: Optional[Decimal] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    direction: Optional[str] = None
    page: int = 1
    page_size: int = 50

    def __post_init__(self) -> None:
        if self.sort_by not in SORT_KEYS:
            raise ValueError(f"Unknown sort key '{self.sort_by}'")
        if self.direction is not None and self.direction not in DIRECTIONS:
            raise ValueError(f"Unknown direction '{self.direction}'")
        if self.page < 1 or self.page_size < 1:
            raise ValueError("page and page_size must be positive")


def _float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_record(record: DiffRecord, *, include_breakdown: bool = False) -> dict[str, Any]:
    data = {
        "session_id": record.session_id,
        "business_date": record.business_date.isoformat(),
        "old_amount": _float(record.old_amount),
        "new_amount": float(record.new_amount),
        "difference": float(record.difference),
        "duration_label": record.duration_label,
        "elapsed_minutes": record.elapsed_minutes,
        "outcome": record.outcome.value,
    }
    if include_breakdown:
        data["breakdown"] = record.breakdown
    return data


def serialize_run(run: ReconciliationRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "mode": run.mode.value,
        "status": run.status.value,
        "scope": {
            "start": run.scope_start.isoformat() if run.scope_start else None,
            "end": run.scope_end.isoformat() if run.scope_end else None,
            "label": run.scope_label,
        },
        "tariff_version": run.tariff_version,
        "totals": {
            "old_total": float(run.old_total or 0),
            "new_total": float(run.new_total or 0),
            "difference": float(run.difference or 0),
            "percent_change": float(run.percent_change or 0),
        },
        "largest_increase": run.largest_increase,
        "largest_decrease": run.largest_decrease,
        "touched_dates": run.touched_dates or [],
        "errors": run.errors or [],
        "counts": {
            "candidates": run.candidate_count,
            "processed": run.processed_count,
            "changed": run.changed_count,
            "unchanged": run.unchanged_count,
            "errors": run.error_count,
            "skipped": run.skipped_count,
            "aggregates_recomputed": run.aggregates_recomputed,
        },
        "cancelled": run.cancelled,
        "failure_reason": run.failure_reason,
        "requested_by": run.requested_by,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "duration_ms": _float(run.duration_ms),
    }


class DiffReport:
    """A run plus its diff rows, with query helpers."""

    def __init__(self, run: ReconciliationRun, records: Sequence[DiffRecord]):
        self.run = run
        self.records = list(records)

    @classmethod
    def load(cls, db: Session, run_id: int) -> "DiffReport":
        run = db.get(ReconciliationRun, run_id)
        if run is None:
            raise RunNotFound(f"Reconciliation run {run_id} not found", details={"run_id": run_id})
        records = db.scalars(
            select(DiffRecord).where(DiffRecord.run_id == run_id).order_by(DiffRecord.session_id)
        ).all()
        return cls(run, records)

    def filter(self, query: DiffReportQuery) -> list[DiffRecord]:
        selected = []
        for record in self.records:
            if query.outcome is not None and record.outcome != query.outcome:
                continue
            if query.changed_only and record.outcome != DiffOutcome.CHANGED:
                continue
            if query.min_abs_difference is not None and abs(record.difference) < query.min_abs_difference:
                continue
            if query.date_from is not None and record.business_date < query.date_from:
                continue
            if query.date_to is not None and record.business_date > query.date_to:
                continue
            if query.direction == "increase" and record.difference <= 0:
                continue
            if query.direction == "decrease" and record.difference >= 0:
                continue
            selected.append(record)
        return selected

    @staticmethod
    def sort(records: Sequence[DiffRecord], sort_by: str, *, descending: bool) -> list[DiffRecord]:
        # Session id is the stable secondary key in both directions.
        ordered = sorted(records, key=lambda r: r.session_id)
        return sorted(ordered, key=SORT_KEYS[sort_by], reverse=descending)

    @staticmethod
    def statistics(records: Sequence[DiffRecord]) -> dict[str, Any]:
        old_total = money_sum(r.old_amount for r in records)
        new_total = money_sum(r.new_amount for r in records)
        differences = [r.difference for r in records]
        return {
            "count": len(records),
            "changed": sum(1 for r in records if r.outcome == DiffOutcome.CHANGED),
            "unchanged": sum(1 for r in records if r.outcome == DiffOutcome.UNCHANGED),
            "increases": sum(1 for d in differences if d > 0),
            "decreases": sum(1 for d in differences if d < 0),
            "old_total": float(old_total),
            "new_total": float(new_total),
            "difference_total": float(new_total - old_total),
            "mean_difference": round(safe_div(money_sum(differences), len(records)), 2),
            "max_increase": float(max((d for d in differences if d > 0), default=0)),
            "max_decrease": float(min((d for d in differences if d < 0), default=0)),
            "percent_change": pct_change(old_total, new_total),
        }

    def query(self, query: DiffReportQuery) -> dict[str, Any]:
        selected = self.sort(self.filter(query), query.sort_by, descending=query.descending)
        total = len(selected)
        start = (query.page - 1) * query.page_size
        window = selected[start:start + query.page_size]
        return {
            "items": [serialize_record(r) for r in window],
            "total": total,
            "page": query.page,
            "page_size": query.page_size,
            "pages": -(-total // query.page_size) if total else 0,
            "statistics": self.statistics(selected),
        }

    def to_dict(self, query: Optional[DiffReportQuery] = None) -> dict[str, Any]:
        return {
            "run": serialize_run(self.run),
            "statistics": self.statistics(self.records),
            "records": self.query(query or DiffReportQuery()),
        }


__all__ = [
    "SORT_KEYS",
    "DiffReportQuery",
    "DiffReport",
    "serialize_record",
    "serialize_run",
]
