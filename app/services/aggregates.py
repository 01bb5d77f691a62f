"""Daily revenue aggregates.

An aggregate is never patched incrementally: every recomputation resums all
completed sessions of that business date, so it can always be re-derived and
``total_revenue`` equals the sum of the sessions' stored amounts. ``revision``
is an optimistic token; a concurrent recomputation of the same date shows up
as ``AggregateWriteConflict`` and is retried immediately
(``RECONCILIATION_SETTINGS["aggregate_conflict_retries"]`` times).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import RECONCILIATION_SETTINGS
from app.exceptions import AggregateWriteConflict
from app.models.db.daily_aggregates import DailyAggregate
from app.models.db.rental_sessions import RentalSession
from app.utils import get_logger
from app.utils.metrics import CENT, money_sum, round_half_up, safe_div, to_money
from app.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class DaySummary:
    total_revenue: Decimal
    adjustment_total: Decimal
    session_count: int
    operating_hours: Decimal
    revenue_per_hour: Decimal
    average_session_value: Decimal


def summarize_sessions(sessions: Iterable[RentalSession]) -> DaySummary:
    """Aggregate figures for one day's completed sessions."""
    completed = [s for s in sessions if s.end_time is not None]
    total = money_sum(s.stored_amount for s in completed)
    adjustments = money_sum(s.adjustment_amount for s in completed)
    hours = Decimal("0")
    if completed:
        first = min(ensure_utc(s.start_time) for s in completed)
        last = max(ensure_utc(s.end_time) for s in completed)  # type: ignore[arg-type]
        hours = round_half_up(Decimal(str((last - first).total_seconds())) / Decimal(3600), CENT)
    return DaySummary(
        total_revenue=round_half_up(total, CENT),
        adjustment_total=round_half_up(adjustments, CENT),
        session_count=len(completed),
        operating_hours=hours,
        revenue_per_hour=round_half_up(to_money(safe_div(total, hours)), CENT),
        average_session_value=round_half_up(to_money(safe_div(total, len(completed))), CENT),
    )


def _recompute_once(db: Session, day: date, run_id: Optional[int], now: datetime) -> DailyAggregate:
    sessions = db.scalars(
        select(RentalSession).where(RentalSession.business_date == day, RentalSession.end_time.is_not(None))
    ).all()
    summary = summarize_sessions(sessions)
    values = {
        "total_revenue": summary.total_revenue,
        "adjustment_total": summary.adjustment_total,
        "session_count": summary.session_count,
        "operating_hours": summary.operating_hours,
        "revenue_per_hour": summary.revenue_per_hour,
        "average_session_value": summary.average_session_value,
        "recomputed_at": now,
        "last_run_id": run_id,
    }

    existing = db.scalars(select(DailyAggregate).where(DailyAggregate.date == day)).one_or_none()
    if existing is None:
        aggregate = DailyAggregate(date=day, revision=1, **values)
        db.add(aggregate)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise AggregateWriteConflict(
                f"Aggregate for {day.isoformat()} was created concurrently", details={"date": day.isoformat()}
            ) from e
        return aggregate

    revision = existing.revision
    result = db.execute(
        update(DailyAggregate)
        .where(DailyAggregate.id == existing.id, DailyAggregate.revision == revision)
        .values(revision=revision + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise AggregateWriteConflict(
            f"Aggregate for {day.isoformat()} changed during recomputation",
            details={"date": day.isoformat(), "expected_revision": revision},
        )
    db.commit()
    db.refresh(existing)
    return existing


def recompute_daily_aggregate(
    db: Session,
    day: date,
    *,
    run_id: Optional[int] = None,
    clock: Callable[[], datetime] = utc_now,
) -> DailyAggregate:
    """Re-derive the aggregate of ``day`` from scratch and persist it.

    Raises:
        AggregateWriteConflict: still conflicting after the configured retries
    """
    retries = int(RECONCILIATION_SETTINGS.get("aggregate_conflict_retries", 1))
    attempt = 0
    while True:
        try:
            aggregate = _recompute_once(db, day, run_id, clock())
            logger.debug("Daily aggregate recomputed", date=day.isoformat(), revision=aggregate.revision)
            return aggregate
        except AggregateWriteConflict:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning("Aggregate write conflict, retrying", date=day.isoformat(), attempt=attempt)


def recompute_range(
    db: Session,
    start: date,
    end: date,
    *,
    run_id: Optional[int] = None,
    clock: Callable[[], datetime] = utc_now,
) -> list[DailyAggregate]:
    """Recompute every date in ``[start, end]`` that has sessions or an aggregate row."""
    session_days = set(
        db.scalars(
            select(RentalSession.business_date).where(
                RentalSession.business_date >= start, RentalSession.business_date <= end
            )
        ).all()
    )
    aggregate_days = set(
        db.scalars(select(DailyAggregate.date).where(DailyAggregate.date >= start, DailyAggregate.date <= end)).all()
    )
    return [
        recompute_daily_aggregate(db, day, run_id=run_id, clock=clock)
        for day in sorted(session_days | aggregate_days)
    ]


def list_aggregates(db: Session, start: Optional[date] = None, end: Optional[date] = None) -> list[DailyAggregate]:
    stmt = select(DailyAggregate).order_by(DailyAggregate.date)
    if start is not None:
        stmt = stmt.where(DailyAggregate.date >= start)
    if end is not None:
        stmt = stmt.where(DailyAggregate.date <= end)
    return list(db.scalars(stmt).all())


def date_span(start: date, end: date) -> int:
    return (end - start).days + 1 if end >= start else 0


__all__ = [
    "DaySummary",
    "summarize_sessions",
    "recompute_daily_aggregate",
    "recompute_range",
    "list_aggregates",
    "date_span",
]
