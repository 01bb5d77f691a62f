"""Reconciliation engine orchestrator.

Public entry points:
* ``create_run(db, scope, mode, config)`` - persist a CREATED run (used by the
  API before handing the run to the background worker).
* ``execute_run(db, run_id, config)`` - drive a CREATED run to a terminal state.
* ``run_reconciliation(db, scope, mode, config)`` - both of the above.

Execution of one run:
1. Apply runs take the scope lock (``ScopeLocked`` -> run FAILED).
2. Completed sessions whose business date lies in the scope are read in
   keyset pages ordered by id.
3. Each page is recomputed on a bounded thread pool. Workers only compute;
   every database write is issued from the driving thread, one session at a
   time, as a conditional UPDATE (``stored_amount`` must still equal the value
   that was read, else ``SessionWriteConflict``). Only changed sessions are
   written, and only in apply mode.
4. Per-session failures are stored on the run as
   ``{session_id, error_type, message}`` and the run continues.
5. After session writes stop, every touched business date gets its daily
   aggregate recomputed from scratch. This also happens after a soft timeout
   or a cancellation, so aggregates always match the committed sessions.
6. The run is finalized with totals, largest increase/decrease (ties go to
   the lowest session id), counts and the touched dates.

Soft timeout -> FAILED (``RunTimeout``), already-committed writes are kept.
Cancellation is checked between sessions -> COMPLETED with ``cancelled``
set and the unprocessed remainder counted as skipped.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import RECONCILIATION_SETTINGS
from app.exceptions import (
    AggregateWriteConflict,
    BillingError,
    MissingConfiguration,
    RunNotFound,
    RunTimeout,
    ScopeLocked,
    SessionReadFailure,
    SessionWriteConflict,
)
from app.models.db.enums import DiffOutcome, RunMode, RunStatus
from app.models.db.reconciliation_runs import DiffRecord, ReconciliationRun
from app.models.db.rental_sessions import RentalSession
from app.services.aggregates import recompute_daily_aggregate
from app.services.scope_lock import ReconciliationScope, ScopeLockManager, get_lock_manager
from app.services.tariff_calculator import AmountBreakdown, TariffConfig, compute
from app.utils import get_logger, log_business_event, log_performance
from app.utils.metrics import money_sum, pct_change, to_money
from app.utils.time import duration_label, to_business_time, utc_now

logger = get_logger(__name__)

Clock = Callable[[], datetime]
Timer = Callable[[], float]

# ----------------------------- cancellation ----------------------------- #
_cancel_events: dict[int, threading.Event] = {}
_cancel_lock = threading.Lock()


def _cancel_event_for(run_id: int) -> threading.Event:
    with _cancel_lock:
        return _cancel_events.setdefault(run_id, threading.Event())


def _register_cancel_event(run_id: int) -> threading.Event:
    with _cancel_lock:
        event = _cancel_events[run_id] = threading.Event()
        return event


def _forget_cancel_event(run_id: int) -> None:
    with _cancel_lock:
        _cancel_events.pop(run_id, None)


def request_cancel(run_id: int) -> bool:
    """Ask a pending or running run to stop. False if the run is not live."""
    with _cancel_lock:
        event = _cancel_events.get(run_id)
    if event is None:
        return False
    event.set()
    logger.info("Reconciliation cancel requested", run_id=run_id)
    return True


# ----------------------------- per-session work ----------------------------- #
@dataclass(frozen=True)
class SessionSnapshot:
    """Detached copy of the columns a reconciliation reads."""

    id: int
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    stored_amount: Optional[Decimal]
    business_date: date

    @classmethod
    def from_row(cls, row: RentalSession) -> "SessionSnapshot":
        return cls(
            id=row.id,
            start_time=row.start_time,
            end_time=row.end_time,
            stored_amount=row.stored_amount,
            business_date=row.business_date,
        )


@dataclass(frozen=True)
class Evaluation:
    snapshot: SessionSnapshot
    breakdown: Optional[AmountBreakdown] = None
    error: Optional[BillingError] = None


def evaluate_session(snapshot: SessionSnapshot, config: TariffConfig) -> Evaluation:
    """Recompute one session; runs on pool threads, so no I/O here."""
    try:
        if snapshot.start_time is None or snapshot.end_time is None:
            raise SessionReadFailure(f"Session {snapshot.id} has no complete interval")
        breakdown = compute(to_business_time(snapshot.start_time), to_business_time(snapshot.end_time), config)
    except BillingError as e:
        return Evaluation(snapshot=snapshot, error=e)
    except (TypeError, ValueError, ArithmeticError) as e:
        return Evaluation(snapshot=snapshot, error=SessionReadFailure(f"Session {snapshot.id}: {e}"))
    return Evaluation(snapshot=snapshot, breakdown=breakdown)


@dataclass
class RunAccumulator:
    """Running totals for one run, independent of the database."""

    old_amounts: list[Decimal] = field(default_factory=list)
    new_amounts: list[Decimal] = field(default_factory=list)
    processed: int = 0
    changed: int = 0
    unchanged: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    touched_dates: set[date] = field(default_factory=set)
    largest_increase: Optional[dict[str, Any]] = None
    largest_decrease: Optional[dict[str, Any]] = None

    def add_record(self, record: DiffRecord) -> None:
        self.processed += 1
        self.old_amounts.append(to_money(record.old_amount))
        self.new_amounts.append(record.new_amount)
        if record.outcome == DiffOutcome.CHANGED:
            self.changed += 1
        else:
            self.unchanged += 1
        summary = record.summary()
        if record.difference > 0 and self._beats(record, self.largest_increase, larger=True):
            self.largest_increase = summary
        if record.difference < 0 and self._beats(record, self.largest_decrease, larger=False):
            self.largest_decrease = summary

    @staticmethod
    def _beats(record: DiffRecord, current: Optional[dict[str, Any]], *, larger: bool) -> bool:
        if current is None:
            return True
        best = to_money(current["difference"])
        if record.difference == best:
            return record.session_id < current["session_id"]
        return record.difference > best if larger else record.difference < best

    def add_error(self, session_id: Optional[int], error: Exception, **extra: Any) -> None:
        self.processed += 1 if session_id is not None else 0
        entry: dict[str, Any] = {
            "session_id": session_id,
            "error_type": type(error).__name__,
            "message": getattr(error, "message", str(error)),
        }
        entry.update(extra)
        self.errors.append(entry)

    @property
    def error_count(self) -> int:
        return sum(1 for e in self.errors if e["session_id"] is not None)

    @property
    def old_total(self) -> Decimal:
        return money_sum(self.old_amounts)

    @property
    def new_total(self) -> Decimal:
        return money_sum(self.new_amounts)


def build_record(run_id: int, evaluation: Evaluation) -> DiffRecord:
    snapshot = evaluation.snapshot
    breakdown = evaluation.breakdown
    if breakdown is None:
        raise SessionReadFailure(
            "Session has no computed amount to record",
            details={"session_id": snapshot.id, "error": str(evaluation.error) if evaluation.error else None},
        )
    old = snapshot.stored_amount
    new = breakdown.total_amount
    difference = new - to_money(old)
    changed = old is None or difference != 0
    return DiffRecord(
        run_id=run_id,
        session_id=snapshot.id,
        business_date=snapshot.business_date,
        old_amount=old,
        new_amount=new,
        difference=difference,
        duration_label=duration_label(breakdown.elapsed_minutes),
        elapsed_minutes=breakdown.elapsed_minutes,
        outcome=DiffOutcome.CHANGED if changed else DiffOutcome.UNCHANGED,
        breakdown=breakdown.to_dict(as_json=True),
    )


# ----------------------------- database helpers ----------------------------- #
def _candidate_filter(stmt, scope: ReconciliationScope):
    stmt = stmt.where(RentalSession.end_time.is_not(None))
    if scope.start is not None:
        stmt = stmt.where(RentalSession.business_date >= scope.start)
    if scope.end is not None:
        stmt = stmt.where(RentalSession.business_date <= scope.end)
    return stmt


def count_candidates(db: Session, scope: ReconciliationScope) -> int:
    return int(db.scalar(_candidate_filter(select(func.count(RentalSession.id)), scope)) or 0)


def read_page(db: Session, scope: ReconciliationScope, *, after_id: int, limit: int) -> list[SessionSnapshot]:
    stmt = _candidate_filter(select(RentalSession), scope)
    stmt = stmt.where(RentalSession.id > after_id).order_by(RentalSession.id).limit(limit)
    return [SessionSnapshot.from_row(row) for row in db.scalars(stmt).all()]


def write_session_amount(
    db: Session,
    snapshot: SessionSnapshot,
    new_amount: Decimal,
    *,
    run_id: int,
    tariff_version: Optional[int],
    now: datetime,
) -> None:
    """Commit a revised amount iff the stored amount is still what was read."""
    guard = (
        RentalSession.stored_amount.is_(None)
        if snapshot.stored_amount is None
        else RentalSession.stored_amount == snapshot.stored_amount
    )
    result = db.execute(
        update(RentalSession)
        .where(RentalSession.id == snapshot.id, RentalSession.end_time.is_not(None), guard)
        .values(
            stored_amount=new_amount,
            tariff_version=tariff_version,
            last_reconciled_run_id=run_id,
            last_reconciled_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise SessionWriteConflict(
            f"Session {snapshot.id} changed while being reconciled",
            details={"session_id": snapshot.id, "expected_amount": str(snapshot.stored_amount)},
        )
    db.commit()


# ----------------------------- run lifecycle ----------------------------- #
def create_run(
    db: Session,
    scope: ReconciliationScope,
    mode: RunMode,
    config: Optional[TariffConfig],
    *,
    requested_by: Optional[str] = None,
    request_id: Optional[str] = None,
    clock: Clock = utc_now,
) -> ReconciliationRun:
    if config is None:
        raise MissingConfiguration("A tariff configuration is required to reconcile")
    run = ReconciliationRun(
        mode=mode,
        status=RunStatus.CREATED,
        scope_start=scope.start,
        scope_end=scope.end,
        tariff_version=config.version,
        requested_by=requested_by,
        request_id=request_id,
        created_at=clock(),
        errors=[],
        touched_dates=[],
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    _register_cancel_event(run.id)
    logger.info(
        "Reconciliation run created",
        run_id=run.id,
        mode=mode.value,
        scope=scope.label,
        tariff_version=config.version,
        request_id=request_id,
    )
    return run


class _RunDriver:
    def __init__(
        self,
        db: Session,
        run: ReconciliationRun,
        config: TariffConfig,
        *,
        clock: Clock,
        timer: Timer,
        cancel_event: threading.Event,
        page_size: int,
        max_workers: int,
        soft_timeout_seconds: float,
    ) -> None:
        self.db = db
        self.run = run
        self.run_id = run.id
        self.config = config
        self.clock = clock
        self.timer = timer
        self.cancel_event = cancel_event
        self.page_size = max(1, page_size)
        self.max_workers = max(1, max_workers)
        self.soft_timeout_seconds = soft_timeout_seconds
        self.scope = ReconciliationScope(run.scope_start, run.scope_end)
        self.apply = run.mode == RunMode.APPLY
        self.acc = RunAccumulator()

    def drive(self) -> ReconciliationRun:
        started_at = self.clock()
        started_perf = self.timer()
        deadline = started_perf + self.soft_timeout_seconds

        self.run.status = RunStatus.COMPUTING
        self.run.started_at = started_at
        self.run.tariff_version = self.config.version
        self.db.commit()

        failure: Optional[str] = None
        cancelled = False
        candidate_count = 0
        try:
            candidate_count = count_candidates(self.db, self.scope)
            self.run.candidate_count = candidate_count
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to read reconciliation candidates", run_id=self.run_id, error=str(e))
            return self._finalize(started_perf, candidate_count, failure=f"candidate_read_failed: {e}")

        last_id = 0
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"reconcile-{self.run_id}") as pool:
            while failure is None and not cancelled:
                try:
                    page = read_page(self.db, self.scope, after_id=last_id, limit=self.page_size)
                except SQLAlchemyError as e:
                    self.db.rollback()
                    logger.error("Failed to read reconciliation page", run_id=self.run_id, after_id=last_id, error=str(e))
                    failure = f"candidate_read_failed: {e}"
                    break
                if not page:
                    break
                last_id = page[-1].id

                records: list[DiffRecord] = []
                for evaluation in pool.map(partial(evaluate_session, config=self.config), page):
                    if self.cancel_event.is_set():
                        cancelled = True
                        break
                    if self.timer() >= deadline:
                        timeout = RunTimeout(
                            f"Soft timeout of {self.soft_timeout_seconds}s exceeded",
                            details={"soft_timeout_seconds": self.soft_timeout_seconds},
                        )
                        failure = f"{timeout.code}: {timeout.message}"
                        break
                    record = self._handle(evaluation)
                    if record is not None:
                        records.append(record)
                self._flush_page(records)

        self._recompute_aggregates()
        return self._finalize(started_perf, candidate_count, failure=failure, cancelled=cancelled)

    def _handle(self, evaluation: Evaluation) -> Optional[DiffRecord]:
        snapshot = evaluation.snapshot
        if evaluation.error is not None:
            self.acc.add_error(snapshot.id, evaluation.error, business_date=snapshot.business_date.isoformat())
            logger.warning(
                "Session skipped during reconciliation",
                run_id=self.run_id,
                session_id=snapshot.id,
                error_type=type(evaluation.error).__name__,
                error=evaluation.error.message,
            )
            return None

        record = build_record(self.run_id, evaluation)
        if record.outcome == DiffOutcome.CHANGED:
            if self.apply:
                try:
                    write_session_amount(
                        self.db,
                        snapshot,
                        record.new_amount,
                        run_id=self.run_id,
                        tariff_version=self.config.version,
                        now=self.clock(),
                    )
                except SessionWriteConflict as e:
                    self.acc.add_error(snapshot.id, e, business_date=snapshot.business_date.isoformat())
                    logger.warning("Session write conflict", run_id=self.run_id, session_id=snapshot.id)
                    return None
                except SQLAlchemyError as e:
                    self.db.rollback()
                    self.acc.add_error(snapshot.id, e, business_date=snapshot.business_date.isoformat())
                    logger.error("Session write failed", run_id=self.run_id, session_id=snapshot.id, error=str(e))
                    return None
            self.acc.touched_dates.add(snapshot.business_date)
        self.acc.add_record(record)
        return record

    def _flush_page(self, records: list[DiffRecord]) -> None:
        """Persist a page of diff rows plus progress counters."""
        run = self.run
        self.db.add_all(records)
        run.processed_count = self.acc.processed
        run.changed_count = self.acc.changed
        run.unchanged_count = self.acc.unchanged
        run.error_count = self.acc.error_count
        self.db.commit()

    def _recompute_aggregates(self) -> None:
        if not self.apply:
            return
        recomputed = 0
        for day in sorted(self.acc.touched_dates):
            try:
                recompute_daily_aggregate(self.db, day, run_id=self.run_id, clock=self.clock)
                recomputed += 1
            except AggregateWriteConflict as e:
                self.acc.add_error(None, e, business_date=day.isoformat())
                logger.error("Aggregate recomputation failed", run_id=self.run_id, date=day.isoformat())
            except SQLAlchemyError as e:
                self.db.rollback()
                self.acc.add_error(None, e, business_date=day.isoformat())
                logger.error("Aggregate recomputation failed", run_id=self.run_id, date=day.isoformat(), error=str(e))
        self.run.aggregates_recomputed = recomputed

    def _finalize(
        self,
        started_perf: float,
        candidate_count: int,
        *,
        failure: Optional[str] = None,
        cancelled: bool = False,
    ) -> ReconciliationRun:
        run = self.run
        acc = self.acc
        old_total = acc.old_total
        new_total = acc.new_total
        run.old_total = old_total
        run.new_total = new_total
        run.difference = new_total - old_total
        run.percent_change = to_money(pct_change(old_total, new_total))
        run.largest_increase = acc.largest_increase
        run.largest_decrease = acc.largest_decrease
        run.touched_dates = [d.isoformat() for d in sorted(acc.touched_dates)]
        run.errors = list(acc.errors)
        run.processed_count = acc.processed
        run.changed_count = acc.changed
        run.unchanged_count = acc.unchanged
        run.error_count = acc.error_count
        run.skipped_count = max(candidate_count - acc.processed, 0) if (failure or cancelled) else 0
        run.cancelled = cancelled
        run.failure_reason = failure
        run.status = RunStatus.FAILED if failure else RunStatus.COMPLETED
        run.completed_at = self.clock()
        duration_ms = (self.timer() - started_perf) * 1000
        run.duration_ms = to_money(round(duration_ms, 2))
        self.db.commit()
        self.db.refresh(run)

        log_business_event(
            "reconciliation_run_completed",
            {
                "mode": run.mode.value,
                "status": run.status.value,
                "scope": self.scope.label,
                "tariff_version": run.tariff_version,
                "processed": run.processed_count,
                "changed": run.changed_count,
                "errors": run.error_count,
                "skipped": run.skipped_count,
                "cancelled": cancelled,
                "difference": float(run.difference),
                "failure_reason": failure,
            },
            run_id=run.id,
            request_id=run.request_id,
        )
        log_performance("reconciliation_run", duration_ms, {"run_id": run.id, "mode": run.mode.value})
        return run


def _fail_without_processing(db: Session, run: ReconciliationRun, reason: str, clock: Clock) -> ReconciliationRun:
    run.status = RunStatus.FAILED
    run.failure_reason = reason
    run.completed_at = clock()
    db.commit()
    db.refresh(run)
    logger.warning("Reconciliation run failed before processing", run_id=run.id, reason=reason)
    log_business_event(
        "reconciliation_run_completed",
        {"mode": run.mode.value, "status": run.status.value, "failure_reason": reason},
        run_id=run.id,
        request_id=run.request_id,
    )
    return run


def execute_run(
    db: Session,
    run_id: int,
    config: Optional[TariffConfig],
    *,
    lock_manager: Optional[ScopeLockManager] = None,
    clock: Clock = utc_now,
    timer: Timer = time.monotonic,
    cancel_event: Optional[threading.Event] = None,
    page_size: Optional[int] = None,
    max_workers: Optional[int] = None,
    soft_timeout_seconds: Optional[float] = None,
    lock_wait_seconds: Optional[float] = None,
) -> ReconciliationRun:
    """Drive run ``run_id`` from CREATED to COMPLETED or FAILED.

    Raises:
        RunNotFound: no run with that id
        MissingConfiguration: ``config`` is None
    """
    run = db.get(ReconciliationRun, run_id)
    if run is None:
        raise RunNotFound(f"Reconciliation run {run_id} not found", details={"run_id": run_id})
    if run.is_terminal:
        logger.info("Reconciliation run already finished", run_id=run_id, status=run.status.value)
        return run
    if config is None:
        raise MissingConfiguration("A tariff configuration is required to reconcile")

    event = cancel_event or _cancel_event_for(run_id)
    settings = RECONCILIATION_SETTINGS
    scope = ReconciliationScope(run.scope_start, run.scope_end)
    manager = lock_manager or get_lock_manager()
    wait = float(settings.get("lock_wait_seconds", 0) if lock_wait_seconds is None else lock_wait_seconds)
    lock = manager.hold(scope, f"run:{run_id}", timeout=wait) if run.mode == RunMode.APPLY else nullcontext()

    driver = _RunDriver(
        db,
        run,
        config,
        clock=clock,
        timer=timer,
        cancel_event=event,
        page_size=int(settings.get("page_size", 200) if page_size is None else page_size),
        max_workers=int(settings.get("max_workers", 4) if max_workers is None else max_workers),
        soft_timeout_seconds=float(
            settings.get("soft_timeout_seconds", 300) if soft_timeout_seconds is None else soft_timeout_seconds
        ),
    )
    try:
        with lock:
            logger.info("Reconciliation run started", run_id=run_id, mode=run.mode.value, scope=scope.label)
            return driver.drive()
    except ScopeLocked as e:
        return _fail_without_processing(db, run, f"{e.code}: {e.message}", clock)
    except Exception as e:
        db.rollback()
        logger.error("Reconciliation run aborted", run_id=run_id, error=str(e), exc_info=True)
        _fail_without_processing(db, run, f"aborted: {type(e).__name__}: {e}", clock)
        raise
    finally:
        _forget_cancel_event(run_id)


def run_reconciliation(
    db: Session,
    scope: ReconciliationScope,
    mode: RunMode,
    config: Optional[TariffConfig],
    *,
    requested_by: Optional[str] = None,
    request_id: Optional[str] = None,
    clock: Clock = utc_now,
    **options: Any,
) -> ReconciliationRun:
    """Create and synchronously execute a run. ``options`` go to ``execute_run``."""
    run = create_run(db, scope, mode, config, requested_by=requested_by, request_id=request_id, clock=clock)
    return execute_run(db, run.id, config, clock=clock, **options)


def migration_status(db: Session) -> dict[str, Any]:
    """How many completed sessions carry an amount from a reconciliation."""
    completed = int(db.scalar(select(func.count(RentalSession.id)).where(RentalSession.end_time.is_not(None))) or 0)
    reconciled = int(
        db.scalar(
            select(func.count(RentalSession.id)).where(
                RentalSession.end_time.is_not(None), RentalSession.last_reconciled_run_id.is_not(None)
            )
        )
        or 0
    )
    last_at = db.scalar(select(func.max(RentalSession.last_reconciled_at)))
    last_run = db.scalars(
        select(ReconciliationRun)
        .where(ReconciliationRun.status == RunStatus.COMPLETED)
        .order_by(ReconciliationRun.id.desc())
        .limit(1)
    ).first()
    return {
        "completed_sessions": completed,
        "reconciled_sessions": reconciled,
        "unreconciled_sessions": completed - reconciled,
        "coverage_percent": round(reconciled / completed * 100, 2) if completed else 0.0,
        "last_reconciled_at": last_at.isoformat() if last_at else None,
        "last_completed_run_id": last_run.id if last_run else None,
    }


__all__ = [
    "SessionSnapshot",
    "Evaluation",
    "RunAccumulator",
    "evaluate_session",
    "build_record",
    "write_session_amount",
    "create_run",
    "execute_run",
    "run_reconciliation",
    "request_cancel",
    "migration_status",
]
