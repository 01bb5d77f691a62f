"""Reconciliation engine against the test database.

Runs are executed synchronously through ``run_reconciliation`` / ``execute_run``
with explicit lock managers, timers and cancel events.
"""
import itertools
import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.exceptions import (
    AggregateWriteConflict,
    AuditRecordImmutable,
    MissingConfiguration,
    RunNotFound,
    SessionReadFailure,
)
from app.models.db import DailyAggregate, DiffRecord, ReconciliationRun, RentalSession
from app.models.db.enums import DiffOutcome, RunMode, RunStatus
from app.services import aggregates as aggregates_service
from app.services.reconciliation_engine import (
    Evaluation,
    SessionSnapshot,
    build_record,
    create_run,
    execute_run,
    migration_status,
    request_cancel,
    run_reconciliation,
)
from app.services.scope_lock import ReconciliationScope, ScopeLockManager

DAY = date(2025, 6, 2)
ALL_TIME = ReconciliationScope.all_time()


def at(hour: int, minute: int = 0, day: int = 2) -> datetime:
    return datetime(2025, 6, day, hour, minute, tzinfo=timezone.utc)


def _reconcile(db, mode, config, scope=ALL_TIME, **options):
    options.setdefault("lock_manager", ScopeLockManager())
    return run_reconciliation(db, scope, mode, config, requested_by="tests", **options)


def _records(db, run_id):
    return db.scalars(select(DiffRecord).where(DiffRecord.run_id == run_id).order_by(DiffRecord.session_id)).all()


def test_dry_run_with_matching_amounts_reports_no_difference(db_session, session_factory, reference_config):
    session_factory(at(9), 40, stored_amount=80)
    session_factory(at(9), 110, stored_amount=160)
    session_factory(at(21, 30), 90, stored_amount=164)

    run = _reconcile(db_session, RunMode.DRY_RUN, reference_config)

    assert run.status == RunStatus.COMPLETED
    assert run.difference == 0
    assert run.changed_count == 0
    assert run.unchanged_count == 3
    assert run.processed_count == 3
    assert run.touched_dates == []
    assert run.largest_increase is None and run.largest_decrease is None
    assert all(r.outcome == DiffOutcome.UNCHANGED for r in _records(db_session, run.id))
    assert db_session.scalar(select(DailyAggregate.id)) is None


def test_dry_run_never_writes(db_session, session_factory, reference_config):
    s1 = session_factory(at(9), 40, stored_amount=100)
    s2 = session_factory(at(12), 110, stored_amount=120)

    run = _reconcile(db_session, RunMode.DRY_RUN, reference_config)

    assert run.status == RunStatus.COMPLETED
    assert run.old_total == Decimal("220")
    assert run.new_total == Decimal("240")
    assert run.difference == Decimal("20")
    assert run.largest_decrease["session_id"] == s1.id
    assert run.largest_increase["session_id"] == s2.id
    assert run.touched_dates == [DAY.isoformat()]

    db_session.expire_all()
    assert s1.stored_amount == Decimal("100")
    assert s2.stored_amount == Decimal("120")
    assert s1.last_reconciled_run_id is None
    assert db_session.scalar(select(DailyAggregate.id)) is None
    assert len(_records(db_session, run.id)) == 2


def test_apply_writes_changed_sessions_and_rebuilds_aggregates(db_session, session_factory, reference_config):
    changed = session_factory(at(9), 110, stored_amount=150)
    same = session_factory(at(13), 40, stored_amount=80)
    missing = session_factory(at(15), 60)
    other_day = session_factory(at(10, day=3), 40, stored_amount=80)

    run = _reconcile(db_session, RunMode.APPLY, reference_config)

    assert run.status == RunStatus.COMPLETED
    assert run.changed_count == 2
    assert run.unchanged_count == 2
    assert run.touched_dates == [DAY.isoformat()]
    assert run.aggregates_recomputed == 1

    db_session.expire_all()
    assert changed.stored_amount == Decimal("160")
    assert changed.last_reconciled_run_id == run.id
    assert changed.tariff_version == reference_config.version
    assert missing.stored_amount == Decimal("80")
    assert same.last_reconciled_run_id is None
    assert other_day.last_reconciled_run_id is None

    aggregate = db_session.scalars(select(DailyAggregate).where(DailyAggregate.date == DAY)).one()
    expected = sum(
        s.stored_amount
        for s in db_session.scalars(select(RentalSession).where(RentalSession.business_date == DAY)).all()
    )
    assert aggregate.total_revenue == expected == Decimal("320")
    assert aggregate.session_count == 3
    assert aggregate.last_run_id == run.id


def test_apply_is_idempotent(db_session, session_factory, reference_config):
    session_factory(at(9), 110, stored_amount=150)
    session_factory(at(21, 30), 90, stored_amount=100)

    first = _reconcile(db_session, RunMode.APPLY, reference_config)
    second = _reconcile(db_session, RunMode.APPLY, reference_config)

    assert first.difference == Decimal("74")
    assert second.difference == 0
    assert second.changed_count == 0
    assert second.touched_dates == []
    assert all(r.difference == 0 for r in _records(db_session, second.id))


def test_reversed_interval_is_isolated(db_session, session_factory, reference_config):
    good = session_factory(at(9), 40, stored_amount=60)
    broken = session_factory(at(12), end=at(11), stored_amount=80)

    run = _reconcile(db_session, RunMode.APPLY, reference_config)

    assert run.status == RunStatus.COMPLETED
    assert run.error_count == 1
    assert run.processed_count == 2
    assert run.errors[0]["session_id"] == broken.id
    assert run.errors[0]["error_type"] == "InvalidInterval"
    assert _records(db_session, run.id)[0].session_id == good.id
    db_session.expire_all()
    assert good.stored_amount == Decimal("80")
    assert broken.stored_amount == Decimal("80")


def test_largest_change_ties_go_to_lowest_session_id(db_session, session_factory, reference_config):
    first = session_factory(at(9), 110, stored_amount=120)
    session_factory(at(12), 110, stored_amount=120)
    low = session_factory(at(15), 40, stored_amount=100)
    session_factory(at(16), 40, stored_amount=100)

    run = _reconcile(db_session, RunMode.DRY_RUN, reference_config)

    assert run.largest_increase["session_id"] == first.id
    assert run.largest_increase["difference"] == 40.0
    assert run.largest_decrease["session_id"] == low.id
    assert run.largest_decrease["difference"] == -20.0


def test_scope_limits_candidates(db_session, session_factory, reference_config):
    session_factory(at(9, day=1), 40, stored_amount=0)
    inside = session_factory(at(9, day=2), 40, stored_amount=0)
    session_factory(at(9, day=3), 40, stored_amount=0)
    session_factory(at(10, day=2))  # still active

    run = _reconcile(db_session, RunMode.DRY_RUN, reference_config, scope=ReconciliationScope(DAY, DAY))

    assert run.candidate_count == 1
    assert [r.session_id for r in _records(db_session, run.id)] == [inside.id]
    assert run.scope_label == "2025-06-02..2025-06-02"


def test_small_pages_and_parallel_workers_cover_every_session(db_session, session_factory, reference_config):
    for hour in range(8, 15):
        session_factory(at(hour), 110, stored_amount=0)

    run = _reconcile(db_session, RunMode.APPLY, reference_config, page_size=2, max_workers=3)

    assert run.candidate_count == 7
    assert run.processed_count == 7
    assert run.changed_count == 7
    assert run.new_total == Decimal("1120")
    aggregate = db_session.scalars(select(DailyAggregate)).one()
    assert aggregate.total_revenue == Decimal("1120")


def test_soft_timeout_fails_run_but_keeps_commits(db_session, session_factory, reference_config):
    first = session_factory(at(9), 110, stored_amount=0)
    second = session_factory(at(10), 110, stored_amount=0)
    session_factory(at(11), 110, stored_amount=0)
    ticks = itertools.count(0, 6)

    run = _reconcile(
        db_session,
        RunMode.APPLY,
        reference_config,
        timer=lambda: next(ticks),
        soft_timeout_seconds=10,
    )

    assert run.status == RunStatus.FAILED
    assert run.failure_reason.startswith("run_timeout")
    assert run.processed_count == 1
    assert run.skipped_count == 2
    db_session.expire_all()
    assert first.stored_amount == Decimal("160")
    assert second.stored_amount == Decimal("0")
    # the committed write is reflected in the day's aggregate
    aggregate = db_session.scalars(select(DailyAggregate)).one()
    assert aggregate.total_revenue == Decimal("160")


def test_cancel_before_start_skips_everything(db_session, session_factory, reference_config):
    session_factory(at(9), 110, stored_amount=0)
    session_factory(at(10), 110, stored_amount=0)

    run = create_run(db_session, ALL_TIME, RunMode.APPLY, reference_config)
    assert request_cancel(run.id)
    run = execute_run(db_session, run.id, reference_config, lock_manager=ScopeLockManager())

    assert run.status == RunStatus.COMPLETED
    assert run.cancelled
    assert run.processed_count == 0
    assert run.skipped_count == 2
    # a finished run can no longer be cancelled
    assert not request_cancel(run.id)


def test_cancel_event_is_injectable(db_session, session_factory, reference_config):
    session_factory(at(9), 40, stored_amount=80)
    event = threading.Event()
    event.set()
    run = create_run(db_session, ALL_TIME, RunMode.DRY_RUN, reference_config)
    run = execute_run(db_session, run.id, reference_config, cancel_event=event)
    assert run.cancelled
    assert run.skipped_count == 1


def test_apply_fails_when_scope_is_locked(db_session, session_factory, reference_config):
    session = session_factory(at(9), 110, stored_amount=0)
    manager = ScopeLockManager()
    manager.acquire(ReconciliationScope(date(2025, 6, 1), date(2025, 6, 30)), "run:other")

    run = _reconcile(db_session, RunMode.APPLY, reference_config, scope=ReconciliationScope(DAY, DAY), lock_manager=manager)

    assert run.status == RunStatus.FAILED
    assert run.failure_reason.startswith("scope_locked")
    assert run.processed_count == 0
    db_session.expire_all()
    assert session.stored_amount == Decimal("0")

    # previews take no lock
    preview = _reconcile(db_session, RunMode.DRY_RUN, reference_config, lock_manager=manager)
    assert preview.status == RunStatus.COMPLETED
    assert manager.snapshot()["held"] == {"run:other": "2025-06-01..2025-06-30"}


def test_completed_runs_and_diffs_are_immutable(db_session, session_factory, reference_config):
    session_factory(at(9), 40, stored_amount=100)
    run = _reconcile(db_session, RunMode.DRY_RUN, reference_config)

    run.old_total = Decimal("1")
    with pytest.raises(AuditRecordImmutable):
        db_session.commit()
    db_session.rollback()

    db_session.expire(run)
    run.status = RunStatus.CREATED
    with pytest.raises(AuditRecordImmutable):
        db_session.commit()
    db_session.rollback()

    record = _records(db_session, run.id)[0]
    db_session.delete(record)
    with pytest.raises(AuditRecordImmutable):
        db_session.commit()
    db_session.rollback()

    db_session.delete(db_session.get(ReconciliationRun, run.id))
    with pytest.raises(AuditRecordImmutable):
        db_session.commit()
    db_session.rollback()
    assert db_session.get(ReconciliationRun, run.id).status == RunStatus.COMPLETED


def test_aggregate_conflict_is_retried_once(db_session, session_factory, monkeypatch):
    session_factory(at(9), 40, stored_amount=80)
    original = aggregates_service._recompute_once
    calls = []

    def _flaky(db, day, run_id, now):
        calls.append(day)
        if len(calls) == 1:
            raise AggregateWriteConflict("concurrent write")
        return original(db, day, run_id, now)

    monkeypatch.setattr(aggregates_service, "_recompute_once", _flaky)
    aggregate = aggregates_service.recompute_daily_aggregate(db_session, DAY)
    assert len(calls) == 2
    assert aggregate.total_revenue == Decimal("80")


def test_persistent_aggregate_conflict_is_recorded_on_run(db_session, session_factory, reference_config, monkeypatch):
    session_factory(at(9), 40, stored_amount=60)

    def _always_conflict(db, day, run_id, now):
        raise AggregateWriteConflict("concurrent write", details={"date": day.isoformat()})

    monkeypatch.setattr(aggregates_service, "_recompute_once", _always_conflict)
    run = _reconcile(db_session, RunMode.APPLY, reference_config)

    assert run.status == RunStatus.COMPLETED
    assert run.aggregates_recomputed == 0
    assert run.error_count == 0
    assert run.errors == [
        {
            "session_id": None,
            "error_type": "AggregateWriteConflict",
            "message": "concurrent write",
            "business_date": DAY.isoformat(),
        }
    ]


def test_runs_require_a_configuration(db_session):
    with pytest.raises(MissingConfiguration):
        create_run(db_session, ALL_TIME, RunMode.DRY_RUN, None)


def test_execute_unknown_or_finished_run(db_session, session_factory, reference_config):
    with pytest.raises(RunNotFound):
        execute_run(db_session, 999, reference_config)
    session_factory(at(9), 40, stored_amount=80)
    run = _reconcile(db_session, RunMode.DRY_RUN, reference_config)
    again = execute_run(db_session, run.id, reference_config)
    assert again.id == run.id
    assert again.processed_count == 1
    assert len(_records(db_session, run.id)) == 1


def test_migration_status(db_session, session_factory, reference_config):
    session_factory(at(9), 110, stored_amount=0)
    session_factory(at(10), 40, stored_amount=80)
    session_factory(at(11))

    before = migration_status(db_session)
    assert before["completed_sessions"] == 2
    assert before["reconciled_sessions"] == 0
    assert before["last_completed_run_id"] is None

    run = _reconcile(db_session, RunMode.APPLY, reference_config)
    after = migration_status(db_session)
    assert after["reconciled_sessions"] == 1
    assert after["unreconciled_sessions"] == 1
    assert after["coverage_percent"] == 50.0
    assert after["last_completed_run_id"] == run.id
    assert after["last_reconciled_at"] is not None


def test_record_without_computed_amount_is_a_read_failure():
    snapshot = SessionSnapshot(
        id=7,
        start_time=None,
        end_time=None,
        stored_amount=Decimal("80"),
        business_date=DAY,
    )
    evaluation = Evaluation(snapshot=snapshot, error=SessionReadFailure("Session 7 has no complete interval"))
    with pytest.raises(SessionReadFailure) as exc:
        build_record(1, evaluation)
    assert exc.value.details["session_id"] == 7
