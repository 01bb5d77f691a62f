"""
Reconciliation endpoints: trigger runs, inspect diff reports, cancel and monitor.
"""
from datetime import date
from decimal import Decimal
from typing import Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session
import time
from app.api.deps import get_db, get_pagination_params, get_scope_lock_manager
from app.config import RECONCILIATION_SETTINGS
from app.exceptions import BillingError, RunNotFound, ScopeLocked
from app.jobs.reconciliation_job import ReconciliationJob, priority_for
from app.models.db import ReconciliationRun
from app.models.db.enums import DiffOutcome, RunMode, RunStatus
from app.models.schemas.base import ErrorResponse, ResponseBase
from app.models.schemas.reconciliation import ReconciliationTrigger, SortKey
from app.services.diff_report import DiffReport, DiffReportQuery, serialize_run
from app.services.reconciliation_engine import create_run, execute_run, migration_status, request_cancel
from app.services.scope_lock import ReconciliationScope, ScopeLockManager
from app.services.tariffs import active_tariff, tariff_by_version
from app.utils import get_logger, log_business_event, log_performance
from app.utils.observability import request_id_of

router = APIRouter()
logger = get_logger(__name__)
MAX_REPORT_PAGE = int(RECONCILIATION_SETTINGS["max_report_page"])


def _queue(request: Request):
    queue = getattr(request.app.state, "reconciliation_queue", None)  # type: ignore[attr-defined]
    if queue is None:
        raise HTTPException(status_code=503, detail="Reconciliation queue not available")
    return queue


@router.post(
    "/run",
    response_model=ResponseBase,
    summary="Reconcile stored amounts for a date range",
    responses={409: {"model": ErrorResponse}, 412: {"model": ErrorResponse}},
    description="dry_run previews the differences; apply commits them. run_async enqueues the run and returns its id."
)
def trigger_reconciliation(
    trigger_data: ReconciliationTrigger,
    request: Request,
    db: Session = Depends(get_db),
    lock_manager: ScopeLockManager = Depends(get_scope_lock_manager)
) -> ResponseBase:
    start_time = time.time()
    request_id = request_id_of(request)
    scope = ReconciliationScope(trigger_data.start_date, trigger_data.end_date)

    logger.info(
        "Reconciliation requested",
        mode=trigger_data.mode.value,
        scope=scope.label,
        run_async=trigger_data.run_async,
        request_id=request_id
    )

    config = (
        tariff_by_version(db, trigger_data.tariff_version)
        if trigger_data.tariff_version is not None
        else active_tariff(db)
    )
    queue = _queue(request) if trigger_data.run_async else None
    run = create_run(
        db,
        scope,
        trigger_data.mode,
        config,
        requested_by=trigger_data.requested_by,
        request_id=request_id,
    )

    if queue is not None:
        priority = priority_for(trigger_data.mode)
        queue.enqueue(
            ReconciliationJob(run_id=run.id, tariff_version=config.version, priority=priority, correlation_id=request_id),
            priority=priority,
        )
        log_business_event(
            event_type="reconciliation_run_enqueued",
            details={"mode": trigger_data.mode.value, "scope": scope.label, "priority": priority},
            run_id=run.id,
            request_id=request_id
        )
        return ResponseBase(
            success=True,
            message=f"Reconciliation run {run.id} enqueued",
            data={"run_id": run.id, "status": run.status.value, "queue_depth": queue.depth()},
        )

    try:
        run = execute_run(db, run.id, config, lock_manager=lock_manager)
    except (HTTPException, BillingError):
        raise
    except Exception as e:
        logger.error("Reconciliation run failed", run_id=run.id, error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Reconciliation run failed")

    if run.status == RunStatus.FAILED and (run.failure_reason or "").startswith(ScopeLocked.code):
        raise ScopeLocked(run.failure_reason or "Scope locked", details={"run_id": run.id, "scope": scope.label})

    duration_ms = (time.time() - start_time) * 1000
    log_performance(
        operation="trigger_reconciliation",
        duration_ms=duration_ms,
        additional_data={"run_id": run.id, "processed": run.processed_count}
    )
    return ResponseBase(
        success=run.status == RunStatus.COMPLETED,
        message=f"Reconciliation run {run.id} {run.status.value.lower()}",
        data=serialize_run(run),
    )


@router.get(
    "/runs",
    response_model=ResponseBase,
    summary="List reconciliation runs (newest first)"
)
async def list_runs(
    mode: Optional[RunMode] = Query(None),
    status_filter: Optional[RunStatus] = Query(None, alias="status"),
    pagination: dict = Depends(get_pagination_params),
    db: Session = Depends(get_db)
) -> ResponseBase:
    stmt = select(ReconciliationRun).order_by(ReconciliationRun.id.desc())
    if mode is not None:
        stmt = stmt.where(ReconciliationRun.mode == mode)
    if status_filter is not None:
        stmt = stmt.where(ReconciliationRun.status == status_filter)
    runs = db.scalars(stmt.offset(pagination["offset"]).limit(pagination["limit"])).all()
    return ResponseBase(
        success=True,
        message=f"{len(runs)} run(s)",
        data={"items": [serialize_run(r) for r in runs], **pagination},
    )


@router.get(
    "/runs/{run_id}",
    response_model=ResponseBase,
    summary="Diff report of a run",
    description="Run summary plus its per-session diffs, filtered, sorted and paginated"
)
async def get_run_report(
    run_id: int,
    request: Request,
    sort_by: SortKey = Query("abs_difference"),
    descending: bool = Query(True),
    outcome: Optional[DiffOutcome] = Query(None),
    changed_only: bool = Query(False),
    min_abs_difference: Optional[Decimal] = Query(None, ge=0),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    direction: Optional[Literal["increase", "decrease"]] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=MAX_REPORT_PAGE),
    db: Session = Depends(get_db)
) -> ResponseBase:
    start_time = time.time()
    report = DiffReport.load(db, run_id)
    query = DiffReportQuery(
        sort_by=sort_by,
        descending=descending,
        outcome=outcome,
        changed_only=changed_only,
        min_abs_difference=min_abs_difference,
        date_from=date_from,
        date_to=date_to,
        direction=direction,
        page=page,
        page_size=page_size,
    )
    data = report.to_dict(query)
    log_performance(
        operation="get_run_report",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"run_id": run_id, "records": len(report.records)}
    )
    logger.debug("Run report served", run_id=run_id, request_id=request_id_of(request))
    return ResponseBase(success=True, data=data)


@router.post(
    "/runs/{run_id}/cancel",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request cancellation of a pending or running run"
)
async def cancel_run(
    run_id: int,
    request: Request,
    db: Session = Depends(get_db)
) -> ResponseBase:
    run = db.get(ReconciliationRun, run_id)
    if run is None:
        raise RunNotFound(f"Reconciliation run {run_id} not found", details={"run_id": run_id})
    if run.is_terminal or not request_cancel(run_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run {run_id} is not running (status {run.status.value})"
        )
    log_business_event(
        event_type="reconciliation_cancel_requested",
        details={"status": run.status.value},
        run_id=run_id,
        request_id=request_id_of(request)
    )
    return ResponseBase(success=True, message=f"Cancellation requested for run {run_id}", data={"run_id": run_id})


@router.get(
    "/queue",
    response_model=ResponseBase,
    summary="Get reconciliation queue snapshot"
)
async def queue_snapshot(request: Request) -> ResponseBase:
    queue = _queue(request)
    worker = getattr(request.app.state, "reconciliation_worker", None)  # type: ignore[attr-defined]
    return ResponseBase(
        success=True,
        message="Queue snapshot",
        data={
            "snapshot": queue.snapshot(),
            "pending_run_ids": [item.job.run_id for item in queue.pending() if isinstance(item.job, ReconciliationJob)],
            "worker": worker.snapshot() if worker is not None else None,
            "request_id": request_id_of(request),
        },
    )


@router.get(
    "/status",
    response_model=ResponseBase,
    summary="Migration coverage and run counters"
)
async def reconciliation_status(
    db: Session = Depends(get_db),
    lock_manager: ScopeLockManager = Depends(get_scope_lock_manager)
) -> ResponseBase:
    counts = dict(
        db.execute(select(ReconciliationRun.status, func.count(ReconciliationRun.id)).group_by(ReconciliationRun.status)).all()
    )
    return ResponseBase(
        success=True,
        data={
            **migration_status(db),
            "runs": {s.value: int(counts.get(s, 0)) for s in RunStatus},
            "locks": lock_manager.snapshot(),
        },
    )
