"""
Rental session endpoints: ingestion, completion and live estimates.
"""
from datetime import date, datetime
from typing import Callable, Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import time
from app.api.deps import get_active_tariff, get_clock, get_db, get_pagination_params
from app.exceptions import BillingError, InvalidInterval, SessionNotFound
from app.models.db import RentalSession
from app.models.schemas.base import ResponseBase
from app.models.schemas.sessions import SessionComplete, SessionCreate, SessionRead
from app.models.schemas.tariffs import BreakdownRead
from app.services.completion import complete_session
from app.services.estimator import ActiveSessionEstimator
from app.services.tariff_calculator import TariffConfig
from app.utils import get_logger, log_business_event, log_performance
from app.utils.observability import request_id_of
from app.utils.time import business_date, ensure_utc

router = APIRouter()
logger = get_logger(__name__)
estimator = ActiveSessionEstimator()


def _session_payload(session: RentalSession) -> dict:
    return SessionRead.model_validate(session).model_dump(mode="json")


def _load_session(db: Session, session_id: int) -> RentalSession:
    session = db.get(RentalSession, session_id)
    if session is None:
        raise SessionNotFound(f"Session {session_id} not found", details={"session_id": session_id})
    return session


@router.post(
    "/",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Register a rental session",
    description="Starts a session; completed historical sessions may be imported with end_time and stored_amount"
)
async def create_session(
    session_data: SessionCreate,
    request: Request,
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request_id_of(request)
    start = ensure_utc(session_data.start_time)
    end = ensure_utc(session_data.end_time) if session_data.end_time else None
    if end is not None and end < start:
        raise InvalidInterval(
            "end_time is before start_time",
            details={"start_time": start.isoformat(), "end_time": end.isoformat()},
        )
    if session_data.stored_amount is not None and end is None:
        raise HTTPException(status_code=400, detail="stored_amount requires end_time")

    session = RentalSession(
        booking_ref=session_data.booking_ref,
        start_time=start,
        end_time=end,
        expected_end_time=ensure_utc(session_data.expected_end_time) if session_data.expected_end_time else None,
        business_date=business_date(start),
        stored_amount=session_data.stored_amount,
        adjustment_amount=0,
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Duplicate booking reference", booking_ref=session_data.booking_ref, request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session for booking '{session_data.booking_ref}' already exists"
        )
    db.refresh(session)

    log_business_event(
        event_type="session_started" if end is None else "session_imported",
        details={
            "session_id": session.id,
            "booking_ref": session.booking_ref,
            "business_date": session.business_date.isoformat(),
        },
        request_id=request_id
    )
    return ResponseBase(success=True, message=f"Session {session.id} registered", data=_session_payload(session))


@router.get(
    "/",
    response_model=ResponseBase,
    summary="List sessions"
)
async def list_sessions(
    state: Optional[Literal["active", "completed"]] = Query(None, description="Filter by lifecycle state"),
    on_date: Optional[date] = Query(None, description="Business date"),
    pagination: dict = Depends(get_pagination_params),
    db: Session = Depends(get_db)
) -> ResponseBase:
    stmt = select(RentalSession).order_by(RentalSession.id)
    if state == "active":
        stmt = stmt.where(RentalSession.end_time.is_(None))
    elif state == "completed":
        stmt = stmt.where(RentalSession.end_time.is_not(None))
    if on_date is not None:
        stmt = stmt.where(RentalSession.business_date == on_date)
    rows = db.scalars(stmt.offset(pagination["offset"]).limit(pagination["limit"])).all()
    return ResponseBase(
        success=True,
        message=f"{len(rows)} session(s)",
        data={"items": [_session_payload(s) for s in rows], **pagination},
    )


@router.get(
    "/active/estimates",
    response_model=ResponseBase,
    summary="Running amounts of all active sessions against one shared 'now'"
)
async def estimate_active_sessions(
    request: Request,
    db: Session = Depends(get_db),
    config: TariffConfig = Depends(get_active_tariff),
    clock: Callable[[], datetime] = Depends(get_clock)
) -> ResponseBase:
    start_time = time.time()
    sessions = db.scalars(
        select(RentalSession).where(RentalSession.end_time.is_(None)).order_by(RentalSession.id)
    ).all()
    now = clock()
    estimates = estimator.estimate_many(sessions, lambda: now, config)
    items = [
        {
            "session_id": s.id,
            "booking_ref": s.booking_ref,
            "start_time": ensure_utc(s.start_time).isoformat(),
            "estimate": BreakdownRead.from_breakdown(estimates[s.id]).model_dump(mode="json"),
        }
        for s in sessions
    ]
    log_performance(
        operation="estimate_active_sessions",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"sessions": len(items)}
    )
    return ResponseBase(
        success=True,
        message=f"{len(items)} active session(s)",
        data={
            "as_of": now.isoformat(),
            "tariff_version": config.version,
            "total_estimated": float(sum(e.total_amount for e in estimates.values())),
            "items": items,
        },
    )


@router.get(
    "/{session_id}",
    response_model=ResponseBase,
    summary="Get one session"
)
async def get_session(
    session_id: int,
    db: Session = Depends(get_db)
) -> ResponseBase:
    return ResponseBase(success=True, data=_session_payload(_load_session(db, session_id)))


@router.get(
    "/{session_id}/estimate",
    response_model=ResponseBase,
    summary="Advisory running amount of an active session"
)
async def estimate_session(
    session_id: int,
    request: Request,
    db: Session = Depends(get_db),
    config: TariffConfig = Depends(get_active_tariff),
    clock: Callable[[], datetime] = Depends(get_clock)
) -> ResponseBase:
    session = _load_session(db, session_id)
    now = clock()
    breakdown = estimator.estimate(session, lambda: now, config)
    logger.debug("Session estimated", session_id=session_id, request_id=request_id_of(request))
    return ResponseBase(
        success=True,
        message="Estimate only; the amount is fixed at completion",
        data={
            "session_id": session.id,
            "as_of": now.isoformat(),
            "estimate": BreakdownRead.from_breakdown(breakdown).model_dump(mode="json"),
        },
    )


@router.post(
    "/{session_id}/complete",
    response_model=ResponseBase,
    summary="Complete a session",
    description="Fixes the engine amount, records flat fees and refreshes the day's aggregate"
)
def complete(
    session_id: int,
    completion: SessionComplete,
    request: Request,
    db: Session = Depends(get_db),
    config: TariffConfig = Depends(get_active_tariff),
    clock: Callable[[], datetime] = Depends(get_clock)
) -> ResponseBase:
    start_time = time.time()
    request_id = request_id_of(request)
    session = _load_session(db, session_id)
    try:
        result = complete_session(
            db,
            session,
            completion.end_time or clock(),
            config,
            damage_charge=completion.damage_charge,
            discount=completion.discount,
            clock=clock,
            request_id=request_id,
        )
    except (HTTPException, BillingError):
        raise
    except Exception as e:
        logger.error("Session completion failed", session_id=session_id, error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to complete session")

    log_performance(
        operation="complete_session",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"session_id": session_id}
    )
    return ResponseBase(
        success=True,
        message=f"Session {session_id} completed",
        data={
            "session": _session_payload(result.session),
            "breakdown": BreakdownRead.from_breakdown(result.breakdown).model_dump(mode="json"),
            "adjustments": {k: float(v) for k, v in result.adjustments.to_dict().items()},
            "amount_due": float(result.amount_due),
            "daily_total_revenue": float(result.aggregate.total_revenue),
        },
    )
