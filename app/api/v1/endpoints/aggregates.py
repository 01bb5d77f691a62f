"""
Daily revenue aggregate endpoints.
"""
from datetime import date, datetime
from typing import Callable, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.orm import Session
import time
from app.api.deps import get_clock, get_db
from app.models.schemas.aggregates import AggregateRecompute, DailyAggregateRead
from app.models.schemas.base import ResponseBase
from app.services.aggregates import date_span, list_aggregates, recompute_range
from app.utils import get_logger, log_business_event, log_performance
from app.utils.metrics import money_sum
from app.utils.observability import request_id_of

router = APIRouter()
logger = get_logger(__name__)

MAX_RECOMPUTE_DAYS = 366


@router.get(
    "/daily",
    response_model=ResponseBase,
    summary="Daily revenue aggregates for a date range"
)
async def get_daily_aggregates(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: Session = Depends(get_db)
) -> ResponseBase:
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_date must not be before start_date")
    rows = list_aggregates(db, start_date, end_date)
    return ResponseBase(
        success=True,
        message=f"{len(rows)} day(s)",
        data={
            "items": [DailyAggregateRead.model_validate(r).model_dump(mode="json") for r in rows],
            "total_revenue": float(money_sum(r.total_revenue for r in rows)),
            "session_count": sum(r.session_count for r in rows),
        },
    )


@router.post(
    "/daily/recompute",
    response_model=ResponseBase,
    summary="Re-derive daily aggregates from the stored session amounts"
)
def recompute_daily_aggregates(
    body: AggregateRecompute,
    request: Request,
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock)
) -> ResponseBase:
    start_time = time.time()
    request_id = request_id_of(request)
    if date_span(body.start_date, body.end_date) > MAX_RECOMPUTE_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {MAX_RECOMPUTE_DAYS} days can be recomputed at once"
        )
    rows = recompute_range(db, body.start_date, body.end_date, clock=clock)
    log_business_event(
        event_type="daily_aggregates_recomputed",
        details={
            "start_date": body.start_date.isoformat(),
            "end_date": body.end_date.isoformat(),
            "days": len(rows),
        },
        request_id=request_id
    )
    log_performance(
        operation="recompute_daily_aggregates",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"days": len(rows)}
    )
    return ResponseBase(
        success=True,
        message=f"Recomputed {len(rows)} day(s)",
        data={"items": [DailyAggregateRead.model_validate(r).model_dump(mode="json") for r in rows]},
    )
