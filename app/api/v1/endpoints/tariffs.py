"""
Tariff configuration endpoints: versioned creation, lookup and price quotes.
"""
from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy import select
from sqlalchemy.orm import Session
import time
from app.api.deps import get_db, get_pagination_params
from app.exceptions import BillingError, MissingConfiguration
from app.models.db import TariffConfiguration
from app.models.schemas.base import ResponseBase
from app.models.schemas.tariffs import BreakdownRead, QuoteRequest, TariffCreate, TariffRead
from app.services.tariff_calculator import compute, pricing_examples
from app.services.tariffs import active_tariff, create_tariff_version, latest_tariff, tariff_by_version
from app.utils import get_logger, log_performance
from app.utils.observability import request_id_of
from app.utils.time import to_business_time, utc_now

router = APIRouter()
logger = get_logger(__name__)


def _tariff_payload(row: TariffConfiguration) -> dict:
    return TariffRead.model_validate(row).model_dump(mode="json")


@router.post(
    "/",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new tariff version",
    description="Tariffs are insert-only; the new version becomes the active one"
)
async def create_tariff(
    tariff_data: TariffCreate,
    request: Request,
    db: Session = Depends(get_db)
) -> ResponseBase:
    start_time = time.time()
    request_id = request_id_of(request)

    logger.info("Tariff creation started", created_by=tariff_data.created_by, request_id=request_id)
    try:
        values = tariff_data.model_dump(exclude={"notes", "created_by"})
        row = create_tariff_version(
            db,
            values,
            notes=tariff_data.notes,
            created_by=tariff_data.created_by,
            request_id=request_id,
        )
        duration_ms = (time.time() - start_time) * 1000
        log_performance(
            operation="create_tariff",
            duration_ms=duration_ms,
            additional_data={"version": row.version}
        )
        logger.info("Tariff version created", version=row.version, request_id=request_id)
        return ResponseBase(
            success=True,
            message=f"Tariff version {row.version} created",
            data=_tariff_payload(row),
        )
    except (HTTPException, BillingError):
        raise
    except Exception as e:
        logger.error("Tariff creation failed", error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create tariff")


@router.get(
    "/",
    response_model=ResponseBase,
    summary="List tariff versions (newest first)"
)
async def list_tariffs(
    request: Request,
    pagination: dict = Depends(get_pagination_params),
    db: Session = Depends(get_db)
) -> ResponseBase:
    rows = db.scalars(
        select(TariffConfiguration)
        .order_by(TariffConfiguration.version.desc())
        .offset(pagination["offset"])
        .limit(pagination["limit"])
    ).all()
    logger.info("Tariffs listed", count=len(rows), request_id=request_id_of(request))
    return ResponseBase(
        success=True,
        message=f"{len(rows)} tariff version(s)",
        data={"items": [_tariff_payload(r) for r in rows], **pagination},
    )


@router.get(
    "/active",
    response_model=ResponseBase,
    summary="Active tariff with reference prices"
)
async def get_active_tariff_details(
    request: Request,
    db: Session = Depends(get_db)
) -> ResponseBase:
    row = latest_tariff(db)
    if row is None:
        raise MissingConfiguration("No tariff configuration has been created yet")
    config = row.to_value()
    today = to_business_time(utc_now()).replace(hour=0, minute=0, second=0, microsecond=0)
    examples = pricing_examples(
        config,
        day_start=today + timedelta(hours=10),
        night_start=today + timedelta(hours=config.night_start_hour),
    )
    return ResponseBase(
        success=True,
        message=f"Active tariff is version {row.version}",
        data={
            "tariff": _tariff_payload(row),
            "base_window_minutes": config.base_window_minutes,
            "examples": {
                kind: [{**e, "amount": float(e["amount"])} for e in items] for kind, items in examples.items()
            },
        },
    )


@router.get(
    "/{version}",
    response_model=ResponseBase,
    summary="Get one tariff version"
)
async def get_tariff(
    version: int,
    db: Session = Depends(get_db)
) -> ResponseBase:
    row = db.scalars(select(TariffConfiguration).where(TariffConfiguration.version == version)).first()
    if row is None:
        raise HTTPException(status_code=404, detail=f"Tariff version {version} not found")
    return ResponseBase(success=True, data=_tariff_payload(row))


@router.post(
    "/quote",
    response_model=ResponseBase,
    summary="Price an interval without storing anything"
)
async def quote(
    quote_data: QuoteRequest,
    request: Request,
    db: Session = Depends(get_db)
) -> ResponseBase:
    config = tariff_by_version(db, quote_data.tariff_version) if quote_data.tariff_version else active_tariff(db)
    start = to_business_time(quote_data.start_time)
    if quote_data.end_time is not None:
        end = to_business_time(quote_data.end_time)
    else:
        end = start + timedelta(minutes=quote_data.duration_minutes or 0)
    breakdown = compute(start, end, config)
    logger.info(
        "Quote computed",
        elapsed_minutes=breakdown.elapsed_minutes,
        total_amount=float(breakdown.total_amount),
        tariff_version=config.version,
        request_id=request_id_of(request)
    )
    return ResponseBase(
        success=True,
        message="Quote computed",
        data=BreakdownRead.from_breakdown(breakdown).model_dump(mode="json"),
    )
