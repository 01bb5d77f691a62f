"""Session completion workflow.

Closing a session fixes its engine amount (``stored_amount``) from the tariff
calculator and records the flat fees layered on top of it in
``adjustment_amount``. The two are kept apart so a later reconciliation can
revise the engine amount without disturbing late fees, fines or discounts.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.exceptions import SessionAlreadyCompleted
from app.models.db.daily_aggregates import DailyAggregate
from app.models.db.rental_sessions import RentalSession
from app.services.aggregates import recompute_daily_aggregate
from app.services.tariff_calculator import AmountBreakdown, TariffConfig, compute
from app.utils import log_business_event
from app.utils.metrics import to_money
from app.utils.time import ensure_utc, to_business_time, utc_now


@dataclass(frozen=True)
class Adjustments:
    late_surcharge: Decimal = Decimal("0")
    overnight_fine: Decimal = Decimal("0")
    damage_charge: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.late_surcharge + self.overnight_fine + self.damage_charge - self.discount

    def to_dict(self) -> dict[str, Any]:
        return {
            "late_surcharge": self.late_surcharge,
            "overnight_fine": self.overnight_fine,
            "damage_charge": self.damage_charge,
            "discount": self.discount,
            "total": self.total,
        }


def flat_adjustments(
    start_time: datetime,
    end_time: datetime,
    config: TariffConfig,
    *,
    expected_end_time: Optional[datetime] = None,
    damage_charge: Decimal | float | int = 0,
    discount: Decimal | float | int = 0,
) -> Adjustments:
    """Flat fees owed on return, evaluated in business time.

    * late surcharge per started hour past ``expected_end_time``
    * overnight fine when returned at/after closing time or on a later day
    """
    damage = to_money(damage_charge)
    discount_value = to_money(discount)
    if damage < 0 or discount_value < 0:
        raise ValueError("damage_charge and discount must not be negative")

    pickup = to_business_time(start_time)
    returned = to_business_time(end_time)

    late = Decimal("0")
    if expected_end_time is not None:
        overdue = (returned - to_business_time(expected_end_time)).total_seconds()
        if overdue > 0:
            late = config.late_surcharge * math.ceil(overdue / 3600)

    overnight = Decimal("0")
    if returned.date() > pickup.date() or returned.hour >= config.closing_hour:
        overnight = config.overnight_fine

    return Adjustments(late_surcharge=late, overnight_fine=overnight, damage_charge=damage, discount=discount_value)


@dataclass(frozen=True)
class CompletionResult:
    session: RentalSession
    breakdown: AmountBreakdown
    adjustments: Adjustments
    aggregate: DailyAggregate

    @property
    def amount_due(self) -> Decimal:
        return self.breakdown.total_amount + self.adjustments.total


def complete_session(
    db: Session,
    session: RentalSession,
    end_time: datetime,
    config: TariffConfig,
    *,
    damage_charge: Decimal | float | int = 0,
    discount: Decimal | float | int = 0,
    clock: Callable[[], datetime] = utc_now,
    request_id: Optional[str] = None,
) -> CompletionResult:
    """Close ``session`` at ``end_time`` and refresh its day's aggregate.

    Raises:
        SessionAlreadyCompleted: the session already has an end time
        InvalidInterval: ``end_time`` lies before the session start
    """
    if session.end_time is not None:
        raise SessionAlreadyCompleted(
            f"Session {session.id} is already completed", details={"session_id": session.id}
        )

    end = ensure_utc(end_time)
    breakdown = compute(to_business_time(session.start_time), to_business_time(end), config)
    adjustments = flat_adjustments(
        session.start_time,
        end,
        config,
        expected_end_time=session.expected_end_time,
        damage_charge=damage_charge,
        discount=discount,
    )

    session.end_time = end
    session.stored_amount = breakdown.total_amount
    session.adjustment_amount = adjustments.total
    session.tariff_version = config.version
    db.commit()
    db.refresh(session)

    aggregate = recompute_daily_aggregate(db, session.business_date, clock=clock)

    log_business_event(
        "session_completed",
        {
            "session_id": session.id,
            "elapsed_minutes": breakdown.elapsed_minutes,
            "stored_amount": float(breakdown.total_amount),
            "adjustment_amount": float(adjustments.total),
            "tariff_version": config.version,
            "business_date": session.business_date.isoformat(),
        },
        request_id=request_id,
    )
    return CompletionResult(session=session, breakdown=breakdown, adjustments=adjustments, aggregate=aggregate)


__all__ = ["Adjustments", "CompletionResult", "flat_adjustments", "complete_session"]
