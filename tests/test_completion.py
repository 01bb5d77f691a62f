from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.exceptions import InvalidInterval, SessionAlreadyCompleted
from app.models.db import DailyAggregate
from app.services.completion import complete_session, flat_adjustments

PICKUP = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)


def test_on_time_daytime_return_has_no_fees(reference_config):
    adj = flat_adjustments(
        PICKUP, PICKUP + timedelta(hours=1), reference_config, expected_end_time=PICKUP + timedelta(hours=2)
    )
    assert adj.total == 0
    assert adj.to_dict()["late_surcharge"] == 0


def test_late_surcharge_per_started_hour(reference_config):
    adj = flat_adjustments(
        PICKUP,
        PICKUP + timedelta(hours=3, minutes=30),
        reference_config,
        expected_end_time=PICKUP + timedelta(hours=2),
    )
    # 90 minutes overdue -> two started hours
    assert adj.late_surcharge == Decimal("40")
    assert adj.overnight_fine == 0


def test_overnight_fine_at_closing_time(reference_config):
    adj = flat_adjustments(PICKUP, PICKUP.replace(hour=22, minute=10), reference_config)
    assert adj.overnight_fine == Decimal("500")


def test_overnight_fine_for_next_day_return(reference_config):
    adj = flat_adjustments(PICKUP, PICKUP + timedelta(days=1), reference_config)
    assert adj.overnight_fine == Decimal("500")


def test_damage_and_discount(reference_config):
    adj = flat_adjustments(PICKUP, PICKUP + timedelta(hours=1), reference_config, damage_charge=100, discount=30)
    assert adj.total == Decimal("70")


def test_negative_damage_is_rejected(reference_config):
    with pytest.raises(ValueError):
        flat_adjustments(PICKUP, PICKUP + timedelta(hours=1), reference_config, damage_charge=-1)


def test_complete_session_stores_engine_amount_and_fees(db_session, session_factory, reference_config):
    session = session_factory(PICKUP)
    session.expected_end_time = PICKUP + timedelta(hours=1)
    db_session.commit()

    result = complete_session(
        db_session,
        session,
        PICKUP + timedelta(minutes=110),
        reference_config,
        clock=lambda: PICKUP + timedelta(hours=2),
    )

    assert result.breakdown.total_amount == Decimal("160")
    # 50 minutes overdue -> one started hour
    assert result.adjustments.late_surcharge == Decimal("20")
    assert result.amount_due == Decimal("180")

    db_session.expire_all()
    assert session.stored_amount == Decimal("160")
    assert session.adjustment_amount == Decimal("20")
    assert session.tariff_version == 1
    assert not session.is_active

    aggregate = db_session.query(DailyAggregate).filter_by(date=PICKUP.date()).one()
    assert aggregate.total_revenue == Decimal("160")
    assert aggregate.adjustment_total == Decimal("20")
    assert aggregate.session_count == 1
    assert aggregate.revision == 1


def test_completing_twice_is_rejected(db_session, session_factory, reference_config):
    session = session_factory(PICKUP, 40, stored_amount=80)
    with pytest.raises(SessionAlreadyCompleted):
        complete_session(db_session, session, PICKUP + timedelta(hours=1), reference_config)


def test_completion_before_pickup_is_rejected(db_session, session_factory, reference_config):
    session = session_factory(PICKUP)
    with pytest.raises(InvalidInterval):
        complete_session(db_session, session, PICKUP - timedelta(minutes=5), reference_config)
    db_session.expire_all()
    assert session.end_time is None
