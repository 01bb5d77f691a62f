from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import select

from app.models.db import DailyAggregate
from app.services.aggregates import list_aggregates, recompute_daily_aggregate, recompute_range, summarize_sessions

DAY = date(2025, 6, 2)


def at(hour: int, minute: int = 0, day: int = 2) -> datetime:
    return datetime(2025, 6, day, hour, minute, tzinfo=timezone.utc)


def test_summary_of_a_day():
    sessions = [
        SimpleNamespace(start_time=at(9), end_time=at(10), stored_amount=Decimal("80"), adjustment_amount=Decimal("20")),
        SimpleNamespace(start_time=at(12), end_time=at(14), stored_amount=Decimal("120"), adjustment_amount=Decimal("0")),
        SimpleNamespace(start_time=at(15), end_time=None, stored_amount=None, adjustment_amount=Decimal("0")),
    ]
    summary = summarize_sessions(sessions)
    assert summary.total_revenue == Decimal("200")
    assert summary.adjustment_total == Decimal("20")
    assert summary.session_count == 2
    assert summary.operating_hours == Decimal("5.00")
    assert summary.revenue_per_hour == Decimal("40.00")
    assert summary.average_session_value == Decimal("100.00")


def test_summary_of_an_empty_day():
    summary = summarize_sessions([])
    assert summary.total_revenue == 0
    assert summary.revenue_per_hour == 0
    assert summary.average_session_value == 0


def test_recompute_bumps_revision(db_session, session_factory):
    session_factory(at(9), 40, stored_amount=80)
    first = recompute_daily_aggregate(db_session, DAY, clock=lambda: at(23))
    assert first.revision == 1
    assert first.total_revenue == Decimal("80")

    session_factory(at(11), 110, stored_amount=160)
    second = recompute_daily_aggregate(db_session, DAY, clock=lambda: at(23, 30))
    assert second.id == first.id
    assert second.revision == 2
    assert second.total_revenue == Decimal("240")
    assert second.session_count == 2


def test_recompute_range_covers_days_without_sessions(db_session, session_factory):
    session_factory(at(9, day=1), 40, stored_amount=80)
    stale = DailyAggregate(date=date(2025, 6, 3), total_revenue=Decimal("999"), session_count=9, revision=4)
    db_session.add(stale)
    db_session.commit()

    rows = recompute_range(db_session, date(2025, 6, 1), date(2025, 6, 5))

    assert [r.date for r in rows] == [date(2025, 6, 1), date(2025, 6, 3)]
    db_session.expire_all()
    stale = db_session.scalars(select(DailyAggregate).where(DailyAggregate.date == date(2025, 6, 3))).one()
    assert stale.total_revenue == 0
    assert stale.session_count == 0
    assert stale.revision == 5


def test_list_aggregates_by_range(db_session, session_factory):
    for day in (1, 2, 3):
        session_factory(at(9, day=day), 40, stored_amount=80)
        recompute_daily_aggregate(db_session, date(2025, 6, day))
    assert [a.date for a in list_aggregates(db_session, date(2025, 6, 2))] == [date(2025, 6, 2), date(2025, 6, 3)]
    assert [a.date for a in list_aggregates(db_session, end=date(2025, 6, 1))] == [date(2025, 6, 1)]
    assert len(list_aggregates(db_session)) == 3


def test_active_sessions_do_not_count(db_session, session_factory):
    session_factory(at(9), 40, stored_amount=80)
    session_factory(at(10))
    aggregate = recompute_daily_aggregate(db_session, DAY)
    assert aggregate.session_count == 1
    assert aggregate.operating_hours == Decimal("0.67")
    assert aggregate.recomputed_at is not None
