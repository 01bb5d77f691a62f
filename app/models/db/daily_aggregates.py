from __future__ import annotations
"""SQLAlchemy model for per-day revenue summaries.

Always derived by resumming that day's completed sessions; ``revision`` is
bumped on every recomputation and used as an optimistic concurrency token.
"""
import datetime as dt
from decimal import Decimal
from sqlalchemy import Integer, Date, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class DailyAggregate(Base):
    __tablename__ = "daily_aggregates"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    date: Mapped[dt.date] = mapped_column(Date, unique=True, nullable=False, index=True)

    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    adjustment_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    session_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    operating_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=0)
    revenue_per_hour: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    average_session_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recomputed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("reconciliation_runs.id"), nullable=True)
