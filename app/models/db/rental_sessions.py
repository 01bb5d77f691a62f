from __future__ import annotations
"""SQLAlchemy model for rental sessions (pickup -> return).

Sessions are created and completed by the booking workflow. Reconciliation may
revise only ``stored_amount`` and the ``tariff_version`` / ``last_reconciled_*``
audit columns. ``adjustment_amount`` holds the flat fees layered on top of the
engine's amount and is never touched by reconciliation.

The ingestion API rejects end_time < start_time; rows imported from older
systems are not trusted and reconciliation reports them as InvalidInterval.
"""
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy import Integer, String, DateTime, Date, Numeric, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base


class RentalSession(Base):
    __tablename__ = "rental_sessions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    booking_ref: Mapped[str | None] = mapped_column(String, unique=True, nullable=True, index=True)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    expected_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Calendar date of start_time in the business timezone; drives daily aggregates.
    business_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    stored_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    adjustment_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    tariff_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_reconciled_run_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("reconciliation_runs.id"), nullable=True)
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_active(self) -> bool:
        return self.end_time is None
