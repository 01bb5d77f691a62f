from __future__ import annotations
"""SQLAlchemy model for versioned tariff configurations (insert-only)."""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Integer, Numeric, DateTime, String, event
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base
from app.exceptions import AuditRecordImmutable
from app.services.tariff_calculator import TariffConfig


class TariffConfiguration(Base):
    __tablename__ = "tariff_configurations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    version: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)

    base_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    grace_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    block_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    block_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    night_start_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    night_multiplier: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False)
    late_surcharge: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    overnight_fine: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    closing_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=22)

    notes: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def to_value(self) -> TariffConfig:
        return TariffConfig(
            base_rate=self.base_rate,
            grace_minutes=self.grace_minutes,
            block_minutes=self.block_minutes,
            block_rate=self.block_rate,
            night_start_hour=self.night_start_hour,
            night_multiplier=self.night_multiplier,
            late_surcharge=self.late_surcharge,
            overnight_fine=self.overnight_fine,
            closing_hour=self.closing_hour,
            version=self.version,
        )


@event.listens_for(TariffConfiguration, "before_update")
def _forbid_tariff_update(mapper, connection, target):  # noqa: ARG001
    raise AuditRecordImmutable(
        "Tariff configurations are immutable; create a new version instead",
        details={"version": target.version},
    )
