"""Versioned tariff configurations.

Rows are insert-only. Creating a tariff validates it through ``TariffConfig``
and stores it under the next version number; the active tariff is always the
highest version.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import DEFAULT_TARIFF
from app.exceptions import InvalidTariffConfiguration, MissingConfiguration
from app.models.db.tariffs import TariffConfiguration
from app.services.tariff_calculator import TariffConfig
from app.utils import get_logger, log_business_event

logger = get_logger(__name__)


def latest_tariff(db: Session) -> Optional[TariffConfiguration]:
    return db.scalars(select(TariffConfiguration).order_by(TariffConfiguration.version.desc()).limit(1)).first()


def active_tariff(db: Session) -> TariffConfig:
    """The configuration new computations use.

    Raises:
        MissingConfiguration: no tariff version exists yet
    """
    row = latest_tariff(db)
    if row is None:
        raise MissingConfiguration("No tariff configuration has been created yet")
    return row.to_value()


def tariff_by_version(db: Session, version: int) -> TariffConfig:
    row = db.scalars(select(TariffConfiguration).where(TariffConfiguration.version == version)).first()
    if row is None:
        raise MissingConfiguration(f"Tariff version {version} does not exist", details={"version": version})
    return row.to_value()


def create_tariff_version(
    db: Session,
    values: Mapping[str, Any],
    *,
    notes: Optional[str] = None,
    created_by: Optional[str] = None,
    request_id: Optional[str] = None,
) -> TariffConfiguration:
    """Validate ``values`` and insert them as the next version.

    Raises:
        InvalidTariffConfiguration: values out of bounds or incomplete
    """
    config = TariffConfig.from_mapping(values)
    next_version = int(db.scalar(select(func.coalesce(func.max(TariffConfiguration.version), 0))) or 0) + 1
    row = TariffConfiguration(
        version=next_version,
        base_rate=config.base_rate,
        grace_minutes=config.grace_minutes,
        block_minutes=config.block_minutes,
        block_rate=config.block_rate,
        night_start_hour=config.night_start_hour,
        night_multiplier=config.night_multiplier,
        late_surcharge=config.late_surcharge,
        overnight_fine=config.overnight_fine,
        closing_hour=config.closing_hour,
        notes=notes,
        created_by=created_by,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise InvalidTariffConfiguration(
            "Another tariff version was created concurrently; retry", details={"version": next_version}
        ) from e
    db.refresh(row)
    log_business_event(
        "tariff_version_created",
        {"version": row.version, "created_by": created_by, **{k: str(v) for k, v in config.to_dict().items() if k != "version"}},
        request_id=request_id,
    )
    return row


def seed_default_tariff(db: Session) -> Optional[TariffConfiguration]:
    """Insert DEFAULT_TARIFF as version 1 when no tariff exists."""
    if latest_tariff(db) is not None:
        return None
    row = create_tariff_version(db, DEFAULT_TARIFF, notes="default tariff", created_by="system")
    logger.info("Seeded default tariff", version=row.version)
    return row


__all__ = [
    "latest_tariff",
    "active_tariff",
    "tariff_by_version",
    "create_tariff_version",
    "seed_default_tariff",
]
