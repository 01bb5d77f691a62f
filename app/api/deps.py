"""
Dependencies for database sessions, tariff lookup, the clock and pagination.
"""
from datetime import datetime
from typing import Callable, Generator
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from app.database import SessionLocal
from app.services.scope_lock import ScopeLockManager, get_lock_manager
from app.services.tariff_calculator import TariffConfig
from app.services.tariffs import active_tariff
from app.utils import get_logger
from app.utils.time import utc_now

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def get_clock() -> Callable[[], datetime]:
    """Source of "now" for estimates and completions; overridden in tests."""
    return utc_now


def get_active_tariff(db: Session = Depends(get_db)) -> TariffConfig:
    """
    The highest tariff version.

    Raises:
        MissingConfiguration: no tariff exists yet (rendered as 412)
    """
    return active_tariff(db)


def get_scope_lock_manager(request: Request) -> ScopeLockManager:
    manager = getattr(request.app.state, "scope_lock_manager", None)
    return manager or get_lock_manager()


def get_pagination_params(
    limit: int = 50,
    offset: int = 0
) -> dict:
    """
    Validate and return pagination parameters.

    Args:
        limit: Maximum number of items to return (1-500)
        offset: Number of items to skip (>= 0)

    Raises:
        HTTPException: If parameters are invalid
    """
    if limit < 1 or limit > 500:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Limit must be between 1 and 500"
        )

    if offset < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Offset must be >= 0"
        )

    return {"limit": limit, "offset": offset}
