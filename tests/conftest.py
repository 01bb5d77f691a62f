import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Wall-clock rules in tests are written against UTC; Redis stays off unless a test patches it in.
os.environ["BUSINESS_TIMEZONE"] = "UTC"
os.environ["RECONCILIATION_LOCK_USE_REDIS"] = "false"

# Ensure project root on sys.path so 'app' package resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.main import app  # type: ignore
from app.database import Base  # type: ignore
from app.api import deps  # type: ignore
"""Pytest fixtures and factories.

All model modules are imported through app.models.db before
Base.metadata.create_all() so every table exists in the test database.
"""
from app.models.db import RentalSession, TariffConfiguration  # noqa: F401
from app.jobs.queue import PriorityDelayQueue
from app.jobs.worker_reconciliation import ReconciliationWorker
from app.services.scope_lock import ScopeLockManager
from app.services.tariff_calculator import TariffConfig
from app.services.tariffs import create_tariff_version

# Use file-based SQLite for thread-safe multi-connection access (worker thread + test thread)
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_billing.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Modules that imported SessionLocal at import time are rebound to the test
# database so the background worker and health checks see the same rows.
import app.database as _app_database  # noqa: E402
_app_database.SessionLocal = TestingSessionLocal  # type: ignore
import app.jobs.worker_reconciliation as _worker_mod  # noqa: E402
_worker_mod.SessionLocal = TestingSessionLocal  # type: ignore
import app.main as _main_mod  # noqa: E402
_main_mod.SessionLocal = TestingSessionLocal  # type: ignore

# The reference tariff used by the worked examples (night multiplier 1.5).
REFERENCE_TARIFF = {
    "base_rate": 80,
    "grace_minutes": 15,
    "block_minutes": 30,
    "block_rate": 40,
    "night_start_hour": 22,
    "night_multiplier": 1.5,
    "late_surcharge": 20,
    "overnight_fine": 500,
    "closing_hour": 22,
}

@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_billing.db")
    except OSError:
        pass

@pytest.fixture(scope="session", autouse=True)
def reconciliation_queue(create_test_db):  # depend on DB creation
    """Provide a queue and worker on app.state for endpoints during tests.

    The production app sets these up in lifespan. Tests bypass lifespan so we replicate here.
    """
    queue = PriorityDelayQueue()
    app.state.reconciliation_queue = queue  # type: ignore[attr-defined]
    worker = ReconciliationWorker(queue, poll_timeout=0.5)
    app.state.reconciliation_worker = worker  # type: ignore[attr-defined]
    worker.start()
    yield queue
    worker.stop()
    queue.shutdown()

@pytest.fixture(autouse=True)
def _isolate_test_state(reconciliation_queue):
    """Per-test isolation: empty tables, empty queue, fresh scope locks.

    Tables are cleared with Core DELETE statements, which bypass the ORM
    listeners that protect completed audit rows.
    """
    def _truncate():
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())

    reconciliation_queue.purge()
    _truncate()
    app.state.scope_lock_manager = ScopeLockManager()  # type: ignore[attr-defined]
    yield
    reconciliation_queue.purge()
    app.dependency_overrides.pop(deps.get_clock, None)
    _truncate()

@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db

@pytest.fixture()
def client():
    return TestClient(app)

@pytest.fixture()
def fixed_clock():
    """Pin the API's notion of "now"; returns a setter."""
    def _set(now: datetime):
        app.dependency_overrides[deps.get_clock] = lambda: (lambda: now)
        return now
    return _set

# ---------- Data factory helpers ----------

@pytest.fixture()
def reference_config() -> TariffConfig:
    return TariffConfig.from_mapping(REFERENCE_TARIFF, version=1)

@pytest.fixture()
def tariff_factory(db_session):
    def _create(**overrides) -> TariffConfig:
        values = {**REFERENCE_TARIFF, **overrides}
        row = create_tariff_version(db_session, values, created_by="tests")
        return row.to_value()
    return _create

@pytest.fixture()
def session_factory(db_session):
    """Insert a rental session directly (bypassing the ingestion checks)."""
    def _create(
        start: datetime,
        minutes: int | None = None,
        *,
        stored_amount=None,
        end: datetime | None = None,
        booking_ref: str | None = None,
        adjustment_amount=0,
    ) -> RentalSession:
        if end is None and minutes is not None:
            end = start + timedelta(minutes=minutes)
        row = RentalSession(
            booking_ref=booking_ref,
            start_time=start,
            end_time=end,
            business_date=start.date(),
            stored_amount=Decimal(str(stored_amount)) if stored_amount is not None else None,
            adjustment_amount=Decimal(str(adjustment_amount)),
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row
    return _create
