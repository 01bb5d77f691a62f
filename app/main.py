"""
Service entrypoint for rental billing and revenue reconciliation.

Wires the v1 router, the request-context middleware, the error envelopes
and the background reconciliation worker started in the lifespan hook.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Any
import time
import os
from contextlib import asynccontextmanager
from app.api.v1 import api_router
from app.utils import setup_logging, get_logger
from app.utils.observability import REQUEST_ID_HEADER, ensure_request_id
from app.jobs.worker_reconciliation import ReconciliationWorker, create_queue
from app.database import engine, Base, SessionLocal
from app.config import BUSINESS_TIMEZONE, LOCK_SETTINGS, SEED_DEFAULT_TARIFF
from app.exceptions import BillingError
from app.services.scope_lock import RedisScopeLockManager, get_lock_manager
from app.services.tariffs import latest_tariff, seed_default_tariff
import app.models.db as _models  # noqa: F401  (register tables on Base.metadata)

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/billing.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "rental-billing-engine"
SERVICE_VERSION = "1.0.0"

_worker: ReconciliationWorker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, seed the first tariff, start the reconciliation worker."""
    global _worker
    logger.info("Billing service starting", business_timezone=BUSINESS_TIMEZONE)
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database schema ready")

        if SEED_DEFAULT_TARIFF:
            db = SessionLocal()
            try:
                seed_default_tariff(db)
            finally:
                db.close()

        lock_manager = get_lock_manager()
        app.state.scope_lock_manager = lock_manager  # type: ignore[attr-defined]

        queue = create_queue()
        # endpoints enqueue through app state so they never import this module
        app.state.reconciliation_queue = queue  # type: ignore[attr-defined]
        _worker = ReconciliationWorker(queue, lock_manager=lock_manager)
        app.state.reconciliation_worker = _worker  # type: ignore[attr-defined]
        _worker.start()
        logger.info("Billing service ready", lock_backend=lock_manager.snapshot()["backend"])
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Billing service failed to start", error=str(e), exc_info=True)
        raise
    finally:
        if _worker:
            _worker.stop()
            _worker.queue.shutdown()
        logger.info("Billing service stopped")


app = FastAPI(
    title="Rental Billing & Revenue Reconciliation",
    description="""
    Graduated-tariff billing for rental sessions and safe recomputation of
    historical amounts when the tariff changes.

    ## Features
    * **Tariff calculator** - base window, per-block charges, night multiplier
    * **Live estimates** - running amounts of active sessions
    * **Reconciliation** - dry-run previews and apply runs with immutable audit reports
    * **Daily aggregates** - always re-derived from stored session amounts
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Attach a request id, time the call and log both ends of it."""
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    started = time.time()

    logger.debug(
        "HTTP request received",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    elapsed_ms = round((time.time() - started) * 1000, 2)
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)
    response.headers["X-Content-Type-Options"] = "nosniff"

    logger.info(
        "HTTP request served",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time_ms=elapsed_ms,
        request_id=request_id
    )
    return response


def _error_response(request: Request, status_code: int, message: Any, **extra: Any) -> JSONResponse:
    """Common error envelope: success flag, message, request id and any extra fields."""
    body = {"success": False, "message": message, **extra}
    body["request_id"] = getattr(request.state, "request_id", "unknown")
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    logger.warning(
        "Billing error",
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
        path=request.url.path,
        request_id=getattr(request.state, "request_id", "unknown")
    )
    return _error_response(request, exc.status_code, exc.message, code=exc.code, details=exc.details)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning(
        "Request body rejected",
        errors=len(exc.errors()),
        path=request.url.path,
        request_id=getattr(request.state, "request_id", "unknown")
    )
    return _error_response(request, 422, "Request validation failed", details=exc.errors())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "HTTP error",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        request_id=getattr(request.state, "request_id", "unknown")
    )
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        request_id=getattr(request.state, "request_id", "unknown"),
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


@app.get("/health", tags=["health"], summary="Liveness probe")
async def health_check():
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "queue_backend": "memory",
        "lock_backend": "redis" if LOCK_SETTINGS.get("use_redis", False) else "memory",
    }


def _check_database() -> tuple[dict[str, Any], bool]:
    db = SessionLocal()
    try:
        tariff = latest_tariff(db)
    except Exception as e:
        logger.error("Health check database query failed", error=str(e))
        return {"database": f"unhealthy: {str(e)}"}, False
    finally:
        db.close()
    if tariff is None:
        return {"database": "healthy", "tariff": "missing"}, False
    return {"database": "healthy", "tariff": {"active_version": tariff.version}}, True


def _check_locks() -> tuple[dict[str, Any], bool]:
    manager = getattr(app.state, "scope_lock_manager", None) or get_lock_manager()
    checks: dict[str, Any] = {}
    healthy = True
    if isinstance(manager, RedisScopeLockManager):
        healthy = manager.health_check()
        checks["redis"] = "healthy" if healthy else "unavailable"
    checks["locks"] = manager.snapshot()
    return checks, healthy


@app.get("/health/detailed", tags=["health"], summary="Readiness with component status")
def detailed_health_check():
    """Database and tariff presence, lock backend, queue and worker state."""
    database, database_ok = _check_database()
    locks, locks_ok = _check_locks()
    checks = {**database, **locks}

    queue = getattr(app.state, "reconciliation_queue", None)  # type: ignore[attr-defined]
    if queue is not None:
        checks["queue"] = queue.snapshot()
    worker = getattr(app.state, "reconciliation_worker", None)  # type: ignore[attr-defined]
    if worker is not None:
        checks["worker"] = worker.snapshot()

    return {
        "status": "healthy" if database_ok and locks_ok else "degraded",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": checks,
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "endpoints": ["/api/v1/tariffs", "/api/v1/sessions", "/api/v1/reconciliation", "/api/v1/aggregates"],
    }


app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=True, reload_dirs=["app"])
