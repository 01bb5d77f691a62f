"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import tariffs, sessions, reconciliation, aggregates

api_router = APIRouter()

api_router.include_router(
    tariffs.router,
    prefix="/tariffs",
    tags=["tariffs"]
)

api_router.include_router(
    sessions.router,
    prefix="/sessions",
    tags=["sessions"]
)

api_router.include_router(
    reconciliation.router,
    prefix="/reconciliation",
    tags=["reconciliation"]
)

api_router.include_router(
    aggregates.router,
    prefix="/aggregates",
    tags=["aggregates"]
)
