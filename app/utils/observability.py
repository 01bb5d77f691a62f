"""Observability helpers (correlation IDs for requests and queued runs)."""
from __future__ import annotations
import uuid
from typing import Any, Mapping

REQUEST_ID_HEADER = "X-Request-ID"

def ensure_request_id(headers: Mapping[str, str]) -> str:
    return headers.get(REQUEST_ID_HEADER, None) or str(uuid.uuid4())

def request_id_of(request: Any) -> str:
    """Request id set by the logging middleware, falling back to the header."""
    state = getattr(request, "state", None)
    return getattr(state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER, "unknown")

__all__ = ["ensure_request_id", "request_id_of", "REQUEST_ID_HEADER"]
