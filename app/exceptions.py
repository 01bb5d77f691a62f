"""Billing error taxonomy.

Every engine failure is a ``BillingError`` carrying a stable ``code`` and the
HTTP status the API layer renders it with. Per-record failures inside a
reconciliation run are caught by the engine and stored on the run instead of
propagating.
"""
from __future__ import annotations

from typing import Any


class BillingError(Exception):
    code = "billing_error"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidInterval(BillingError):
    """End time lies before start time. A data problem, never retried."""

    code = "invalid_interval"
    status_code = 422


class InvalidTariffConfiguration(BillingError):
    code = "invalid_tariff_configuration"
    status_code = 422


class MissingConfiguration(BillingError):
    """No tariff configuration was supplied or none exists yet."""

    code = "missing_configuration"
    status_code = 412


class SessionNotFound(BillingError):
    code = "session_not_found"
    status_code = 404


class SessionAlreadyCompleted(BillingError):
    code = "session_already_completed"
    status_code = 409


class SessionReadFailure(BillingError):
    """A stored session row could not be turned into a billable interval."""

    code = "session_read_failure"
    status_code = 500


class SessionWriteConflict(BillingError):
    """The stored amount changed underneath a reconciliation write."""

    code = "session_write_conflict"
    status_code = 409


class AggregateWriteConflict(BillingError):
    code = "aggregate_write_conflict"
    status_code = 409


class RunTimeout(BillingError):
    code = "run_timeout"
    status_code = 504


class ScopeLocked(BillingError):
    """Another apply run holds a lock overlapping the requested scope."""

    code = "scope_locked"
    status_code = 409


class RunNotFound(BillingError):
    code = "run_not_found"
    status_code = 404


class AuditRecordImmutable(BillingError):
    """Completed reconciliation runs and their diff rows are append-only."""

    code = "audit_record_immutable"
    status_code = 409


__all__ = [
    "BillingError",
    "InvalidInterval",
    "InvalidTariffConfiguration",
    "MissingConfiguration",
    "SessionNotFound",
    "SessionAlreadyCompleted",
    "SessionReadFailure",
    "SessionWriteConflict",
    "AggregateWriteConflict",
    "RunTimeout",
    "ScopeLocked",
    "RunNotFound",
    "AuditRecordImmutable",
]
