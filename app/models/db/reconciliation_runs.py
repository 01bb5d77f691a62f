from __future__ import annotations
"""SQLAlchemy models for reconciliation runs and their per-session diff rows.

Both are audit history: a run row may move through CREATED -> COMPUTING ->
COMPLETED|FAILED, but once terminal neither the run nor its diff rows can be
updated or deleted through the ORM.
"""
import datetime as dt
from decimal import Decimal

from sqlalchemy import Integer, String, Text, Date, DateTime, Numeric, Boolean, Enum, ForeignKey, JSON, event, select
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.attributes import get_history
from app.database import Base
from app.exceptions import AuditRecordImmutable
from .enums import RunMode, RunStatus, DiffOutcome, TERMINAL_RUN_STATUSES



class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    mode: Mapped[RunMode] = mapped_column(Enum(RunMode), nullable=False, index=True)
    status: Mapped[RunStatus] = mapped_column(Enum(RunStatus), nullable=False, default=RunStatus.CREATED, index=True)

    # Inclusive business-date range; both NULL means all-time.
    scope_start: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    scope_end: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    tariff_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    old_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    new_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    difference: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    percent_change: Mapped[Decimal] = mapped_column(Numeric(9, 2), nullable=False, default=0)
    largest_increase: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    largest_decrease: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    touched_dates: Mapped[list | None] = mapped_column(JSON, nullable=True)
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)

    candidate_count: Mapped[int] = mapped_column(Integer, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, default=0)
    changed_count: Mapped[int] = mapped_column(Integer, default=0)
    unchanged_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    aggregates_recomputed: Mapped[int] = mapped_column(Integer, default=0)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_by: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    records: Mapped[list["DiffRecord"]] = relationship(
        "DiffRecord", back_populates="run", order_by="DiffRecord.session_id"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def scope_label(self) -> str:
        if self.scope_start is None and self.scope_end is None:
            return "all-time"
        start = self.scope_start.isoformat() if self.scope_start else "*"
        end = self.scope_end.isoformat() if self.scope_end else "*"
        return f"{start}..{end}"


class DiffRecord(Base):
    __tablename__ = "reconciliation_diff_records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("reconciliation_runs.id"), nullable=False, index=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("rental_sessions.id"), nullable=False, index=True)
    business_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)

    old_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    new_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    difference: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    duration_label: Mapped[str] = mapped_column(String, nullable=False)
    elapsed_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[DiffOutcome] = mapped_column(Enum(DiffOutcome), nullable=False, index=True)
    breakdown: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    run: Mapped[ReconciliationRun] = relationship("ReconciliationRun", back_populates="records")

    def summary(self) -> dict:
        return {
            "session_id": self.session_id,
            "business_date": self.business_date.isoformat(),
            "old_amount": float(self.old_amount) if self.old_amount is not None else None,
            "new_amount": float(self.new_amount),
            "difference": float(self.difference),
            "duration_label": self.duration_label,
        }


def _previous_status(connection, target: ReconciliationRun) -> RunStatus | None:
    history = get_history(target, "status")
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    # attribute was expired when it was set; read the committed value
    table = ReconciliationRun.__table__
    return connection.execute(select(table.c.status).where(table.c.id == target.id)).scalar()


@event.listens_for(ReconciliationRun, "before_update")
def _forbid_terminal_run_update(mapper, connection, target):  # noqa: ARG001
    if _previous_status(connection, target) in TERMINAL_RUN_STATUSES:
        raise AuditRecordImmutable("Completed reconciliation runs cannot be modified", details={"run_id": target.id})


@event.listens_for(ReconciliationRun, "before_delete")
def _forbid_terminal_run_delete(mapper, connection, target):  # noqa: ARG001
    if _previous_status(connection, target) in TERMINAL_RUN_STATUSES:
        raise AuditRecordImmutable("Completed reconciliation runs cannot be deleted", details={"run_id": target.id})


@event.listens_for(DiffRecord, "before_update")
def _forbid_diff_update(mapper, connection, target):  # noqa: ARG001
    raise AuditRecordImmutable("Diff records are append-only", details={"run_id": target.run_id})


@event.listens_for(DiffRecord, "before_delete")
def _forbid_diff_delete(mapper, connection, target):  # noqa: ARG001
    raise AuditRecordImmutable("Diff records are append-only", details={"run_id": target.run_id})
