"""
Pydantic schemas for reconciliation runs.
"""
from datetime import date
from typing import Optional, Literal
from pydantic import BaseModel, Field, model_validator
from ..db.enums import RunMode


class ReconciliationTrigger(BaseModel):
    """
    Request body for ``POST /reconciliation/run``. Omitting both dates means all-time.
    """
    start_date: Optional[date] = Field(None, description="First business date (inclusive)")
    end_date: Optional[date] = Field(None, description="Last business date (inclusive)")
    mode: RunMode = Field(RunMode.DRY_RUN, description="dry_run previews, apply commits")
    tariff_version: Optional[int] = Field(None, ge=1, description="Defaults to the active version")
    run_async: bool = Field(False, description="Enqueue and return the run id instead of waiting")
    requested_by: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def _ordered_dates(self) -> "ReconciliationTrigger":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


SortKey = Literal["difference", "abs_difference", "session_id", "business_date", "new_amount", "old_amount"]

