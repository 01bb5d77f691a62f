"""
Pydantic schemas for daily revenue aggregates.
"""
import datetime as dt
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator
from .base import Money


class DailyAggregateRead(BaseModel):
    date: dt.date
    total_revenue: Money
    adjustment_total: Money
    session_count: int
    operating_hours: Money
    revenue_per_hour: Money
    average_session_value: Money
    revision: int
    recomputed_at: Optional[dt.datetime]
    last_run_id: Optional[int]

    model_config = ConfigDict(from_attributes=True)


class AggregateRecompute(BaseModel):
    start_date: dt.date
    end_date: dt.date = Field(description="Inclusive; at most 366 days after start_date")

    @model_validator(mode="after")
    def _ordered_dates(self) -> "AggregateRecompute":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self
