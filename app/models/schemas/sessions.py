"""
Pydantic schemas for rental sessions.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict
from .base import Money


class SessionCreate(BaseModel):
    booking_ref: Optional[str] = Field(None, max_length=100)
    start_time: datetime
    expected_end_time: Optional[datetime] = None
    # Importing historical sessions: both may be given at once
    end_time: Optional[datetime] = None
    stored_amount: Optional[Decimal] = Field(None, ge=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "booking_ref": "BK-1042",
            "start_time": "2025-06-01T09:00:00Z",
            "expected_end_time": "2025-06-01T11:00:00Z",
        }
    })


class SessionRead(BaseModel):
    id: int
    booking_ref: Optional[str]
    start_time: datetime
    end_time: Optional[datetime]
    expected_end_time: Optional[datetime]
    business_date: date
    stored_amount: Optional[Money]
    adjustment_amount: Money
    tariff_version: Optional[int]
    last_reconciled_run_id: Optional[int]
    last_reconciled_at: Optional[datetime]
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class SessionComplete(BaseModel):
    end_time: Optional[datetime] = Field(None, description="Defaults to now")
    damage_charge: Decimal = Field(Decimal("0"), ge=0)
    discount: Decimal = Field(Decimal("0"), ge=0)
