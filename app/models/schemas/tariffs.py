"""
Pydantic schemas for tariff configuration versions and price quotes.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator
from .base import Money


class TariffCreate(BaseModel):
    base_rate: Decimal = Field(gt=0, description="Charge for the base window (first hour + grace)")
    grace_minutes: int = Field(ge=0, le=60)
    block_minutes: int = Field(ge=1, le=120)
    block_rate: Decimal = Field(ge=0, description="Charge per started block after the base window")
    night_start_hour: int = Field(ge=0, le=23)
    night_multiplier: Decimal = Field(ge=1, le=5)
    late_surcharge: Decimal = Field(Decimal("0"), ge=0, description="Per started hour past the expected return")
    overnight_fine: Decimal = Field(Decimal("0"), ge=0)
    closing_hour: int = Field(22, ge=0, le=23)
    notes: Optional[str] = Field(None, max_length=500)
    created_by: Optional[str] = Field(None, max_length=100)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "base_rate": 80,
            "grace_minutes": 15,
            "block_minutes": 30,
            "block_rate": 40,
            "night_start_hour": 22,
            "night_multiplier": 1.5,
            "late_surcharge": 20,
            "overnight_fine": 500,
            "closing_hour": 22,
            "notes": "summer tariff",
        }
    })


class TariffRead(BaseModel):
    id: int
    version: int
    base_rate: Money
    grace_minutes: int
    block_minutes: int
    block_rate: Money
    night_start_hour: int
    night_multiplier: Money
    late_surcharge: Money
    overnight_fine: Money
    closing_hour: int
    notes: Optional[str]
    created_by: Optional[str]
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class QuoteRequest(BaseModel):
    """Price an interval (or a start plus duration) without persisting anything."""
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, ge=0)
    tariff_version: Optional[int] = Field(None, ge=1, description="Defaults to the active version")

    @model_validator(mode="after")
    def _one_of_end_or_duration(self) -> "QuoteRequest":
        if (self.end_time is None) == (self.duration_minutes is None):
            raise ValueError("Provide exactly one of end_time or duration_minutes")
        return self


class SegmentRead(BaseModel):
    kind: str
    index: int
    start: datetime
    end: datetime
    minutes: int
    rate: Money
    night_minutes: Money
    night_adjustment: Money


class BreakdownRead(BaseModel):
    """Full derivation of an amount: base, blocks, night adjustment and segments."""
    base_amount: Money
    blocks: int
    block_amount: Money
    night_adjustment: Money
    total_amount: Money
    elapsed_minutes: int
    tariff_version: Optional[int]
    segments: List[SegmentRead] = Field(default_factory=list)

    @classmethod
    def from_breakdown(cls, breakdown: Any) -> "BreakdownRead":
        return cls.model_validate(breakdown.to_dict())
