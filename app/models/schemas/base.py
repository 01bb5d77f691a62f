"""
Base schemas used across the application.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Optional, Any, Dict
from pydantic import BaseModel, Field, ConfigDict, PlainSerializer

# Amounts are Decimal internally and plain JSON numbers on the wire.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ResponseBase(BaseModel):
    """Envelope for every API response with an optional free-form ``data`` payload."""
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ErrorResponse(BaseModel):
    """Body rendered for billing errors."""
    success: bool = False
    message: str
    code: str
    details: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
