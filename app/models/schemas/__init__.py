from .base import ResponseBase, ErrorResponse, Money
from .tariffs import TariffCreate, TariffRead, QuoteRequest, SegmentRead, BreakdownRead
from .sessions import SessionCreate, SessionRead, SessionComplete
from .reconciliation import ReconciliationTrigger, SortKey
from .aggregates import DailyAggregateRead, AggregateRecompute

__all__ = [
    # Base
    "ResponseBase",
    "ErrorResponse",
    "Money",

    # Tariffs
    "TariffCreate",
    "TariffRead",
    "QuoteRequest",
    "SegmentRead",
    "BreakdownRead",

    # Sessions
    "SessionCreate",
    "SessionRead",
    "SessionComplete",

    # Reconciliation
    "ReconciliationTrigger",
    "SortKey",

    # Aggregates
    "DailyAggregateRead",
    "AggregateRecompute",
]
