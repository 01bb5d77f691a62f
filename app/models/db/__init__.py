from .tariffs import TariffConfiguration
from .rental_sessions import RentalSession
from .reconciliation_runs import ReconciliationRun, DiffRecord
from .daily_aggregates import DailyAggregate
from .enums import RunMode, RunStatus, DiffOutcome

__all__ = [
    "TariffConfiguration",
    "RentalSession",
    "ReconciliationRun",
    "DiffRecord",
    "DailyAggregate",
    "RunMode",
    "RunStatus",
    "DiffOutcome",
]
