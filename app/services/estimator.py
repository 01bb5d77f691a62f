"""Advisory running amount for sessions that are still in progress.

The estimate is recomputed on every call from ``(start_time, now, config)``.
Nothing is cached and nothing is written; the stored amount of a session is
only set by the completion workflow or by reconciliation.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional, Protocol

from app.exceptions import SessionAlreadyCompleted
from app.services.tariff_calculator import AmountBreakdown, TariffConfig, compute
from app.utils.time import to_business_time

NowProvider = Callable[[], datetime]


class SessionLike(Protocol):
    id: int
    start_time: datetime
    end_time: Optional[datetime]


class ActiveSessionEstimator:
    """Wraps the tariff calculator with an injected clock."""

    def estimate(self, session: SessionLike, now_provider: NowProvider, config: TariffConfig) -> AmountBreakdown:
        return self._estimate_at(session, now_provider(), config)

    def estimate_many(
        self,
        sessions: Iterable[SessionLike],
        now_provider: NowProvider,
        config: TariffConfig,
    ) -> dict[int, AmountBreakdown]:
        """Estimate several sessions against one shared "now"."""
        now = now_provider()
        return {s.id: self._estimate_at(s, now, config) for s in sessions}

    @staticmethod
    def _estimate_at(session: SessionLike, now: datetime, config: TariffConfig) -> AmountBreakdown:
        if session.end_time is not None:
            raise SessionAlreadyCompleted(
                f"Session {session.id} is completed; its amount is final",
                details={"session_id": session.id},
            )
        return compute(to_business_time(session.start_time), to_business_time(now), config)


__all__ = ["ActiveSessionEstimator", "NowProvider"]
