"""In-memory priority + delay queue for reconciliation runs (single process).

Lower numeric priority runs first; equal priorities keep FIFO order. A job
may carry a delay, in which case it waits on a separate "scheduled" heap and
is promoted once due, so a far-future high-priority job never blocks jobs
that are ready now. Capacity and depth warnings come from QUEUE_SETTINGS.
"""
from __future__ import annotations

import heapq
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

from app.config import QUEUE_SETTINGS
from app.utils import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class QueueItem:
    job: Any
    priority_label: str
    priority_value: int
    enqueued_at: float
    ready_at: float
    seq: int


class PriorityDelayQueue:
    def __init__(self) -> None:
        priorities = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = dict(priorities) if isinstance(priorities, dict) else {"normal": 5}
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 100))  # type: ignore[arg-type]
        self._max_in_memory = int(QUEUE_SETTINGS.get("max_in_memory", 1000))  # type: ignore[arg-type]
        self._cv = threading.Condition(threading.RLock())
        self._ready: list[tuple[int, int, QueueItem]] = []
        self._scheduled: list[tuple[float, int, int, QueueItem]] = []
        self._seq = 0
        self._shutdown = False

    def _promote_due(self) -> None:
        now_ts = time.time()
        while self._scheduled and self._scheduled[0][0] <= now_ts:
            _, priority_value, seq, item = heapq.heappop(self._scheduled)
            heapq.heappush(self._ready, (priority_value, seq, item))

    def _wait_for_work(self, remaining: Optional[float]) -> None:
        wait = remaining
        if self._scheduled:
            until_due = max(0.0, self._scheduled[0][0] - time.time())
            wait = until_due if wait is None else min(wait, until_due)
        if wait is None:
            self._cv.wait()
        elif wait > 0:
            self._cv.wait(timeout=wait)

    def enqueue(self, job: Any, *, priority: str = "normal", delay_seconds: float = 0.0) -> QueueItem:
        with self._cv:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{priority}'")
            if self.depth() >= self._max_in_memory:
                raise OverflowError("Queue capacity exceeded")
            now_ts = time.time()
            self._seq += 1
            item = QueueItem(
                job=job,
                priority_label=priority,
                priority_value=self._priority_map[priority],
                enqueued_at=now_ts,
                ready_at=now_ts + max(0.0, delay_seconds),
                seq=self._seq,
            )
            if item.ready_at <= now_ts:
                heapq.heappush(self._ready, (item.priority_value, item.seq, item))
            else:
                heapq.heappush(self._scheduled, (item.ready_at, item.priority_value, item.seq, item))
            if self.depth() >= self._warn_depth:
                logger.warning("Queue depth warning", depth=self.depth())
            self._cv.notify()
            return item

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> Any:
        """Next ready job, or None when non-blocking/timed out/shut down and drained."""
        deadline = None if timeout is None else time.time() + timeout
        with self._cv:
            while True:
                self._promote_due()
                if self._ready:
                    return heapq.heappop(self._ready)[2].job
                if self._shutdown and not self._scheduled:
                    return None
                if not block:
                    return None
                remaining = None if deadline is None else deadline - time.time()
                if remaining is not None and remaining <= 0:
                    return None
                self._wait_for_work(remaining)

    def shutdown(self) -> None:
        with self._cv:
            self._shutdown = True
            self._cv.notify_all()

    def purge(self) -> None:
        """Drop every queued job (test isolation)."""
        with self._cv:
            self._ready.clear()
            self._scheduled.clear()
            self._cv.notify_all()

    def depth(self) -> int:
        return len(self._ready) + len(self._scheduled)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def pending(self) -> list[QueueItem]:
        """Queued items in the order they would be served if all were due."""
        with self._cv:
            items = [entry[2] for entry in self._ready] + [entry[3] for entry in self._scheduled]
        return sorted(items, key=lambda i: (i.ready_at > time.time(), i.priority_value, i.seq))

    def snapshot(self) -> dict:
        with self._cv:
            return {
                "backend": "memory",
                "depth": self.depth(),
                "ready": len(self._ready),
                "scheduled": len(self._scheduled),
                "shutdown": self._shutdown,
            }


__all__ = ["PriorityDelayQueue", "QueueItem"]
