"""Background worker executing queued reconciliation runs."""
from __future__ import annotations

import threading
from collections import deque
import time
from typing import Optional

from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.jobs.queue import PriorityDelayQueue
from app.jobs.reconciliation_job import ReconciliationJob
from app.services.reconciliation_engine import execute_run
from app.services.scope_lock import ScopeLockManager
from app.services.tariffs import active_tariff, tariff_by_version
from app.utils import get_logger

logger = get_logger(__name__)


class ReconciliationWorker:
    def __init__(
        self,
        queue: PriorityDelayQueue,
        *,
        poll_timeout: float = 5.0,
        lock_manager: Optional[ScopeLockManager] = None,
    ):
        self.queue = queue
        self.poll_timeout = poll_timeout
        self.lock_manager = lock_manager
        self.current_run_id: Optional[int] = None
        self.processed_jobs = 0
        self.recent_failures: deque[dict] = deque(maxlen=20)
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="reconciliation-worker", daemon=True)
        self._thread.start()
        logger.info("Reconciliation worker started")

    def stop(self) -> None:
        self._stop_event.set()
        logger.info("Reconciliation worker stop requested")

    @property
    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.queue.dequeue(timeout=self.poll_timeout)
                if job is None:
                    continue
                if not isinstance(job, ReconciliationJob):
                    logger.warning("Skipping unknown job type", job_type=type(job).__name__)
                    continue
                self.process(job)
            except Exception as e:  # pragma: no cover
                logger.error("Worker loop error", error=str(e), exc_info=True)
                time.sleep(1)

    def process(self, job: ReconciliationJob) -> None:
        logger.info("Processing reconciliation job", run_id=job.run_id, request_id=job.correlation_id)
        session: Session = SessionLocal()
        self.current_run_id = job.run_id
        try:
            config = (
                tariff_by_version(session, job.tariff_version)
                if job.tariff_version is not None
                else active_tariff(session)
            )
            run = execute_run(session, job.run_id, config, lock_manager=self.lock_manager)
            logger.info(
                "Reconciliation job finished",
                run_id=job.run_id,
                status=run.status.value,
                request_id=job.correlation_id,
            )
        except Exception as e:
            logger.error("Reconciliation job failed", run_id=job.run_id, error=str(e), exc_info=True)
            self.recent_failures.append({"run_id": job.run_id, "error": str(e), "type": type(e).__name__})
        finally:
            self.current_run_id = None
            self.processed_jobs += 1
            session.close()

    def snapshot(self) -> dict:
        return {
            "alive": self.is_alive,
            "current_run_id": self.current_run_id,
            "processed_jobs": self.processed_jobs,
            "recent_failures": list(self.recent_failures),
        }


def create_queue() -> PriorityDelayQueue:
    logger.info("Using in-memory reconciliation queue")
    return PriorityDelayQueue()


__all__ = ["ReconciliationWorker", "create_queue"]
