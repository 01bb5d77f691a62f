"""Reconciliation scopes and the locks that serialize apply runs.

An apply run holds a lock on its business-date scope for its whole duration.
Two apply runs may proceed concurrently only when their scopes are disjoint;
an all-time scope overlaps everything. Dry runs never lock.

Backends:
* ``ScopeLockManager`` - in-process, overlap-aware (threading.Condition).
* ``RedisScopeLockManager`` - additionally takes a redis-py ``Lock`` so apply
  runs are serialized across processes. Redis cannot answer "does any held
  range overlap this one" atomically, so a single coarse key is used: at most
  one apply run at a time cluster-wide. When Redis is unreachable the manager
  degrades to its in-process behaviour.
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional

import redis

from app.config import LOCK_SETTINGS
from app.exceptions import InvalidInterval, ScopeLocked
from app.utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationScope:
    """Inclusive business-date range; both bounds None means all-time."""

    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and self.end < self.start:
            raise InvalidInterval(
                "Scope end date is before its start date",
                details={"start": self.start.isoformat(), "end": self.end.isoformat()},
            )

    @classmethod
    def all_time(cls) -> "ReconciliationScope":
        return cls()

    @property
    def is_all_time(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, day: date) -> bool:
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True

    def overlaps(self, other: "ReconciliationScope") -> bool:
        # Open bounds extend to infinity on that side.
        if self.end is not None and other.start is not None and self.end < other.start:
            return False
        if other.end is not None and self.start is not None and other.end < self.start:
            return False
        return True

    @property
    def label(self) -> str:
        if self.is_all_time:
            return "all-time"
        start = self.start.isoformat() if self.start else "*"
        end = self.end.isoformat() if self.end else "*"
        return f"{start}..{end}"


class ScopeLockManager:
    """In-process registry of scopes held by running apply runs."""

    def __init__(self) -> None:
        self._cv = threading.Condition(threading.Lock())
        self._held: dict[str, ReconciliationScope] = {}

    def _conflict(self, scope: ReconciliationScope) -> Optional[str]:
        for owner, held in self._held.items():
            if held.overlaps(scope):
                return owner
        return None

    def acquire(self, scope: ReconciliationScope, owner: str, *, timeout: float = 0.0) -> bool:
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cv:
            while self._conflict(scope) is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cv.wait(timeout=remaining)
            self._held[owner] = scope
            return True

    def release(self, owner: str) -> None:
        with self._cv:
            self._held.pop(owner, None)
            self._cv.notify_all()

    @contextmanager
    def hold(self, scope: ReconciliationScope, owner: str, *, timeout: float = 0.0) -> Iterator[None]:
        """Hold ``scope`` for the body; raise ScopeLocked if it cannot be taken."""
        if not self.acquire(scope, owner, timeout=timeout):
            with self._cv:
                holder = self._conflict(scope)
            raise ScopeLocked(
                f"Scope {scope.label} overlaps a reconciliation already in progress",
                details={"scope": scope.label, "held_by": holder},
            )
        try:
            yield
        finally:
            self.release(owner)

    def snapshot(self) -> dict:
        with self._cv:
            return {
                "backend": "memory",
                "held": {owner: scope.label for owner, scope in self._held.items()},
            }


class RedisScopeLockManager(ScopeLockManager):
    """Overlap-aware locally, plus one coarse cross-process Redis lock."""

    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        super().__init__()
        self._redis_url = str(LOCK_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        self._key = f"{LOCK_SETTINGS.get('key_prefix', 'rental:reconcile:lock')}:apply"
        self._ttl = int(LOCK_SETTINGS.get("lock_ttl_seconds", 900))  # type: ignore[arg-type]
        self._socket_timeout = float(LOCK_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._redis_client: Optional[redis.Redis] = client
        self._redis_locks: dict[str, redis.lock.Lock] = {}
        if self._redis_client is None:
            self._init_redis_client()

    def _init_redis_client(self) -> None:
        try:
            self._redis_client = redis.from_url(
                self._redis_url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
            self._redis_client.ping()
            logger.info("Connected to Redis for reconciliation locks", url=self._redis_url)
        except (redis.RedisError, ConnectionError) as e:
            self._redis_client = None
            logger.warning("Redis unavailable, using in-process scope locks only", error=str(e))

    def health_check(self) -> bool:
        if self._redis_client is None:
            self._init_redis_client()
            return self._redis_client is not None
        try:
            self._redis_client.ping()
            return True
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    def acquire(self, scope: ReconciliationScope, owner: str, *, timeout: float = 0.0) -> bool:
        if not super().acquire(scope, owner, timeout=timeout):
            return False
        if self._redis_client is None:
            return True
        lock = self._redis_client.lock(self._key, timeout=self._ttl, thread_local=False)
        try:
            acquired = lock.acquire(blocking=timeout > 0, blocking_timeout=timeout if timeout > 0 else None)
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Redis lock unavailable, continuing with in-process lock", owner=owner, error=str(e))
            return True
        if not acquired:
            super().release(owner)
            return False
        self._redis_locks[owner] = lock
        return True

    def release(self, owner: str) -> None:
        lock = self._redis_locks.pop(owner, None)
        if lock is not None:
            try:
                lock.release()
            except (redis.RedisError, ConnectionError) as e:
                # Expires on its own after lock_ttl_seconds.
                logger.warning("Failed to release Redis lock", owner=owner, error=str(e))
        super().release(owner)

    def snapshot(self) -> dict:
        data = super().snapshot()
        data["backend"] = "redis" if self._redis_client is not None else "memory"
        data["redis_key"] = self._key
        return data


def create_lock_manager() -> ScopeLockManager:
    """Create the lock manager selected by LOCK_SETTINGS."""
    if LOCK_SETTINGS.get("use_redis", False):
        logger.info("Using Redis-backed reconciliation locks")
        return RedisScopeLockManager()
    return ScopeLockManager()


_default_manager: Optional[ScopeLockManager] = None
_default_manager_lock = threading.Lock()


def get_lock_manager() -> ScopeLockManager:
    global _default_manager
    with _default_manager_lock:
        if _default_manager is None:
            _default_manager = create_lock_manager()
        return _default_manager


__all__ = [
    "ReconciliationScope",
    "ScopeLockManager",
    "RedisScopeLockManager",
    "create_lock_manager",
    "get_lock_manager",
]
