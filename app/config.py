"""Core application configuration & tunable billing rules.

Everything that may evolve (tariff defaults and their validation bounds,
reconciliation paging / pool sizing / timeouts, locking backend, queue
priorities) is centralized here so it can be adjusted without diving into
service logic. Values can be overridden through environment variables; tests
monkeypatch the dicts directly.

Note: DEFAULT_TARIFF only seeds the *first* persisted tariff version. Billing
code never reads it; every calculation receives an explicit TariffConfig.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


# Wall-clock rules (night window, closing hour, business date) are evaluated
# in this zone. Stored timestamps are UTC.
BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "UTC")

# -------------------------------- Tariff ---------------------------------- #
SEED_DEFAULT_TARIFF: bool = _env_bool("SEED_DEFAULT_TARIFF", True)

DEFAULT_TARIFF: dict[str, float | int] = {
	"base_rate": 80,
	"grace_minutes": 15,
	"block_minutes": 30,
	"block_rate": 40,
	"night_start_hour": 22,
	"night_multiplier": 2.0,
	"late_surcharge": 20,      # per started overdue hour
	"overnight_fine": 500,
	"closing_hour": 22,
}

TARIFF_LIMITS: dict[str, tuple[float, float]] = {
	"grace_minutes": (0, 60),
	"block_minutes": (1, 120),
	"night_multiplier": (1.0, 5.0),
	"night_start_hour": (0, 23),
	"closing_hour": (0, 23),
}

# ----------------------------- Reconciliation ----------------------------- #
RECONCILIATION_SETTINGS: dict[str, int | float] = {
	"page_size": int(os.getenv("RECONCILIATION_PAGE_SIZE", "200")),
	"max_workers": int(os.getenv("RECONCILIATION_MAX_WORKERS", "4")),
	# Soft deadline for one run; on expiry the run is FAILED, commits kept.
	"soft_timeout_seconds": float(os.getenv("RECONCILIATION_SOFT_TIMEOUT", "300")),
	# How long an apply run waits for an overlapping lock before failing.
	"lock_wait_seconds": float(os.getenv("RECONCILIATION_LOCK_WAIT", "0")),
	# Immediate retries of a conflicting aggregate write (per date).
	"aggregate_conflict_retries": 1,
	# Max diff rows returned by the report endpoint in one page.
	"max_report_page": 500,
}

# --------------------------------- Locks ---------------------------------- #
LOCK_SETTINGS: dict[str, str | int | bool] = {
	"use_redis": _env_bool("RECONCILIATION_LOCK_USE_REDIS", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"key_prefix": "rental:reconcile:lock",
	"lock_ttl_seconds": 900,
	"redis_health_check_timeout": 2.0,
}

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, dict[str, int] | int] = {
	"priorities": {  # Lower number = higher priority
		"high": 0,
		"normal": 5,
		"low": 10,
	},
	"warn_depth": 100,
	"max_in_memory": 1000,
}

__all__ = [
	"BUSINESS_TIMEZONE",
	"SEED_DEFAULT_TARIFF",
	"DEFAULT_TARIFF",
	"TARIFF_LIMITS",
	"RECONCILIATION_SETTINGS",
	"LOCK_SETTINGS",
	"QUEUE_SETTINGS",
]
