"""Graduated tariff calculator.

Pure and deterministic: ``compute(start_time, end_time, config)`` maps an
interval and an immutable ``TariffConfig`` to an ``AmountBreakdown``. It never
reads the clock, touches storage or looks up "current settings"; callers pass
the configuration that was in effect.

Billing rules:
* The first ``60 + grace_minutes`` minutes (the base window) cost ``base_rate``,
  also when no time has elapsed at all.
* Every started ``block_minutes`` after the base window costs ``block_rate``.
* Minutes of a billed segment that fall inside ``[night_start_hour:00, 24:00)``
  wall-clock time are charged at ``night_multiplier`` times the segment rate.
  Segments straddling the boundary are split pro-rata by minutes; only the
  incremental amount is reported as ``night_adjustment``.
* The total is rounded half-up to a whole currency unit.

Flat fees (late surcharge, overnight fine, damage, discounts) are *not* part of
this computation; see ``app.services.completion``.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, time, timedelta, timezone, tzinfo
from decimal import Decimal
from typing import Any, Mapping, Optional

from app.config import TARIFF_LIMITS
from app.exceptions import InvalidInterval, InvalidTariffConfiguration, MissingConfiguration
from app.utils.metrics import CENT, round_half_up, to_money

BASE_HOUR_MINUTES = 60
SECONDS_PER_MINUTE = Decimal(60)

_MONEY_FIELDS = ("base_rate", "block_rate", "night_multiplier", "late_surcharge", "overnight_fine")
_INT_FIELDS = ("grace_minutes", "block_minutes", "night_start_hour", "closing_hour")


@dataclass(frozen=True)
class TariffConfig:
    """Immutable tariff snapshot. A changed tariff is a new value (and version)."""

    base_rate: Decimal
    grace_minutes: int
    block_minutes: int
    block_rate: Decimal
    night_start_hour: int
    night_multiplier: Decimal
    late_surcharge: Decimal = Decimal("0")
    overnight_fine: Decimal = Decimal("0")
    closing_hour: int = 22
    version: Optional[int] = None

    def __post_init__(self) -> None:
        for name in _MONEY_FIELDS:
            object.__setattr__(self, name, to_money(getattr(self, name)))
        for name in _INT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or int(value) != value:
                raise InvalidTariffConfiguration(f"{name} must be a whole number", details={"field": name})
            object.__setattr__(self, name, int(value))
        self._validate()

    def _validate(self) -> None:
        errors: list[str] = []
        if self.base_rate <= 0:
            errors.append("base_rate must be greater than 0")
        if self.block_rate < 0:
            errors.append("block_rate must not be negative")
        if self.late_surcharge < 0 or self.overnight_fine < 0:
            errors.append("flat fees must not be negative")
        for name, (low, high) in TARIFF_LIMITS.items():
            value = getattr(self, name)
            if value < low or value > high:
                errors.append(f"{name} must be between {low} and {high}")
        if errors:
            raise InvalidTariffConfiguration("Invalid tariff configuration", details={"errors": errors})

    @property
    def base_window_minutes(self) -> int:
        return BASE_HOUR_MINUTES + self.grace_minutes

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, version: Optional[int] = None) -> "TariffConfig":
        names = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in names and v is not None}
        if version is not None:
            values["version"] = version
        try:
            return cls(**values)
        except TypeError as exc:  # missing required field
            raise InvalidTariffConfiguration(str(exc)) from exc

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class BilledSegment:
    kind: str  # "base" | "block"
    index: int
    start: datetime
    end: datetime
    minutes: int
    rate: Decimal
    night_minutes: Decimal
    night_adjustment: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "index": self.index,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "minutes": self.minutes,
            "rate": str(self.rate),
            "night_minutes": str(self.night_minutes),
            "night_adjustment": str(self.night_adjustment),
        }


@dataclass(frozen=True)
class AmountBreakdown:
    base_amount: Decimal
    blocks: int
    block_amount: Decimal
    night_adjustment: Decimal
    total_amount: Decimal
    elapsed_minutes: int
    segments: tuple[BilledSegment, ...] = field(default_factory=tuple)
    tariff_version: Optional[int] = None

    @property
    def night_segments(self) -> int:
        return sum(1 for s in self.segments if s.night_minutes > 0)

    def to_dict(self, *, as_json: bool = False) -> dict[str, Any]:
        """Full derivation; ``as_json`` renders money as strings for JSON columns."""
        money = str if as_json else (lambda value: value)
        return {
            "base_amount": money(self.base_amount),
            "blocks": self.blocks,
            "block_amount": money(self.block_amount),
            "night_adjustment": money(self.night_adjustment),
            "total_amount": money(self.total_amount),
            "elapsed_minutes": self.elapsed_minutes,
            "tariff_version": self.tariff_version,
            "segments": [s.to_dict() for s in self.segments],
        }


def _utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc) if value.tzinfo is not None else value


def _wall_clock(value: datetime, tz: Optional[tzinfo]) -> datetime:
    return value.astimezone(tz) if tz is not None else value


def _night_fraction(start: datetime, end: datetime, night_start_hour: int, tz: Optional[tzinfo]) -> Decimal:
    """Minutes of [start, end) inside the nightly window of ``tz``, as a Decimal.

    ``start`` and ``end`` are UTC (or both naive); window edges are wall-clock
    times in ``tz`` converted back to UTC, so DST days keep their real length.
    """
    if end <= start:
        return Decimal("0")
    total = timedelta(0)
    day = _wall_clock(start, tz).date()
    while True:
        day_start = _utc(datetime.combine(day, time(0), tzinfo=tz))
        if day_start >= end:
            break
        window_start = _utc(datetime.combine(day, time(night_start_hour), tzinfo=tz))
        window_end = _utc(datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz))
        overlap = min(end, window_end) - max(start, window_start)
        if overlap > timedelta(0):
            total += overlap
        day += timedelta(days=1)
    return Decimal(str(total.total_seconds())) / SECONDS_PER_MINUTE


def _segment(
    kind: str,
    index: int,
    start: datetime,
    minutes: int,
    rate: Decimal,
    config: TariffConfig,
    tz: Optional[tzinfo],
) -> BilledSegment:
    end = start + timedelta(minutes=minutes)
    if minutes == 0:
        # An instant is either inside the night window or not.
        ratio = Decimal("1") if _wall_clock(start, tz).hour >= config.night_start_hour else Decimal("0")
        night_minutes = Decimal("0")
    else:
        night_minutes = _night_fraction(start, end, config.night_start_hour, tz)
        ratio = night_minutes / Decimal(minutes)
    adjustment = rate * (config.night_multiplier - 1) * ratio
    return BilledSegment(
        kind=kind,
        index=index,
        start=_wall_clock(start, tz),
        end=_wall_clock(end, tz),
        minutes=minutes,
        rate=rate,
        night_minutes=night_minutes,
        night_adjustment=adjustment,
    )


def compute(start_time: datetime, end_time: datetime, config: Optional[TariffConfig]) -> AmountBreakdown:
    """Price the interval ``[start_time, end_time]`` under ``config``.

    Wall-clock rules are evaluated in the timezone of ``start_time``; pass both
    datetimes in the business timezone (or both naive). Durations are measured
    on the absolute timeline, so a DST change never stretches or shrinks a rental.

    Raises:
        MissingConfiguration: ``config`` is None
        InvalidInterval: end before start, or naive/aware datetimes mixed
    """
    if config is None:
        raise MissingConfiguration("A tariff configuration is required to compute an amount")
    if (start_time.tzinfo is None) != (end_time.tzinfo is None):
        raise InvalidInterval("start_time and end_time must both be naive or both be timezone-aware")
    tz = start_time.tzinfo
    start, end = _utc(start_time), _utc(end_time)
    if end < start:
        raise InvalidInterval(
            "end_time is before start_time",
            details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
        )

    elapsed = int((end - start).total_seconds() // 60)
    base_window = config.base_window_minutes

    segments = [_segment("base", 0, start, min(elapsed, base_window), config.base_rate, config, tz)]
    blocks = 0
    if elapsed > base_window:
        remainder = elapsed - base_window
        blocks = -(-remainder // config.block_minutes)  # ceil: partial blocks are billed in full
        cursor = start + timedelta(minutes=base_window)
        for i in range(blocks):
            used = min(config.block_minutes, remainder - i * config.block_minutes)
            segments.append(_segment("block", i + 1, cursor, used, config.block_rate, config, tz))
            cursor += timedelta(minutes=used)

    base_amount = config.base_rate
    block_amount = config.block_rate * blocks
    night_exact = sum((s.night_adjustment for s in segments), Decimal("0"))
    # one rounding step for the total; the reported adjustment is shown to the cent
    total = round_half_up(base_amount + block_amount + night_exact)

    return AmountBreakdown(
        base_amount=base_amount,
        blocks=blocks,
        block_amount=block_amount,
        night_adjustment=round_half_up(night_exact, CENT),
        total_amount=total,
        elapsed_minutes=elapsed,
        segments=tuple(segments),
        tariff_version=config.version,
    )


def preview(start_time: datetime, duration_minutes: int, config: Optional[TariffConfig]) -> AmountBreakdown:
    """Price a prospective rental of ``duration_minutes`` starting at ``start_time``."""
    if duration_minutes < 0:
        raise InvalidInterval("duration_minutes must not be negative")
    end_time = _wall_clock(_utc(start_time) + timedelta(minutes=duration_minutes), start_time.tzinfo)
    return compute(start_time, end_time, config)


EXAMPLE_DURATIONS: tuple[tuple[str, int], ...] = (
    ("30 minutes", 30),
    ("1 hour", 60),
    ("1.5 hours", 90),
    ("2 hours", 120),
    ("3 hours", 180),
)


def pricing_examples(config: TariffConfig, *, day_start: datetime, night_start: datetime) -> dict[str, list[dict[str, Any]]]:
    """Reference prices for typical durations, starting in the day and in the evening."""
    day = [
        {"label": label, "minutes": minutes, "amount": preview(day_start, minutes, config).total_amount, "type": "day"}
        for label, minutes in EXAMPLE_DURATIONS
    ]
    night = [
        {"label": label, "minutes": minutes, "amount": preview(night_start, minutes, config).total_amount, "type": "night"}
        for label, minutes in EXAMPLE_DURATIONS[1:4]
    ]
    return {"day": day, "night": night}


__all__ = [
    "TariffConfig",
    "BilledSegment",
    "AmountBreakdown",
    "compute",
    "preview",
    "pricing_examples",
]
