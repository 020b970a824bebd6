from __future__ import annotations

import operator as _op
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol


OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": _op.gt,
    "<": _op.lt,
    ">=": _op.ge,
    "<=": _op.le,
    "=": _op.eq,
}

DEFAULT_COOLDOWN = timedelta(minutes=5)
HOURLY_WINDOW = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (SQLite drops tzinfo) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compare_value(value: float, operator: str, threshold: float) -> bool:
    """Apply a rule operator. Unrecognised operators never trigger."""
    comparison = OPERATORS.get(operator)
    if comparison is None:
        return False
    return bool(comparison(value, threshold))


class _HasLastTriggered(Protocol):
    last_triggered_at: datetime | None


class CooldownGovernor:
    def __init__(
        self,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.cooldown = cooldown
        self._clock = clock

    def is_suppressed(self, rule: _HasLastTriggered) -> bool:
        if rule.last_triggered_at is None:
            return False
        elapsed = self._clock() - as_utc(rule.last_triggered_at)
        return elapsed < self.cooldown


@dataclass
class CycleCounters:
    hourly_alert_count: int
    hourly_reset_at: datetime
    cycle_alert_count: int = 0


class RateLimiter:
    """Per-cycle and per-hour caps on fired alerts, shared by every rule.

    The hourly cap is a counter reset once more than an hour has passed
    since the last reset, not a sliding window.
    """

    def __init__(
        self,
        max_per_cycle: int = 2,
        max_per_hour: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.max_per_cycle = max_per_cycle
        self.max_per_hour = max_per_hour
        self._clock = clock
        self.counters = CycleCounters(hourly_alert_count=0, hourly_reset_at=clock())

    def begin_cycle(self) -> None:
        now = self._clock()
        if now - self.counters.hourly_reset_at > HOURLY_WINDOW:
            self.counters.hourly_alert_count = 0
            self.counters.hourly_reset_at = now
        self.counters.cycle_alert_count = 0

    def cycle_exhausted(self) -> bool:
        return self.counters.cycle_alert_count >= self.max_per_cycle

    def hourly_exhausted(self) -> bool:
        return self.counters.hourly_alert_count >= self.max_per_hour

    def record_fire(self) -> None:
        self.counters.cycle_alert_count += 1
        self.counters.hourly_alert_count += 1
