"""Time-window rules gating uploads and driving bandwidth limits.

Weekdays follow ``datetime.weekday()``: 0 is Monday, 6 is Sunday. Windows are
half-open ``[start, end)`` in minutes of day; ``end < start`` wraps past midnight
and a rule is matched on the weekday of the instant being evaluated.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from media_upload_engine.domain.transfer_types import ScheduleMode

MINUTES_PER_DAY = 24 * 60
ALL_DAYS = frozenset(range(7))
WORKDAYS = frozenset(range(5))
WEEKEND = frozenset({5, 6})

_DAY_NAMES = {"mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6}


def _parse_minute(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be minutes of day or 'HH:MM'.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        hours, _, minutes = value.strip().partition(":")
        try:
            return int(hours) * 60 + int(minutes or 0)
        except ValueError as exc:
            raise ValueError(f"{field_name} must be formatted as 'HH:MM', got '{value}'.") from exc
    raise ValueError(f"{field_name} must be minutes of day or 'HH:MM'.")


def _parse_day(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        key = value.strip().lower()[:3]
        if key in _DAY_NAMES:
            return _DAY_NAMES[key]
    raise ValueError(f"Unknown weekday '{value}'.")


@dataclass(slots=True, frozen=True)
class ScheduleRule:
    """One recurring time window, optionally carrying a bandwidth limit."""

    start_minute: int
    end_minute: int
    days: frozenset[int] = ALL_DAYS
    enabled: bool = True
    name: str = ""
    speed_limit_mbps: float | None = None

    def __post_init__(self) -> None:
        for label, minute in (("start_minute", self.start_minute), ("end_minute", self.end_minute)):
            if not 0 <= minute <= MINUTES_PER_DAY:
                raise ValueError(f"{label} must be within [0, {MINUTES_PER_DAY}].")
        days = frozenset(self.days)
        if not days <= ALL_DAYS:
            raise ValueError("days must only contain weekday numbers 0-6.")
        object.__setattr__(self, "days", days)
        if self.speed_limit_mbps is not None and self.speed_limit_mbps < 0:
            raise ValueError("speed_limit_mbps must be >= 0.")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> ScheduleRule:
        """Build a rule from a JSON object (``start``/``end`` as ``HH:MM``)."""

        start = payload.get("start", payload.get("startMinute"))
        end = payload.get("end", payload.get("endMinute"))
        if start is None or end is None:
            raise ValueError("Schedule rules need 'start' and 'end'.")
        raw_days = payload.get("days")
        days = ALL_DAYS if raw_days is None else frozenset(_parse_day(day) for day in raw_days)
        speed = payload.get("speedLimitMbps")
        return cls(
            start_minute=_parse_minute(start, "start"),
            end_minute=_parse_minute(end, "end"),
            days=days,
            enabled=bool(payload.get("enabled", True)),
            name=str(payload.get("name", "")),
            speed_limit_mbps=None if speed is None else float(speed),
        )

    @property
    def overnight(self) -> bool:
        return self.end_minute < self.start_minute

    def contains_minute(self, minute: int) -> bool:
        if self.start_minute <= self.end_minute:
            return self.start_minute <= minute < self.end_minute
        return minute >= self.start_minute or minute < self.end_minute

    def is_active(self, at: datetime) -> bool:
        if not self.enabled or at.weekday() not in self.days:
            return False
        return self.contains_minute(at.hour * 60 + at.minute)


def parse_rules(payload: Iterable[Mapping[str, Any]]) -> tuple[ScheduleRule, ...]:
    return tuple(ScheduleRule.from_mapping(item) for item in payload)


@dataclass(slots=True, frozen=True)
class UploadSchedule:
    """Gate deciding whether new uploads may be admitted at a given instant."""

    enabled: bool = False
    mode: ScheduleMode = ScheduleMode.ALLOW_DURING
    rules: tuple[ScheduleRule, ...] = field(default_factory=tuple)

    def is_upload_allowed(self, now: datetime) -> bool:
        if not self.enabled:
            return True
        todays_rules = [
            rule for rule in self.rules if rule.enabled and now.weekday() in rule.days
        ]
        if not todays_rules:
            return self.mode is ScheduleMode.BLOCK_DURING
        within = any(rule.is_active(now) for rule in todays_rules)
        if self.mode is ScheduleMode.ALLOW_DURING:
            return within
        return not within

    def next_allowed_time(self, now: datetime) -> datetime | None:
        """Earliest instant within the coming week at which uploads open up.

        Returns ``None`` when scheduling is off, uploads are already allowed,
        or no window opens in the next seven days.
        """

        if not self.enabled or self.is_upload_allowed(now):
            return None
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        candidates: set[datetime] = set()
        for day_offset in range(8):
            day_start = midnight + timedelta(days=day_offset)
            candidates.add(day_start)
            for rule in self.rules:
                if not rule.enabled:
                    continue
                candidates.add(day_start + timedelta(minutes=rule.start_minute))
                candidates.add(day_start + timedelta(minutes=rule.end_minute))
        horizon = now + timedelta(days=7)
        for candidate in sorted(candidates):
            if now < candidate <= horizon and self.is_upload_allowed(candidate):
                return candidate
        return None


@dataclass(slots=True, frozen=True)
class ThrottleSchedule:
    """Time-of-day bandwidth limits; the first active rule wins."""

    rules: tuple[ScheduleRule, ...] = field(default_factory=tuple)

    def current_speed_limit_mbps(self, now: datetime) -> float | None:
        for rule in self.rules:
            if rule.speed_limit_mbps is not None and rule.is_active(now):
                return rule.speed_limit_mbps
        return None


def _preset(*rules: ScheduleRule) -> UploadSchedule:
    return UploadSchedule(enabled=True, mode=ScheduleMode.ALLOW_DURING, rules=rules)


SCHEDULE_PRESETS: dict[str, UploadSchedule] = {
    "off_hours": _preset(
        ScheduleRule(18 * 60, 9 * 60, WORKDAYS, name="Evenings and nights (weekdays)"),
        ScheduleRule(0, MINUTES_PER_DAY, WEEKEND, name="All day weekend"),
    ),
    "business_hours": _preset(
        ScheduleRule(9 * 60, 17 * 60, WORKDAYS, name="Business hours"),
    ),
    "weekends_only": _preset(
        ScheduleRule(0, MINUTES_PER_DAY, WEEKEND, name="Weekends"),
    ),
    "nights_only": _preset(
        ScheduleRule(22 * 60, 6 * 60, ALL_DAYS, name="Nights"),
    ),
}


__all__ = [
    "ALL_DAYS",
    "MINUTES_PER_DAY",
    "SCHEDULE_PRESETS",
    "ScheduleRule",
    "ThrottleSchedule",
    "UploadSchedule",
    "WEEKEND",
    "WORKDAYS",
    "parse_rules",
]
