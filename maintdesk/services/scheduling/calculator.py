from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
import calendar
import logging
import re
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = logging.getLogger(__name__)

SCHEDULE_DAILY = "daily"
SCHEDULE_WEEKLY = "weekly"
SCHEDULE_MONTHLY = "monthly"
SCHEDULE_DATE = "date"
SCHEDULE_TYPES = (SCHEDULE_DAILY, SCHEDULE_WEEKLY, SCHEDULE_MONTHLY, SCHEDULE_DATE)

DEFAULT_TIME_OF_DAY = "08:00"
_TIME_OF_DAY_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class ScheduleSpec:
    # Recurrence definition; next_run_at/last_run_at carry generator progress.
    type: str
    timezone: str | None = None
    time_of_day: str | None = None
    days_of_week: tuple[int, ...] | None = None
    day_of_month: int | None = None
    date: datetime | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None

    @classmethod
    def from_template(cls, template: Any) -> "ScheduleSpec":
        days = template.schedule_days_of_week
        return cls(
            type=template.schedule_type,
            timezone=template.schedule_timezone,
            time_of_day=template.schedule_time_of_day,
            days_of_week=tuple(int(day) for day in days) if days else None,
            day_of_month=template.schedule_day_of_month,
            date=template.schedule_date,
            next_run_at=template.next_run_at,
            last_run_at=template.last_run_at,
        )

    def with_progress(
        self, *, next_run_at: datetime | None, last_run_at: datetime | None
    ) -> "ScheduleSpec":
        return replace(self, next_run_at=next_run_at, last_run_at=last_run_at)


def is_valid_time_of_day(value: str) -> bool:
    return bool(_TIME_OF_DAY_RE.match(value))


def resolve_zone(name: str | None) -> ZoneInfo | timezone:
    # Unknown or malformed zones degrade to UTC instead of failing the caller.
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("schedule_timezone_invalid timezone=%s", name)
        return timezone.utc


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _time_parts(value: str | None) -> tuple[int, int]:
    match = _TIME_OF_DAY_RE.match(value or "") or _TIME_OF_DAY_RE.match(DEFAULT_TIME_OF_DAY)
    return int(match.group(1)), int(match.group(2))


def _clamped_date(year: int, month: int, day: int) -> date:
    # Day 31 in a 30-day month lands on the last day instead of raising.
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, max(1, min(day, last_day)))


def next_occurrence(spec: ScheduleSpec, reference: datetime) -> datetime | None:
    """Return the first occurrence strictly after ``reference`` in UTC.

    Wall-clock arithmetic happens in the schedule's timezone. Returns None only
    for a consumed ``date`` schedule or one without a date.
    """
    reference = _as_utc(reference)
    if spec.type == SCHEDULE_DATE:
        if spec.last_run_at is not None or spec.date is None:
            return None
        return _as_utc(spec.date)

    zone = resolve_zone(spec.timezone)
    local_reference = reference.astimezone(zone)
    hour, minute = _time_parts(spec.time_of_day)

    def at(day: date) -> datetime:
        return datetime.combine(day, time(hour, minute), tzinfo=zone).astimezone(timezone.utc)

    today = local_reference.date()

    if spec.type == SCHEDULE_DAILY:
        candidate = at(today)
        if candidate <= reference:
            candidate = at(today + timedelta(days=1))
        return candidate

    if spec.type == SCHEDULE_WEEKLY:
        days = set(spec.days_of_week or ()) or {today.isoweekday()}
        for offset in range(0, 8):
            day = today + timedelta(days=offset)
            if day.isoweekday() in days:
                candidate = at(day)
                if candidate > reference:
                    return candidate
        return at(today + timedelta(days=7))

    if spec.type == SCHEDULE_MONTHLY:
        day_of_month = spec.day_of_month or today.day
        candidate = at(_clamped_date(today.year, today.month, day_of_month))
        if candidate <= reference:
            year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
            candidate = at(_clamped_date(year, month, day_of_month))
        return candidate

    logger.warning("schedule_type_unknown type=%s", spec.type)
    return None
