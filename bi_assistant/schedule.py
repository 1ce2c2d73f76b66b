import os
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import FrozenSet, Iterable, Optional
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "America/Sao_Paulo"
ALERT_TIMEZONE = os.getenv("ALERT_TIMEZONE", DEFAULT_TIMEZONE)


@dataclass(frozen=True)
class LocalMoment:
    """Wall-clock view of an instant in the alert time zone"""
    date: date
    time_of_day: str  # HH:MM
    weekday: int  # 0 = Sunday ... 6 = Saturday
    day_of_month: int


@dataclass(frozen=True)
class Schedule:
    times: FrozenSet[str]
    weekdays: FrozenSet[int] = frozenset()
    days_of_month: FrozenSet[int] = frozenset()

    @classmethod
    def build(
        cls,
        times: Optional[Iterable[str]],
        weekdays: Optional[Iterable[int]] = None,
        days_of_month: Optional[Iterable[int]] = None,
    ) -> "Schedule":
        return cls(
            times=frozenset(t for t in (normalize_time(x) for x in times or []) if t),
            weekdays=frozenset(int(d) for d in weekdays or []),
            days_of_month=frozenset(int(d) for d in days_of_month or []),
        )


def normalize_time(value: Optional[str]) -> Optional[str]:
    """'9:00', '09:00:00' -> '09:00'"""
    if not value:
        return None
    parts = str(value).strip().split(":")
    if len(parts) < 2:
        return None
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return f"{hour:02d}:{minute:02d}"


def resolve_moment(now: datetime, tz_name: str = DEFAULT_TIMEZONE) -> LocalMoment:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(tz_name))
    return LocalMoment(
        date=local.date(),
        time_of_day=local.strftime("%H:%M"),
        weekday=local.isoweekday() % 7,
        day_of_month=local.day,
    )


def schedule_matches(schedule: Schedule, moment: LocalMoment) -> bool:
    if moment.time_of_day not in schedule.times:
        return False
    if schedule.weekdays and moment.weekday not in schedule.weekdays:
        return False
    if schedule.days_of_month and moment.day_of_month not in schedule.days_of_month:
        return False
    return True
