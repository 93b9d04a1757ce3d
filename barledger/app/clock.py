from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

# Offsets follow the browser convention (JS `Date#getTimezoneOffset`): minutes to ADD to
# local time to get UTC, so IST (UTC+05:30) is -330. Clamped to +/- 14h.
MAX_OFFSET_MINUTES = 840


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FixedClock(Clock):
    instant: datetime

    def now(self) -> datetime:
        if self.instant.tzinfo is None:
            return self.instant.replace(tzinfo=timezone.utc)
        return self.instant.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeZoneOffset:
    minutes: int = 0

    @classmethod
    def parse(cls, raw) -> "TimeZoneOffset":
        try:
            value = int(float(str(raw if raw is not None else "0").strip() or "0"))
        except Exception:
            value = 0
        return cls(max(-MAX_OFFSET_MINUTES, min(MAX_OFFSET_MINUTES, value)))

    def to_local(self, instant: datetime) -> datetime:
        """UTC instant -> naive wall-clock datetime at the caller's location."""
        return (instant.astimezone(timezone.utc) - timedelta(minutes=self.minutes)).replace(tzinfo=None)

    def to_utc(self, local: datetime) -> datetime:
        """Naive wall-clock datetime -> aware UTC instant."""
        return (local + timedelta(minutes=self.minutes)).replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class UtcRange:
    start: datetime
    end: datetime


def local_today(clock: Clock, tz: TimeZoneOffset) -> date:
    return tz.to_local(clock.now()).date()


def month_key(clock: Clock, tz: TimeZoneOffset) -> str:
    local = tz.to_local(clock.now())
    return f"{local.year:04d}-{local.month:02d}"


def local_day_range(tz: TimeZoneOffset, day: date) -> UtcRange:
    start_local = datetime(day.year, day.month, day.day)
    return UtcRange(tz.to_utc(start_local), tz.to_utc(start_local + timedelta(days=1)))


def day_utc_range(clock: Clock, tz: TimeZoneOffset, day: Optional[date] = None) -> UtcRange:
    return local_day_range(tz, day or local_today(clock, tz))


def month_utc_range(clock: Clock, tz: TimeZoneOffset) -> UtcRange:
    local = tz.to_local(clock.now())
    start_local = datetime(local.year, local.month, 1)
    if local.month == 12:
        end_local = datetime(local.year + 1, 1, 1)
    else:
        end_local = datetime(local.year, local.month + 1, 1)
    return UtcRange(tz.to_utc(start_local), tz.to_utc(end_local))
