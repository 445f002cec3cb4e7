"""Calendar-day helpers pinned to the Asia/Tokyo timezone."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

TOKYO = ZoneInfo("Asia/Tokyo")


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Read naive datetimes as Tokyo wall-clock time; aware ones pass through.

    Notion reports date-times without an offset in the workspace timezone,
    so JST is the only reading that agrees with the task mapper.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=TOKYO)
    return value


def tokyo_day(value: datetime) -> date:
    """Calendar day in Tokyo containing the given instant."""
    return ensure_aware(value).astimezone(TOKYO).date()


def start_of_tokyo_day(value: datetime) -> datetime:
    """Midnight (JST) of the Tokyo day containing the given instant."""
    return datetime.combine(tokyo_day(value), time.min, tzinfo=TOKYO)


def tokyo_midnight(day: date) -> datetime:
    """Midnight (JST) of a calendar day."""
    return datetime.combine(day, time.min, tzinfo=TOKYO)


def day_string(value: datetime) -> str:
    """Format the Tokyo day of an instant as yyyy-MM-dd."""
    return tokyo_day(value).isoformat()


def isoformat_tokyo(value: datetime) -> str:
    """Format an instant in JST with millisecond precision."""
    return ensure_aware(value).astimezone(TOKYO).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class DateBoundaries:
    """Half-open interval [start_of_day, start_of_tomorrow) of one Tokyo day."""
    start_of_day: datetime
    start_of_tomorrow: datetime

    @classmethod
    def for_date(cls, target: datetime) -> "DateBoundaries":
        start = start_of_tokyo_day(target)
        # Step one calendar day, not 24 hours.
        tomorrow = tokyo_midnight(start.date() + timedelta(days=1))
        return cls(start_of_day=start, start_of_tomorrow=tomorrow)

    def contains(self, value: Optional[datetime]) -> bool:
        if value is None:
            return False
        value = ensure_aware(value)
        return self.start_of_day <= value < self.start_of_tomorrow
