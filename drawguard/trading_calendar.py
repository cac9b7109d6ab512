"""Trading calendar — day boundaries in the fixed trading timezone.

Every daily concept in drawguard (reset boundary, daily peak partition,
trading-day statistics, failure-reason timestamps) goes through this module
so they all agree on which calendar day an instant belongs to.
Pure functions, no I/O.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

RESET_WINDOW_MINUTES = 5


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialise an aware datetime as a UTC ISO-8601 string for storage."""
    return moment.astimezone(timezone.utc).isoformat()


def parse_iso(value: str, assume_tz: str = "UTC") -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Naive values are interpreted in *assume_tz*.  A trailing ``Z`` is
    accepted.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(assume_tz))
    return parsed


def trading_date(
    moment: datetime, tz_name: str, day_start: Optional[time] = None
) -> str:
    """Return the trading-calendar date (``YYYY-MM-DD``) containing *moment*.

    With *day_start* the day begins at that local wall-clock time instead of
    midnight, so instants before the daily reset belong to the previous day.
    """
    local = moment.astimezone(ZoneInfo(tz_name))
    if day_start is not None:
        local -= timedelta(hours=day_start.hour, minutes=day_start.minute)
    return local.date().isoformat()


def reset_boundary(day: date, tz_name: str, reset_at: time) -> datetime:
    """Reset instant of the local calendar *day*, as an aware UTC datetime."""
    local = datetime.combine(day, reset_at, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def next_reset_time(now: datetime, tz_name: str, reset_at: time) -> datetime:
    """Return the first reset boundary strictly after *now*."""
    local_day = now.astimezone(ZoneInfo(tz_name)).date()
    boundary = reset_boundary(local_day, tz_name, reset_at)
    if boundary <= now:
        boundary = reset_boundary(local_day + timedelta(days=1), tz_name, reset_at)
    return boundary


def is_reset_window(
    now: datetime,
    tz_name: str,
    reset_at: time,
    window_minutes: int = RESET_WINDOW_MINUTES,
) -> bool:
    """``True`` during the first *window_minutes* after today's reset boundary."""
    local_day = now.astimezone(ZoneInfo(tz_name)).date()
    start = reset_boundary(local_day, tz_name, reset_at)
    return start <= now <= start + timedelta(minutes=window_minutes)


def format_local(moment: datetime, tz_name: str) -> tuple[str, str]:
    """Return ``(date, time)`` strings of *moment* in the given timezone."""
    local = moment.astimezone(ZoneInfo(tz_name))
    return local.strftime("%Y-%m-%d"), local.strftime("%H:%M:%S")
