"""Local-time resolution and quiet-hours guard.

Everything here is pure: no I/O, no store access.  Called many times per
tick, so zone lookups are memoised.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class LocalTime:
    """Wall-clock view of an instant in a user's timezone."""

    hour: int
    minute: int
    day_of_week: int  # 0 = Sunday … 6 = Saturday

    @property
    def minutes_of_day(self) -> int:
        return self.hour * 60 + self.minute


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Canonical storage form: UTC, second precision, explicit offset."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_iso(value: str) -> datetime:
    """Parse a stored timestamp; naive values are taken as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@lru_cache(maxsize=512)
def get_zone(tz_name: str | None) -> ZoneInfo | timezone:
    """Resolve an IANA zone name, falling back to UTC on anything unknown."""
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        logger.warning(f"Unknown timezone '{tz_name}', falling back to UTC")
        return timezone.utc


def resolve_local_time(now: datetime, tz_name: str | None) -> LocalTime:
    """Convert ``now`` into hour/minute/weekday in ``tz_name`` (UTC fallback)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(get_zone(tz_name))
    # datetime.weekday(): Monday = 0; stored preferences use Sunday = 0
    return LocalTime(
        hour=local.hour,
        minute=local.minute,
        day_of_week=(local.weekday() + 1) % 7,
    )


def local_midnight_utc(now: datetime, tz_name: str | None) -> datetime:
    """UTC instant at which the user's current local day started."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(get_zone(tz_name))
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def next_local_midnight_utc(now: datetime, tz_name: str | None) -> datetime:
    """UTC instant at which the user's next local day starts."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    zone = get_zone(tz_name)
    local = now.astimezone(zone)
    tomorrow = local.date() + timedelta(days=1)
    midnight = datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=zone)
    return midnight.astimezone(timezone.utc)


def parse_hhmm(value: str | None) -> tuple[int, int] | None:
    """Parse ``HH:MM`` (or ``HH:MM:SS``). Returns None when missing or malformed."""
    if not value:
        return None
    parts = value.strip().split(":")
    try:
        hour = int(parts[0])
        minute = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        return None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return hour, minute


def is_quiet_hours(start: str | None, end: str | None, hour: int) -> bool:
    """True when proactive sends are suppressed at local ``hour``.

    ``start < end`` is a same-day range ``[start, end)``; ``start >= end``
    wraps midnight.  A missing bound means quiet hours are off.
    """
    start_hm = parse_hhmm(start)
    end_hm = parse_hhmm(end)
    if start_hm is None or end_hm is None:
        return False

    start_hour, end_hour = start_hm[0], end_hm[0]
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def in_window(local: LocalTime, target: str | None, width_minutes: int) -> bool:
    """True when local time falls in ``[target, target + width)``, wrapping midnight."""
    hm = parse_hhmm(target)
    if hm is None:
        return False
    target_minutes = hm[0] * 60 + hm[1]
    offset = (local.minutes_of_day - target_minutes) % MINUTES_PER_DAY
    return offset < width_minutes


def slot_day_of_week(local: LocalTime, target: str | None) -> int:
    """Weekday on which the slot containing ``local`` started.

    A 23:50 slot observed at 00:05 began on the previous day.
    """
    hm = parse_hhmm(target)
    if hm is None or local.minutes_of_day >= hm[0] * 60 + hm[1]:
        return local.day_of_week
    return (local.day_of_week - 1) % 7


def hours_ago(now: datetime, hours: float) -> datetime:
    return now - timedelta(hours=hours)
