"""Datetime utilities for consistent timezone handling."""
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from outreach.exceptions import InvalidTimeZone


def utcnow() -> datetime:
    """
    Get current UTC time as a timezone-aware datetime.

    Returns:
        datetime: Current UTC time with timezone info
    """
    return datetime.now(timezone.utc)


def get_zone(name: str) -> ZoneInfo:
    """
    Resolve an IANA zone name ("America/New_York").

    Raises:
        InvalidTimeZone: If the name is empty or unknown
    """
    if not name or not isinstance(name, str):
        raise InvalidTimeZone(name)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimeZone(name) from e


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive input is taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db(value: datetime | None) -> datetime | None:
    """Columns store naive UTC."""
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


def from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return as_utc(value)


def local_datetime(day: date, hour: int, minute: int, zone: ZoneInfo) -> datetime:
    """
    Wall-clock time on a calendar day in a zone.

    Times skipped by a DST jump are normalized through UTC, so 02:30 on a
    spring-forward day becomes 03:30 local.
    """
    local = datetime.combine(day, time(hour, minute), tzinfo=zone)
    return local.astimezone(timezone.utc).astimezone(zone)
