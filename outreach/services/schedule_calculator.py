"""Schedule calculator - absolute send times for steps that use `send_at`.

Pure functions, no I/O. Every timestamp returned is timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from outreach.exceptions import InvalidSendAtFormat, InvalidTimeZone, SendAtOutOfRange
from outreach.utils.datetime_utils import as_utc, get_zone, local_datetime, utcnow


def parse_send_at(send_at: Any) -> tuple[int, int] | None:
    """
    Parse a send_at value into an (hour, minute) tuple.

    Accepts:
        - int hour: 8 -> (8, 0)
        - str hour: "8" -> (8, 0)
        - str time: "10:30" -> (10, 30); seconds ("10:30:00") are ignored

    Returns:
        (hour, minute), or None when send_at is None.

    Raises:
        InvalidSendAtFormat: unsupported type or unparsable string
        SendAtOutOfRange: hour outside 0-23 or minute outside 0-59
    """
    if send_at is None:
        return None

    # bool is an int subclass; True is not 1 o'clock.
    if isinstance(send_at, bool):
        raise InvalidSendAtFormat(send_at)

    if isinstance(send_at, int):
        hour, minute = send_at, 0
    elif isinstance(send_at, str):
        raw = send_at.strip()
        try:
            if ":" in raw:
                hour_part, minute_part = raw.split(":")[:2]
                hour, minute = int(hour_part), int(minute_part)
            else:
                hour, minute = int(raw), 0
        except ValueError as e:
            raise InvalidSendAtFormat(send_at) from e
    else:
        raise InvalidSendAtFormat(send_at)

    if not 0 <= hour <= 23:
        raise SendAtOutOfRange(send_at, field="hour", number=hour)
    if not 0 <= minute <= 59:
        raise SendAtOutOfRange(send_at, field="minute", number=minute)

    return hour, minute


def wait_seconds(wait: timedelta | int | float | None) -> int:
    if wait is None:
        return 0
    if isinstance(wait, timedelta):
        return int(wait.total_seconds())
    return int(wait)


def calculate_scheduled_for(*, step: Any, reference_time: datetime, time_zone: str) -> datetime | None:
    """
    Calculate the absolute time a step becomes eligible.

    The wait is applied to `reference_time` to pick a calendar date in
    `time_zone`; the step then runs at its send_at wall-clock time on that
    date. With a zero wait, a send_at that is not after the reference time
    rolls over to the next day.

    Args:
        step: anything with `wait` and `send_at` attributes
        reference_time: usually last_sent_at, or now for new enrollments
        time_zone: IANA zone name, e.g. "America/New_York"

    Returns:
        UTC datetime, or None if the step has no send_at (wait-relative only).

    Raises:
        InvalidTimeZone: unknown zone
    """
    parsed = parse_send_at(step.send_at)
    if parsed is None:
        return None

    zone = get_zone(time_zone)
    hour, minute = parsed
    wait = wait_seconds(step.wait)

    reference = as_utc(reference_time)
    reference_local = reference.astimezone(zone)
    target_date = (reference + timedelta(seconds=wait)).astimezone(zone).date()

    scheduled = local_datetime(target_date, hour, minute, zone)
    if wait == 0 and scheduled <= reference_local:
        scheduled = local_datetime(target_date + timedelta(days=1), hour, minute, zone)

    return scheduled.astimezone(timezone.utc)


def ensure_future_date(
    *,
    scheduled_for: datetime | None,
    send_at: Any,
    time_zone: str,
    now: datetime | None = None,
) -> datetime | None:
    """
    Roll a scheduled_for that landed on a past date forward to the next send_at.

    A next step is timed from the last step that actually fired, so after a
    skip its computed date can already be behind us. Same-day times are left
    alone (they run on the next pass); earlier dates move to today's send_at,
    or tomorrow's if today's has passed.
    """
    if scheduled_for is None:
        return None

    now = as_utc(now) if now is not None else utcnow()
    if as_utc(scheduled_for) >= now:
        return scheduled_for

    try:
        zone = get_zone(time_zone)
    except InvalidTimeZone:
        return scheduled_for

    scheduled_date = as_utc(scheduled_for).astimezone(zone).date()
    today = now.astimezone(zone).date()
    if scheduled_date >= today:
        return scheduled_for

    parsed = parse_send_at(send_at)
    if parsed is None:
        return scheduled_for

    hour, minute = parsed
    send_at_today = local_datetime(today, hour, minute, zone)
    if send_at_today > now:
        return send_at_today.astimezone(timezone.utc)
    return local_datetime(today + timedelta(days=1), hour, minute, zone).astimezone(timezone.utc)
