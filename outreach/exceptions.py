"""Exceptions raised by the outreach scheduler."""
from typing import Optional


class OutreachError(Exception):
    """Base exception for all outreach errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class InvalidSendAtFormat(OutreachError, ValueError):
    """send_at is not an int hour, "H", or "H:MM" string."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid send_at format: {value!r}. Expected Integer or String.")


class SendAtOutOfRange(OutreachError, ValueError):
    """send_at parsed, but the hour or minute is outside the clock."""

    def __init__(self, value, *, field: str, number: int):
        self.value = value
        self.field = field
        self.number = number
        limit = "0-23" if field == "hour" else "0-59"
        super().__init__(
            f"Invalid send_at {field}: {number} (from {value!r}). {field.capitalize()} must be {limit}."
        )


class InvalidTimeZone(OutreachError, ValueError):
    def __init__(self, time_zone):
        self.time_zone = time_zone
        super().__init__(f"Invalid time zone: {time_zone}")


class CatalogError(OutreachError):
    """Campaign catalog was defined inconsistently."""


class SchedulerRunError(OutreachError):
    """One or more enrollments failed during a scheduler cycle."""

    def __init__(self, failures: list[tuple[int, BaseException]]):
        self.failures = failures
        ids = [membership_id for membership_id, _ in failures]
        super().__init__(
            f"{len(failures)} enrollment(s) failed during scheduler run",
            {"membership_ids": ids},
        )
