"""Utilities package - helper functions."""
from outreach.utils.datetime_utils import as_utc, from_db, get_zone, local_datetime, to_db, utcnow

__all__ = [
    "as_utc",
    "from_db",
    "get_zone",
    "local_datetime",
    "to_db",
    "utcnow",
]
