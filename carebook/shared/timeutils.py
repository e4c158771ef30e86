"""Shared date/time helpers

Stored datetimes are naive UTC (SQLAlchemy DateTime without tz); instants
exchanged in JSON use the ``YYYY-MM-DDTHH:MM:SS.mmmZ`` form.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as naive UTC, matching what the database stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_instant(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 string into an aware UTC datetime.

    A trailing ``Z`` or ``+00:00`` and a missing offset all mean UTC.
    Returns None for anything that does not parse.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_iso_instant(value: datetime) -> str:
    """Format as ``2025-03-01T10:00:00.000Z``"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return f"{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"
