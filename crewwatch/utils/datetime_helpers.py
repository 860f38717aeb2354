"""Datetime utility functions for timezone handling."""
from datetime import datetime, UTC
from typing import Optional


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware in UTC.

    Naive datetimes are treated as UTC; aware ones are converted.

    Example:
        >>> naive_dt = datetime(2025, 1, 1, 12, 0, 0)
        >>> ensure_utc(naive_dt).tzinfo == UTC
        True

        >>> ensure_utc(None) is None
        True
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_timestamp(value: str | datetime | None) -> Optional[datetime]:
    """
    Parse a timestamp coming from PostgREST or the realtime feed.

    Postgres renders ``timestamptz`` as ``2025-01-01T12:00:00.123456+00:00`` while the
    feed sends ``2025-01-01T12:00:00Z``; both are accepted. Returns None when the value
    is empty or cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Postgres may emit a space instead of "T" and a short "+00" offset
    if len(text) > 10 and text[10] == " ":
        text = text[:10] + "T" + text[11:]
    if len(text) >= 3 and text[-3] in "+-" and ":" in text[-9:-3]:
        text = text + ":00"

    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
