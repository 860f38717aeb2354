"""Display formatting for crew monitoring dashboards.

Every function here is pure and must never raise: dashboards render whatever the
remote store hands back, including malformed intervals and activity payloads.
"""
import json
import logging
import re
from datetime import datetime, UTC
from typing import Any, Optional

from crewwatch.utils.datetime_helpers import parse_timestamp

logger = logging.getLogger(__name__)

ACTIVITY_PARSE_ERROR = "Error parsing activity data"
UNKNOWN_TIME = "Unknown"

# Postgres interval text: "02:05:09", "02:05:09.5", "1 day 02:05:09"
_CLOCK_RE = re.compile(r"(?:(\d+)\s+days?\s+)?(\d+):(\d+):(\d+)")
# Natural language intervals: "2 hours 30 minutes", "1 day 3 hours", "45 secs"
_UNIT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(days?|hours?|hrs?|minutes?|mins?|seconds?|secs?)\b", re.IGNORECASE)

_UNIT_SECONDS = {
    "d": 86400,
    "h": 3600,
    "m": 60,
    "s": 1,
}


def _compact(total_seconds: int) -> str:
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def parse_interval_to_seconds(value: Optional[str]) -> Optional[int]:
    """Convert an interval string to whole seconds.

    Accepts clock-shaped intervals and natural language ones. Returns None when
    nothing in the string looks like a duration.
    """
    if not value or not isinstance(value, str):
        return None

    match = _CLOCK_RE.search(value)
    if match:
        days = int(match.group(1) or 0)
        hours, minutes, seconds = (int(part) for part in match.group(2, 3, 4))
        return days * 86400 + hours * 3600 + minutes * 60 + seconds

    parts = _UNIT_RE.findall(value)
    if not parts:
        return None

    total = 0.0
    for amount, unit in parts:
        total += float(amount) * _UNIT_SECONDS[unit[0].lower()]
    return int(total)


def format_duration(value: Optional[str]) -> str:
    """Render a duration compactly: ``"2h 5m"``, ``"5m 9s"`` or ``"45s"``.

    Empty input renders ``"0m"``. Strings that are not recognisable intervals are
    returned unchanged.
    """
    if not value:
        return "0m"
    if not isinstance(value, str):
        value = str(value)

    total = parse_interval_to_seconds(value)
    if total is None:
        return value
    return _compact(total)


def format_seconds_to_hms(total_seconds: float) -> str:
    """Render seconds as ``"Xh Ym Zs"``."""
    total = max(0, int(total_seconds or 0))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes}m {seconds}s"


def calculate_duration(start: str | datetime | None, end: str | datetime | None) -> str:
    """Length of the interval between two timestamps, dropping leading zero units."""
    start_dt = parse_timestamp(start)
    end_dt = parse_timestamp(end)
    if start_dt is None or end_dt is None:
        return "0s"

    total = max(0, int((end_dt - start_dt).total_seconds()))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_time_ago(timestamp: str | datetime | None, now: Optional[datetime] = None) -> str:
    """Render how long ago a timestamp was: ``"Just now"``, ``"5m ago"``, ``"3h ago"``, ``"2d ago"``."""
    moment = parse_timestamp(timestamp)
    if moment is None:
        return UNKNOWN_TIME

    current = parse_timestamp(now) if now is not None else datetime.now(UTC)
    diff_minutes = int((current - moment).total_seconds() // 60)

    if diff_minutes < 1:
        return "Just now"
    if diff_minutes < 60:
        return f"{diff_minutes}m ago"

    diff_hours = diff_minutes // 60
    if diff_hours < 24:
        return f"{diff_hours}h ago"

    return f"{diff_hours // 24}d ago"


def _display(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def format_activity_data(activity_data: Any, activity_type: Optional[str]) -> list[str]:
    """Describe an activity payload as short display lines.

    The payload is opaque JSON (or a JSON string). Known activity types get a
    headline plus the interesting fields; unknown types dump their key/value
    pairs. Malformed payloads produce a single error placeholder line.
    """
    if activity_data is None:
        return []

    try:
        if isinstance(activity_data, str) and not activity_data.strip():
            return []
        data = json.loads(activity_data) if isinstance(activity_data, str) else activity_data
        fields = data if isinstance(data, dict) else {}

        if activity_type == "login":
            lines = ["Logged in successfully"]
            if fields.get("ip_address"):
                lines.append(f"IP: {fields['ip_address']}")
            if fields.get("user_agent"):
                lines.append(f"Device: {str(fields['user_agent']).split(' ')[0]}")
            return lines

        if activity_type == "logout":
            lines = ["Logged out"]
            if fields.get("session_duration"):
                lines.append(f"Session duration: {format_duration(fields['session_duration'])}")
            return lines

        if activity_type == "page_view":
            lines = ["Viewed page"]
            if fields.get("page"):
                lines.append(f"Page: {fields['page']}")
            return lines

        if activity_type == "heartbeat":
            lines = ["Activity heartbeat"]
            if fields.get("page"):
                lines.append(f"Current page: {fields['page']}")
            return lines

        if activity_type == "action":
            lines = ["Action performed"]
            if fields.get("action"):
                lines.append(f"Action: {_display(fields['action'])}")
            if fields.get("details"):
                lines.append(f"Details: {_display(fields['details'])}")
            return lines

        lines = ["Activity"]
        if isinstance(data, dict):
            lines.extend(f"{key}: {_display(value)}" for key, value in data.items())
        else:
            lines.append(_display(data))
        return lines

    except Exception as e:
        logger.debug(f"Unable to format activity data for {activity_type!r}: {e}")
        return [ACTIVITY_PARSE_ERROR]
