"""Schemas for realtime change-feed events.

The feed delivers row-level changes for the three tracked crew tables. Each
known table gets its own event class with a typed row shape; anything else is
kept as an :class:`UnknownTableChange` so new tables never break the reader.
Feed rows are raw table rows: no joins, and columns may be missing on deletes.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import ValidationError

from crewwatch.schemas.base import BaseSchema

logger = logging.getLogger(__name__)

ONLINE_STATUS_TABLE = "crew_online_status"
SESSIONS_TABLE = "crew_sessions"
ACTIVITY_LOGS_TABLE = "crew_activity_logs"
TRACKED_TABLES = (ONLINE_STATUS_TABLE, SESSIONS_TABLE, ACTIVITY_LOGS_TABLE)


class RealtimeStatus(str, Enum):
    """Connection phases reported by the realtime channel."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class OnlineStatusRow(BaseSchema):
    user_id: Optional[str] = None
    is_online: Optional[bool] = None
    last_seen: Optional[datetime] = None
    current_page: Optional[str] = None


class SessionRow(BaseSchema):
    id: Optional[str] = None
    user_id: Optional[str] = None
    branch_id: Optional[str] = None
    session_start: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    is_active: Optional[bool] = None


class ActivityLogRow(BaseSchema):
    id: Optional[str] = None
    user_id: Optional[str] = None
    branch_id: Optional[str] = None
    activity_type: Optional[str] = None
    activity_data: Any = None
    created_at: Optional[datetime] = None


class _ChangeBase(BaseSchema):
    event_type: ChangeType
    commit_timestamp: Optional[datetime] = None


class OnlineStatusChange(_ChangeBase):
    table: Literal["crew_online_status"] = ONLINE_STATUS_TABLE
    new: Optional[OnlineStatusRow] = None
    old: Optional[OnlineStatusRow] = None


class SessionChange(_ChangeBase):
    table: Literal["crew_sessions"] = SESSIONS_TABLE
    new: Optional[SessionRow] = None
    old: Optional[SessionRow] = None


class ActivityLogChange(_ChangeBase):
    table: Literal["crew_activity_logs"] = ACTIVITY_LOGS_TABLE
    new: Optional[ActivityLogRow] = None
    old: Optional[ActivityLogRow] = None


class UnknownTableChange(BaseSchema):
    """Change on a table this service does not track; rows stay untyped."""

    table: str
    event_type: Optional[str] = None
    commit_timestamp: Any = None
    new: Optional[dict[str, Any]] = None
    old: Optional[dict[str, Any]] = None


ChangeEvent = Union[OnlineStatusChange, SessionChange, ActivityLogChange, UnknownTableChange]

_EVENT_CLASSES = {
    ONLINE_STATUS_TABLE: OnlineStatusChange,
    SESSIONS_TABLE: SessionChange,
    ACTIVITY_LOGS_TABLE: ActivityLogChange,
}


def _row(value: Any) -> Optional[dict[str, Any]]:
    """Deletes and inserts send ``{}`` for the missing side of the change."""
    if isinstance(value, dict) and value:
        return value
    return None


def parse_change_event(payload: dict[str, Any]) -> ChangeEvent:
    """Build a typed change event from a ``postgres_changes`` payload.

    Accepts both the wire shape (``type``/``record``/``old_record``) and the
    client shape (``eventType``/``new``/``old``). Payloads for untracked tables,
    or tracked-table payloads that fail validation, become ``UnknownTableChange``.
    """
    table = str(payload.get("table") or "")
    event_type = payload.get("eventType") or payload.get("type")
    new = _row(payload.get("new", payload.get("record")))
    old = _row(payload.get("old", payload.get("old_record")))
    commit_timestamp = payload.get("commit_timestamp")

    event_class = _EVENT_CLASSES.get(table)
    if event_class is not None:
        try:
            return event_class(
                event_type=event_type,
                new=new,
                old=old,
                commit_timestamp=commit_timestamp,
            )
        except ValidationError as e:
            logger.warning(f"Malformed change event for {table}: {e}")

    return UnknownTableChange(
        table=table,
        event_type=str(event_type) if event_type is not None else None,
        new=new,
        old=old,
        commit_timestamp=commit_timestamp,
    )
