"""Schemas describing the monitoring store's state for API and websocket clients."""
from datetime import date, datetime
from typing import Any, List, Optional

from crewwatch.schemas.base import BaseSchema
from crewwatch.schemas.crew import (
    Branch,
    CrewActivityLog,
    CrewOnlineStatus,
    CrewSession,
    CrewWorkHoursSummary,
)


class SliceState(BaseSchema):
    """Freshness of one cached projection."""

    name: str
    count: int
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None


class CrewNotification(BaseSchema):
    """In-app notice raised when the change feed reports a crew table change."""

    id: str
    type: str
    title: str
    message: str
    table: str
    event_type: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    timestamp: datetime
    is_read: bool = False


class StoreSnapshot(BaseSchema):
    """Everything the monitoring store currently holds."""

    online_crews: List[CrewOnlineStatus]
    session_history: List[CrewSession]
    activity_logs: List[CrewActivityLog]
    work_hours_summary: List[CrewWorkHoursSummary]
    branches: List[Branch]
    selected_branch: str
    summary_start: date
    summary_end: date
    is_loading: bool
    realtime_status: str
    slices: List[SliceState]
    generated_at: datetime


class NotificationsResponse(BaseSchema):
    notifications: List[CrewNotification]
    total_count: int
