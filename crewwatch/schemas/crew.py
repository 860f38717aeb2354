"""Pydantic schemas for the crew monitoring read models.

These mirror rows of the remote ``crew_online_status``, ``crew_sessions``,
``crew_activity_logs`` and ``branches`` tables and the projections returned by
the session RPC procedures. The client never persists them; they are rebuilt on
every fetch.
"""
from datetime import date, datetime, timedelta, UTC
from enum import Enum
from typing import Any, Optional

from pydantic import Field, model_validator

from crewwatch.schemas.base import BaseSchema
from crewwatch.utils.formatting import calculate_duration

UNKNOWN = "Unknown"


class ActivityType(str, Enum):
    """Activity types accepted by ``update_crew_activity``."""

    LOGIN = "login"
    LOGOUT = "logout"
    HEARTBEAT = "heartbeat"
    PAGE_VIEW = "page_view"
    ACTION = "action"


class CrewRole(str, Enum):
    ADMIN = "admin"
    CREW = "crew"
    CUSTOMER = "customer"


MONITORED_ROLES = {CrewRole.ADMIN.value, CrewRole.CREW.value}


class CrewRef(BaseSchema):
    """Joined ``admin_users(name, email)`` columns."""

    name: Optional[str] = None
    email: Optional[str] = None


class BranchRef(BaseSchema):
    """Joined ``branches(name)`` column."""

    name: Optional[str] = None


class Branch(BaseSchema):
    id: str
    name: str


class AuthUser(BaseSchema):
    """Authenticated user as reported by the auth endpoint."""

    id: str
    email: Optional[str] = None
    user_metadata: dict[str, Any] = Field(default_factory=dict)


class CrewMember(BaseSchema):
    """Active ``admin_users`` row backing a crew or admin account."""

    id: str
    user_id: str
    role: str
    is_active: bool = True
    branch_id: Optional[str] = None

    @property
    def is_monitored(self) -> bool:
        return self.is_active and self.role in MONITORED_ROLES


class CrewOnlineStatus(BaseSchema):
    """Current presence of one crew member (one row per user)."""

    user_id: str
    name: str = UNKNOWN
    email: str = ""
    branch_name: str = UNKNOWN
    is_online: bool = False
    last_seen: Optional[datetime] = None
    session_duration: Optional[str] = None
    current_page: Optional[str] = None

    @property
    def branch_id(self) -> Optional[str]:
        return None


class _JoinedRow(BaseSchema):
    """Shared accessors for rows selected with crew and branch joins."""

    admin_users: Optional[CrewRef] = None
    branches: Optional[BranchRef] = None

    @property
    def crew_name(self) -> str:
        return (self.admin_users.name if self.admin_users else None) or UNKNOWN

    @property
    def crew_email(self) -> str:
        return (self.admin_users.email if self.admin_users else None) or UNKNOWN

    @property
    def branch_name(self) -> str:
        return (self.branches.name if self.branches else None) or UNKNOWN


class CrewSession(_JoinedRow):
    """One login-to-logout interval of a crew member."""

    id: str
    user_id: str
    admin_user_id: Optional[str] = None
    branch_id: Optional[str] = None
    session_start: datetime
    last_activity: Optional[datetime] = None
    is_active: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def duration(self, now: Optional[datetime] = None) -> str:
        """Session length: up to now while active, up to the last activity once ended."""
        if self.is_active:
            end = now or datetime.now(UTC)
        else:
            end = self.last_activity or self.session_start
        return calculate_duration(self.session_start, end)


class CrewActivityLog(_JoinedRow):
    """Append-only activity event.

    ``activity_type`` stays a plain string so rows written by newer clients with
    types this service does not know about still load.
    """

    id: str
    user_id: str
    admin_user_id: Optional[str] = None
    branch_id: Optional[str] = None
    activity_type: str
    activity_data: Any = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class CrewWorkHoursSummary(BaseSchema):
    """Server-side aggregate of work hours over a date range."""

    user_id: str
    name: str = UNKNOWN
    email: str = ""
    branch_name: str = UNKNOWN
    total_hours: float = 0.0
    total_sessions: int = 0
    avg_session_duration: Optional[str] = None

    @property
    def branch_id(self) -> Optional[str]:
        return None


class DateRange(BaseSchema):
    """Inclusive date range for the work hours summary."""

    start: date
    end: date

    @model_validator(mode="after")
    def check_order(self):
        if self.start > self.end:
            raise ValueError("start date must not be after end date")
        return self

    @classmethod
    def last_days(cls, days: int, today: Optional[date] = None) -> "DateRange":
        """Range covering the last ``days`` days through today."""
        today = today or datetime.now(UTC).date()
        return cls(start=today - timedelta(days=days), end=today)
