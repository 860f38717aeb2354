"""Request and response bodies for the crew session endpoints."""
from typing import Any, Optional

from pydantic import Field

from crewwatch.schemas.base import BaseSchema
from crewwatch.schemas.crew import ActivityType


class SessionStartRequest(BaseSchema):
    """Client details recorded on the session; the request's own are used when omitted."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionStartResponse(BaseSchema):
    session_id: Optional[str] = None
    tracked: bool


class EndSessionByIdRequest(BaseSchema):
    session_id: Optional[str] = None


class ActivityRequest(BaseSchema):
    activity_type: str = ActivityType.HEARTBEAT.value
    activity_data: Any = None
    current_page: Optional[str] = None


class PageViewRequest(BaseSchema):
    page: str = Field(min_length=1)


class ActionRequest(BaseSchema):
    action: str = Field(min_length=1)
    data: Optional[dict[str, Any]] = None


class SuccessResponse(BaseSchema):
    success: bool
    message: Optional[str] = None
