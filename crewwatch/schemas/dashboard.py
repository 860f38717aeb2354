"""View models rendered by the crew monitoring dashboard."""
from datetime import date
from typing import List, Literal, Optional

from crewwatch.schemas.base import BaseSchema
from crewwatch.schemas.crew import Branch

TabId = Literal["online", "sessions", "activity", "summary"]
LoadStrategy = Literal["lazy", "eager"]


class DashboardStats(BaseSchema):
    online_now: int
    total_crew: int
    avg_session: str
    active_today: int
    total_work_hours: float
    branch_count: int


class DashboardTab(BaseSchema):
    id: TabId
    label: str
    count: int
    active: bool


class OnlineCrewRow(BaseSchema):
    user_id: str
    name: str
    email: str
    branch_name: str
    status: str
    detail: str
    current_page: Optional[str] = None


class SessionRow(BaseSchema):
    id: str
    crew_name: str
    branch_name: str
    session_start: str
    last_activity: str
    duration: str
    status: str


class ActivityRow(BaseSchema):
    id: str
    crew_name: str
    activity_type: str
    branch_name: str
    time_ago: str
    details: List[str]


class SummaryRow(BaseSchema):
    user_id: str
    name: str
    email: str
    branch_name: str
    total_hours: float
    total_sessions: int
    avg_session: str


class DashboardPanel(BaseSchema):
    """Content of the active tab: rows, or an explicit empty message."""

    tab: TabId
    title: str
    online: List[OnlineCrewRow] = []
    sessions: List[SessionRow] = []
    activity: List[ActivityRow] = []
    summary: List[SummaryRow] = []
    empty_message: Optional[str] = None


class ErrorBanner(BaseSchema):
    message: str
    failed_slices: List[str]
    can_retry: bool = True


class DashboardView(BaseSchema):
    load_strategy: LoadStrategy
    realtime_status: str
    is_loading: bool
    selected_branch: str
    branches: List[Branch]
    summary_start: date
    summary_end: date
    stats: DashboardStats
    tabs: List[DashboardTab]
    panel: DashboardPanel
    error: Optional[ErrorBanner] = None


class BranchSelection(BaseSchema):
    branch_id: str = ""


class DateRangeSelection(BaseSchema):
    start: date
    end: date
