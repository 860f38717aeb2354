"""Crew monitoring dashboard.

Renders the store's projections as four tabs (online, sessions, activity,
summary) with branch filtering and a date range for the summary. The
dashboard never talks to the network itself; it only asks the store to fetch.

Two loading policies are supported:

* ``eager``: everything is fetched up front through ``store.refresh_data()``.
* ``lazy``: only online status and branches load up front; the other tabs are
  fetched the first time they are selected, and the active tab is re-fetched
  when the branch filter or summary date range changes.

Every fetch covers all branches and the branch filter is applied when
rendering, so a tab loaded under one selection is still correct under another.
"""
import asyncio
import logging
from datetime import date, datetime, UTC
from typing import Iterable, Optional, Sequence, TypeVar

from crewwatch.config import LOAD_STRATEGIES
from crewwatch.schemas.crew import (
    Branch,
    CrewActivityLog,
    CrewOnlineStatus,
    CrewSession,
    CrewWorkHoursSummary,
    DateRange,
)
from crewwatch.schemas.dashboard import (
    ActivityRow,
    DashboardPanel,
    DashboardStats,
    DashboardTab,
    DashboardView,
    ErrorBanner,
    OnlineCrewRow,
    SessionRow,
    SummaryRow,
)
from crewwatch.services.crew_store import CrewMonitoringStore
from crewwatch.utils.datetime_helpers import ensure_utc
from crewwatch.utils.formatting import (
    format_activity_data,
    format_duration,
    format_seconds_to_hms,
    format_time_ago,
    parse_interval_to_seconds,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABS = ("online", "sessions", "activity", "summary")

TAB_LABELS = {
    "online": "Online Now",
    "sessions": "Sessions",
    "activity": "Activity",
    "summary": "Summary",
}

TAB_TITLES = {
    "online": "Currently Online",
    "sessions": "Session History",
    "activity": "Recent Activity",
    "summary": "Work Hours Summary",
}

EMPTY_MESSAGES = {
    "online": "No crew members online",
    "sessions": "No session history found",
    "activity": "No activity logs found",
    "summary": "No work hours recorded for this period",
}

ERROR_MESSAGE = "Some crew monitoring data could not be loaded. Showing the last known values."


def filter_by_branch(items: Iterable[T], selected_branch: str, branches: Sequence[Branch] = ()) -> list[T]:
    """Keep the items belonging to the selected branch.

    An empty selection returns every item in its original order. Otherwise an
    item matches on its ``branch_id`` or on its ``branch_name`` equal to either
    the selection itself or the name of the branch whose id is the selection.
    """
    items = list(items)
    if not selected_branch:
        return items

    names = {branch.name for branch in branches if branch.id == selected_branch}
    names.add(selected_branch)

    return [
        item
        for item in items
        if getattr(item, "branch_id", None) == selected_branch
        or getattr(item, "branch_name", None) in names
    ]


def _average_session(summary: Sequence[CrewWorkHoursSummary]) -> str:
    if not summary:
        return format_seconds_to_hms(0)
    total = sum(parse_interval_to_seconds(row.avg_session_duration) or 0 for row in summary)
    return format_seconds_to_hms(total / len(summary))


def _format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "Unknown"
    return ensure_utc(value).strftime("%Y-%m-%d %H:%M:%S")


class CrewDashboard:
    """Tabbed view over a :class:`CrewMonitoringStore`."""

    def __init__(
        self,
        store: CrewMonitoringStore,
        load_strategy: Optional[str] = None,
        today: Optional[date] = None,
    ):
        self.store = store
        self.load_strategy = load_strategy or store.settings.dashboard_load_strategy
        if self.load_strategy not in LOAD_STRATEGIES:
            raise ValueError(f"Unsupported load strategy: {self.load_strategy}")

        self.active_tab = "online"
        self.date_range = DateRange.last_days(store.settings.summary_default_days, today)
        self._loaded_tabs: set[str] = set()

    @property
    def loaded_tabs(self) -> frozenset[str]:
        return frozenset(self._loaded_tabs)

    async def load(self) -> None:
        """Initial load according to the strategy. Also used to retry after errors."""
        if self.load_strategy == "eager":
            await self.store.refresh_data()
            self._loaded_tabs.update(TABS)
            return

        await asyncio.gather(self.store.fetch_online_crews(), self.store.fetch_branches())
        self._loaded_tabs.add("online")
        if self.active_tab != "online":
            await self._load_tab(self.active_tab)

    async def retry(self) -> None:
        await self.load()

    async def _load_tab(self, tab: str) -> None:
        if tab == "sessions":
            await self.store.fetch_session_history()
        elif tab == "activity":
            await self.store.fetch_activity_logs()
        elif tab == "summary":
            # Always every branch; render() applies the branch filter, so the
            # cached summary stays valid when the selection changes.
            await self.store.fetch_work_hours_summary(self.date_range.start, self.date_range.end)
        else:
            await self.store.fetch_online_crews()
        self._loaded_tabs.add(tab)

    async def select_tab(self, tab: str) -> None:
        if tab not in TABS:
            raise ValueError(f"Unknown tab: {tab}")
        self.active_tab = tab
        if self.load_strategy == "lazy" and tab not in self._loaded_tabs:
            await self._load_tab(tab)

    async def set_branch(self, branch_id: Optional[str]) -> None:
        await self.store.set_selected_branch(branch_id)
        if self.load_strategy == "lazy" and self.active_tab != "online":
            await self._load_tab(self.active_tab)

    async def set_date_range(self, start: date, end: date) -> None:
        """Change the summary range; raises ValueError when start is after end."""
        self.date_range = DateRange(start=start, end=end)

        if self.load_strategy == "eager" or self.active_tab == "summary":
            await self._load_tab("summary")
        else:
            self._loaded_tabs.discard("summary")

    # --- Rendering -----------------------------------------------------------------

    def render(self, now: Optional[datetime] = None) -> DashboardView:
        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        store = self.store
        branches = store.branches.value
        selected = store.selected_branch

        online = filter_by_branch(store.online_crews.value, selected, branches)
        sessions = filter_by_branch(store.session_history.value, selected, branches)
        activity = filter_by_branch(store.activity_logs.value, selected, branches)
        summary = filter_by_branch(store.work_hours_summary.value, selected, branches)

        online_now = sum(1 for crew in online if crew.is_online)
        stats = DashboardStats(
            online_now=online_now,
            total_crew=len(online),
            avg_session=_average_session(summary),
            active_today=len({
                log.crew_email for log in activity if ensure_utc(log.created_at).date() == now.date()
            }),
            total_work_hours=round(sum(row.total_hours for row in summary), 2),
            branch_count=len({crew.branch_name for crew in online}),
        )

        counts = {
            "online": online_now,
            "sessions": len(sessions),
            "activity": len(activity),
            "summary": len(summary),
        }
        tabs = [
            DashboardTab(id=tab, label=TAB_LABELS[tab], count=counts[tab], active=tab == self.active_tab)
            for tab in TABS
        ]

        return DashboardView(
            load_strategy=self.load_strategy,
            realtime_status=store.realtime_status,
            is_loading=store.is_loading,
            selected_branch=selected,
            branches=list(branches),
            summary_start=self.date_range.start,
            summary_end=self.date_range.end,
            stats=stats,
            tabs=tabs,
            panel=self._panel(online, sessions, activity, summary, now),
            error=self._error_banner(),
        )

    def _panel(
        self,
        online: list[CrewOnlineStatus],
        sessions: list[CrewSession],
        activity: list[CrewActivityLog],
        summary: list[CrewWorkHoursSummary],
        now: datetime,
    ) -> DashboardPanel:
        tab = self.active_tab
        panel = DashboardPanel(tab=tab, title=TAB_TITLES[tab])

        if tab == "online":
            panel.online = [
                OnlineCrewRow(
                    user_id=crew.user_id,
                    name=crew.name,
                    email=crew.email,
                    branch_name=crew.branch_name,
                    status="Online" if crew.is_online else "Offline",
                    detail=(
                        format_duration(crew.session_duration)
                        if crew.is_online
                        else format_time_ago(crew.last_seen, now)
                    ),
                    current_page=crew.current_page,
                )
                for crew in online
            ]
            rows = panel.online
        elif tab == "sessions":
            panel.sessions = [
                SessionRow(
                    id=session.id,
                    crew_name=session.crew_name,
                    branch_name=session.branch_name,
                    session_start=_format_timestamp(session.session_start),
                    last_activity=format_time_ago(session.last_activity, now),
                    duration=session.duration(now),
                    status="Active" if session.is_active else "Ended",
                )
                for session in sessions
            ]
            rows = panel.sessions
        elif tab == "activity":
            panel.activity = [
                ActivityRow(
                    id=log.id,
                    crew_name=log.crew_name,
                    activity_type=log.activity_type,
                    branch_name=log.branch_name,
                    time_ago=format_time_ago(log.created_at, now),
                    details=format_activity_data(log.activity_data, log.activity_type),
                )
                for log in activity
            ]
            rows = panel.activity
        else:
            panel.summary = [
                SummaryRow(
                    user_id=row.user_id,
                    name=row.name,
                    email=row.email,
                    branch_name=row.branch_name,
                    total_hours=round(row.total_hours, 2),
                    total_sessions=row.total_sessions,
                    avg_session=format_duration(row.avg_session_duration),
                )
                for row in summary
            ]
            rows = panel.summary

        if not rows:
            panel.empty_message = EMPTY_MESSAGES[tab]
        return panel

    def _error_banner(self) -> Optional[ErrorBanner]:
        failed = [item.name for item in self.store.slices if item.last_error]
        if not failed:
            return None
        return ErrorBanner(message=ERROR_MESSAGE, failed_slices=failed)
