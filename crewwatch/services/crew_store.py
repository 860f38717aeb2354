"""In-memory mirror of the crew monitoring read models.

The store is the single owner of the cached online status, session history,
activity logs, work hours summary and branch list. Dashboards read from it and
set the branch filter; only the store mutates its slices.

Every remote read is log-and-continue: a failing fetch leaves the slice's last
value in place and records the error on the slice. Each slice numbers its
fetches, and a result is applied only if no later-issued fetch for that slice
has already been applied, so a slow response can never overwrite fresher data.
"""
import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, UTC
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from crewwatch.config import Settings, get_settings
from crewwatch.schemas.crew import (
    Branch,
    CrewActivityLog,
    CrewOnlineStatus,
    CrewSession,
    CrewWorkHoursSummary,
    DateRange,
)
from crewwatch.schemas.realtime import (
    TRACKED_TABLES,
    ActivityLogChange,
    ChangeEvent,
    OnlineStatusChange,
    RealtimeStatus,
    SessionChange,
    parse_change_event,
)
from crewwatch.schemas.snapshot import CrewNotification, SliceState, StoreSnapshot
from crewwatch.services.crew_gateway import CrewMonitoringGateway
from crewwatch.services.crew_session_service import CrewSessionService
from crewwatch.services.realtime import RealtimeChannel
from crewwatch.services.supabase_client import SupabaseError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StoreListener = Callable[["CrewMonitoringStore"], Awaitable[None]]


@dataclass
class Slice(Generic[T]):
    """One cached projection plus its fetch bookkeeping."""

    name: str
    value: list[T] = field(default_factory=list)
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    issued: int = 0
    applied: int = 0

    def begin(self) -> int:
        """Reserve the sequence number for a new fetch."""
        self.issued += 1
        return self.issued

    def apply(self, seq: int, value: list[T]) -> bool:
        """Store a fetch result unless a later fetch already landed."""
        if seq <= self.applied:
            return False
        self.value = value
        self.applied = seq
        self.last_success_at = datetime.now(UTC)
        self.last_error = None
        return True

    def fail(self, seq: int, error: Exception) -> None:
        if seq > self.applied:
            self.last_error = str(error) or type(error).__name__

    def state(self) -> SliceState:
        return SliceState(
            name=self.name,
            count=len(self.value),
            last_success_at=self.last_success_at,
            last_error=self.last_error,
        )


_CHANGE_NOTICES = {
    OnlineStatusChange: ("crew_status", "Crew Status Update", "Crew online status has been updated"),
    SessionChange: ("crew_session", "Crew Session Update", "Crew session has been updated"),
    ActivityLogChange: ("crew_activity", "Crew Activity Update", "New crew activity detected"),
}


class CrewMonitoringStore:
    """Shared state container for crew monitoring dashboards."""

    def __init__(
        self,
        gateway: CrewMonitoringGateway,
        session_service: Optional[CrewSessionService] = None,
        settings: Optional[Settings] = None,
        realtime_factory: Callable[..., RealtimeChannel] = RealtimeChannel,
    ):
        self.gateway = gateway
        self.session_service = session_service or CrewSessionService(gateway)
        self.settings = settings or get_settings()
        self._realtime_factory = realtime_factory

        self.online_crews: Slice[CrewOnlineStatus] = Slice("online_crews")
        self.session_history: Slice[CrewSession] = Slice("session_history")
        self.activity_logs: Slice[CrewActivityLog] = Slice("activity_logs")
        self.work_hours_summary: Slice[CrewWorkHoursSummary] = Slice("work_hours_summary")
        self.branches: Slice[Branch] = Slice("branches")

        self.selected_branch: str = ""
        self.realtime_status: str = RealtimeStatus.DISCONNECTED.value
        self.notifications: deque[CrewNotification] = deque(maxlen=self.settings.notification_history_size)

        self._summary_range: Optional[DateRange] = None
        self._loading = 0
        self._listeners: list[StoreListener] = []
        self._channel: Optional[RealtimeChannel] = None

    @property
    def slices(self) -> tuple[Slice, ...]:
        return (
            self.online_crews,
            self.session_history,
            self.activity_logs,
            self.work_hours_summary,
            self.branches,
        )

    @property
    def is_loading(self) -> bool:
        return self._loading > 0

    @property
    def summary_range(self) -> DateRange:
        """Range used for the work hours summary; defaults to the last N days through today."""
        if self._summary_range is not None:
            return self._summary_range
        return DateRange.last_days(self.settings.summary_default_days)

    # --- Listeners -----------------------------------------------------------------

    def add_listener(self, listener: StoreListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                await listener(self)
            except Exception as e:
                logger.error(f"Error in crew store listener: {e}")

    # --- Fetching ------------------------------------------------------------------

    async def _run_fetch(self, target: Slice, loader: Callable[[], Awaitable[list]]) -> bool:
        seq = target.begin()
        try:
            value = await loader()
        except Exception as e:
            if isinstance(e, SupabaseError):
                logger.error(f"Error fetching {target.name}: {e.message} (details={e.describe()})")
            else:
                logger.error(f"Error fetching {target.name}: {e}")
            target.fail(seq, e)
            await self._notify()
            return False

        if not target.apply(seq, value):
            logger.debug(f"Discarding stale {target.name} result (fetch {seq}, applied {target.applied})")
            return False

        await self._notify()
        return True

    async def fetch_online_crews(self) -> bool:
        return await self._run_fetch(self.online_crews, self.gateway.get_crew_online_status)

    async def fetch_session_history(self) -> bool:
        return await self._run_fetch(
            self.session_history,
            lambda: self.gateway.get_session_history(limit=self.settings.session_history_limit),
        )

    async def fetch_activity_logs(self) -> bool:
        return await self._run_fetch(
            self.activity_logs,
            lambda: self.gateway.get_activity_logs(limit=self.settings.activity_log_limit),
        )

    async def fetch_work_hours_summary(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        branch_id: Optional[str] = None,
    ) -> bool:
        """Fetch the summary; a given range becomes the store's range for later refreshes."""
        if start_date is not None or end_date is not None:
            current = self.summary_range
            self._summary_range = DateRange(
                start=start_date or current.start,
                end=end_date or current.end,
            )
        date_range = self.summary_range
        return await self._run_fetch(
            self.work_hours_summary,
            lambda: self.gateway.get_crew_work_hours_summary(date_range.start, date_range.end, branch_id or None),
        )

    async def fetch_branches(self) -> bool:
        return await self._run_fetch(self.branches, self.gateway.get_branches)

    async def refresh_data(self) -> None:
        """Fetch every projection concurrently; each slice succeeds or fails on its own."""
        self._loading += 1
        await self._notify()
        try:
            await asyncio.gather(
                self.fetch_online_crews(),
                self.fetch_session_history(),
                self.fetch_activity_logs(),
                self.fetch_work_hours_summary(),
                self.fetch_branches(),
            )
        finally:
            self._loading -= 1
            await self._notify()

    # --- Branch filter -------------------------------------------------------------

    async def set_selected_branch(self, branch_id: Optional[str]) -> None:
        """Select a branch id to filter by; empty means all branches."""
        self.selected_branch = branch_id or ""
        await self._notify()

    # --- Session lifecycle ---------------------------------------------------------

    async def start_crew_session(
        self,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Start a session for the signed-in user and refresh everything."""
        user = await self.session_service.resolve_user()
        if not user:
            return None

        session_id = await self.session_service.start_session(ip_address, user_agent, user=user)
        await self.refresh_data()
        return session_id

    async def end_crew_session(self) -> None:
        """End the signed-in user's session and refresh everything."""
        user = await self.session_service.resolve_user()
        if not user:
            return

        await self.session_service.end_session(user=user)
        await self.refresh_data()

    async def update_crew_activity(
        self,
        activity_type: str,
        activity_data: Any = None,
        current_page: Optional[str] = None,
    ) -> bool:
        """Record activity without refreshing; the change feed brings the update back."""
        return await self.session_service.update_activity(activity_type, activity_data, current_page)

    # --- Realtime ------------------------------------------------------------------

    async def handle_status(self, status: RealtimeStatus | str) -> None:
        """Track the feed's phase; becoming subscribed triggers one full refresh."""
        value = status.value if isinstance(status, RealtimeStatus) else str(status)
        previous = self.realtime_status
        self.realtime_status = value
        logger.info(f"Realtime status: {value}")
        await self._notify()

        if value == RealtimeStatus.SUBSCRIBED.value and previous != value:
            await self.refresh_data()

    async def handle_change(self, event: ChangeEvent | dict) -> bool:
        """Re-fetch only the projection the changed table feeds."""
        if isinstance(event, dict):
            event = parse_change_event(event)

        if isinstance(event, OnlineStatusChange):
            refresh = self.fetch_online_crews
        elif isinstance(event, SessionChange):
            refresh = self.fetch_session_history
        elif isinstance(event, ActivityLogChange):
            refresh = self.fetch_activity_logs
        else:
            logger.debug(f"Ignoring change on untracked table {event.table!r}")
            return False

        logger.info(f"Crew change on {event.table}: {event.event_type.value}")
        self._record_notification(event)
        return await refresh()

    def _record_notification(self, event: ChangeEvent) -> None:
        kind, title, message = _CHANGE_NOTICES[type(event)]
        row = event.new or event.old
        self.notifications.appendleft(
            CrewNotification(
                id=str(uuid.uuid4()),
                type=kind,
                title=title,
                message=message,
                table=event.table,
                event_type=event.event_type.value,
                data=row.model_dump(mode="json") if row is not None else None,
                timestamp=datetime.now(UTC),
            )
        )

    async def connect(self) -> None:
        """Open the store's realtime channel; one channel per store."""
        if self._channel is not None:
            return
        self._channel = self._realtime_factory(
            self.gateway.client,
            self.settings.realtime_channel,
            TRACKED_TABLES,
            on_event=self.handle_change,
            on_status=self.handle_status,
        )
        self.gateway.client.add_token_listener(self._channel.update_access_token)
        await self._channel.subscribe()

    async def close(self) -> None:
        """Tear down the realtime channel."""
        channel, self._channel = self._channel, None
        if channel is not None:
            self.gateway.client.remove_token_listener(channel.update_access_token)
            await channel.unsubscribe()
        self.realtime_status = RealtimeStatus.DISCONNECTED.value

    # --- Views ---------------------------------------------------------------------

    def snapshot(self) -> StoreSnapshot:
        date_range = self.summary_range
        return StoreSnapshot(
            online_crews=list(self.online_crews.value),
            session_history=list(self.session_history.value),
            activity_logs=list(self.activity_logs.value),
            work_hours_summary=list(self.work_hours_summary.value),
            branches=list(self.branches.value),
            selected_branch=self.selected_branch,
            summary_start=date_range.start,
            summary_end=date_range.end,
            is_loading=self.is_loading,
            realtime_status=self.realtime_status,
            slices=[item.state() for item in self.slices],
            generated_at=datetime.now(UTC),
        )
