"""Typed access to the crew session procedures and monitoring tables.

Session lifecycle and work-hour aggregation live in stored procedures on the
remote database; this module only shapes their parameters and validates what
comes back. Failures surface as :class:`SupabaseError`; callers decide whether
to log-and-continue.
"""
import logging
from datetime import date
from typing import Any, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from crewwatch.schemas.crew import (
    Branch,
    CrewActivityLog,
    CrewMember,
    CrewOnlineStatus,
    CrewSession,
    CrewWorkHoursSummary,
)
from crewwatch.services.supabase_client import SupabaseClient, SupabaseError

logger = logging.getLogger(__name__)

JOINED_COLUMNS = "*, admin_users!inner(name, email), branches!inner(name)"

ModelT = TypeVar("ModelT", bound=BaseModel)


def _validate_rows(model: Type[ModelT], rows: Any, source: str) -> list[ModelT]:
    if rows is None:
        return []
    if not isinstance(rows, list):
        raise SupabaseError(f"{source} returned {type(rows).__name__}, expected a list")
    try:
        return [model.model_validate(row) for row in rows]
    except ValidationError as e:
        raise SupabaseError(f"{source} returned malformed rows: {e}") from e


def dedupe_sessions(sessions: Iterable[CrewSession]) -> list[CrewSession]:
    """Drop repeated (user_id, session_start) pairs, keeping the first occurrence.

    The joins can fan a session out when a user has several admin_users rows.
    """
    seen: set[tuple[str, Any]] = set()
    unique: list[CrewSession] = []
    for session in sessions:
        key = (session.user_id, session.session_start)
        if key in seen:
            continue
        seen.add(key)
        unique.append(session)
    return unique


class CrewMonitoringGateway:
    """Remote operations behind crew monitoring, bound to one Supabase client."""

    def __init__(self, client: SupabaseClient):
        self.client = client

    def for_access_token(self, access_token: str) -> "CrewMonitoringGateway":
        """Gateway acting on behalf of another authenticated user."""
        return CrewMonitoringGateway(self.client.with_access_token(access_token))

    # --- Session procedures --------------------------------------------------------

    async def start_crew_session(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Open a session for the user and return its id."""
        session_id = await self.client.rpc(
            "start_crew_session",
            {
                "p_user_id": user_id,
                "p_ip_address": ip_address,
                "p_user_agent": user_agent,
            },
        )
        return str(session_id) if session_id is not None else None

    async def end_crew_session(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """Close the user's active session, or a specific session by id."""
        if (user_id is None) == (session_id is None):
            raise ValueError("Provide exactly one of user_id or session_id")

        if session_id is not None:
            await self.client.rpc("end_crew_session", {"p_session_id": session_id})
        else:
            await self.client.rpc("end_crew_session", {"p_user_id": user_id})

    async def update_crew_activity(
        self,
        user_id: str,
        activity_type: str,
        activity_data: Any = None,
        current_page: Optional[str] = None,
    ) -> None:
        await self.client.rpc(
            "update_crew_activity",
            {
                "p_user_id": user_id,
                "p_activity_type": activity_type,
                "p_activity_data": activity_data,
                "p_current_page": current_page,
            },
        )

    async def cleanup_stale_crew_sessions(self) -> None:
        """Ask the database to close sessions whose heartbeats stopped."""
        await self.client.rpc("cleanup_stale_crew_sessions")

    # --- Projections ---------------------------------------------------------------

    async def get_crew_online_status(self) -> list[CrewOnlineStatus]:
        rows = await self.client.rpc("get_crew_online_status")
        return _validate_rows(CrewOnlineStatus, rows, "get_crew_online_status")

    async def get_crew_work_hours_summary(
        self,
        start_date: date,
        end_date: date,
        branch_id: Optional[str] = None,
    ) -> list[CrewWorkHoursSummary]:
        rows = await self.client.rpc(
            "get_crew_work_hours_summary",
            {
                "p_start_date": start_date.isoformat(),
                "p_end_date": end_date.isoformat(),
                "p_branch_id": branch_id or None,
            },
        )
        return _validate_rows(CrewWorkHoursSummary, rows, "get_crew_work_hours_summary")

    async def get_session_history(
        self,
        user_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[CrewSession]:
        """Most recent sessions first, joined with crew and branch names."""
        rows = await self.client.select(
            "crew_sessions",
            JOINED_COLUMNS,
            eq={"user_id": user_id, "branch_id": branch_id or None},
            order="session_start",
            limit=limit,
        )
        return dedupe_sessions(_validate_rows(CrewSession, rows, "crew_sessions"))

    async def get_activity_logs(
        self,
        user_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        activity_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[CrewActivityLog]:
        """Most recent activity first, joined with crew and branch names."""
        rows = await self.client.select(
            "crew_activity_logs",
            JOINED_COLUMNS,
            eq={
                "user_id": user_id,
                "branch_id": branch_id or None,
                "activity_type": activity_type,
            },
            order="created_at",
            limit=limit,
        )
        return _validate_rows(CrewActivityLog, rows, "crew_activity_logs")

    async def get_branches(self) -> list[Branch]:
        """Active branches, alphabetical."""
        rows = await self.client.select(
            "branches",
            "id, name",
            eq={"is_active": True},
            order="name",
            descending=False,
        )
        return _validate_rows(Branch, rows, "branches")

    async def get_crew_member(self, user_id: str) -> Optional[CrewMember]:
        """Active admin_users row for an auth user, if any."""
        rows = await self.client.select(
            "admin_users",
            "id, user_id, role, is_active, branch_id",
            eq={"user_id": user_id, "is_active": True},
            limit=1,
        )
        members = _validate_rows(CrewMember, rows, "admin_users")
        return members[0] if members else None
