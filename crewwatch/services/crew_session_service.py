"""Session lifecycle for the user behind a Supabase client.

Only active crew and admin accounts are tracked. A caller with no resolvable
user is not an error: every operation silently does nothing.
"""
import logging
from typing import Any, Optional

from crewwatch.schemas.crew import ActivityType, AuthUser
from crewwatch.services.crew_gateway import CrewMonitoringGateway
from crewwatch.services.supabase_client import SupabaseError

logger = logging.getLogger(__name__)


def _log_remote_error(action: str, error: Exception) -> None:
    if isinstance(error, SupabaseError):
        logger.error(f"Error {action}: {error.message} (details={error.describe()})")
    else:
        logger.error(f"Error {action}: {error}")


class CrewSessionService:
    """Start, end and annotate crew sessions for one authenticated client."""

    def __init__(self, gateway: CrewMonitoringGateway):
        self.gateway = gateway
        self.current_session_id: Optional[str] = None

    async def resolve_user(self) -> Optional[AuthUser]:
        """The authenticated user of the bound client, or None."""
        try:
            return await self.gateway.client.get_current_user()
        except Exception as e:
            _log_remote_error("resolving current user", e)
            return None

    async def start_session(
        self,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        user: Optional[AuthUser] = None,
    ) -> Optional[str]:
        """Open a session and return its id, or None when nothing was started."""
        user = user or await self.resolve_user()
        if not user:
            logger.info("No authenticated user found for crew session")
            return None

        try:
            member = await self.gateway.get_crew_member(user.id)
        except Exception as e:
            _log_remote_error("looking up crew member", e)
            return None

        if not member or not member.is_monitored:
            logger.info(f"User {user.id} is not an active crew member or admin, skipping crew monitoring")
            return None

        if self.current_session_id:
            logger.info("Session already active, skipping new session creation")
            return self.current_session_id

        logger.info(f"Starting crew session for user {user.id} (role={member.role})")
        try:
            session_id = await self.gateway.start_crew_session(user.id, ip_address, user_agent)
        except Exception as e:
            _log_remote_error("starting crew session", e)
            return None

        logger.info(f"Crew session started: {session_id}")
        self.current_session_id = session_id
        return session_id

    async def end_session(self, *, user: Optional[AuthUser] = None) -> bool:
        """Close the current user's active session. Returns whether the remote call succeeded."""
        user = user or await self.resolve_user()
        if not user:
            logger.info("No authenticated user found for ending crew session")
            return False

        logger.info(f"Ending crew session for user {user.id}")
        try:
            await self.gateway.end_crew_session(user_id=user.id)
        except Exception as e:
            _log_remote_error("ending crew session", e)
            return False
        finally:
            self.current_session_id = None

        logger.info("Crew session ended")
        return True

    async def end_session_by_id(self, session_id: str) -> None:
        """Close a specific session. Errors propagate to the caller."""
        await self.gateway.end_crew_session(session_id=session_id)
        if self.current_session_id == session_id:
            self.current_session_id = None
        logger.info(f"Crew session ended by id: {session_id}")

    async def update_activity(
        self,
        activity_type: str = ActivityType.HEARTBEAT.value,
        activity_data: Any = None,
        current_page: Optional[str] = None,
    ) -> bool:
        """Record an activity event for the current user."""
        user = await self.resolve_user()
        if not user:
            return False

        try:
            await self.gateway.update_crew_activity(user.id, activity_type, activity_data, current_page)
        except Exception as e:
            _log_remote_error("updating crew activity", e)
            return False

        logger.debug(f"Crew activity updated: {activity_type}")
        return True

    async def track_page_view(self, page: str) -> bool:
        return await self.update_activity(ActivityType.PAGE_VIEW.value, {"page": page}, page)

    async def track_action(self, action: str, data: Optional[dict[str, Any]] = None) -> bool:
        return await self.update_activity(ActivityType.ACTION.value, {"action": action, **(data or {})})
