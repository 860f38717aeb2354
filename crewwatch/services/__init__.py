"""Service layer for crew monitoring."""
from crewwatch.services.supabase_client import SupabaseClient, SupabaseError, get_supabase_client
from crewwatch.services.crew_gateway import CrewMonitoringGateway
from crewwatch.services.crew_session_service import CrewSessionService
from crewwatch.services.realtime import RealtimeChannel, RealtimeError
from crewwatch.services.crew_store import CrewMonitoringStore
from crewwatch.services.dashboard import CrewDashboard, filter_by_branch

__all__ = [
    "SupabaseClient",
    "SupabaseError",
    "get_supabase_client",
    "CrewMonitoringGateway",
    "CrewSessionService",
    "RealtimeChannel",
    "RealtimeError",
    "CrewMonitoringStore",
    "CrewDashboard",
    "filter_by_branch",
]
