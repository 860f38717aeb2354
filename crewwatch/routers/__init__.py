"""API routers."""
from crewwatch.routers import crew_monitoring, crew_sessions, health

__all__ = ['crew_monitoring', 'crew_sessions', 'health']
