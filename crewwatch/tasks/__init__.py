"""Background tasks for crew monitoring maintenance."""
from crewwatch.tasks.crew_maintenance import (
    run_stale_session_cleanup,
    schedule_crew_heartbeat,
    schedule_session_refresh,
    schedule_stale_session_cleanup,
)

__all__ = [
    'run_stale_session_cleanup',
    'schedule_crew_heartbeat',
    'schedule_session_refresh',
    'schedule_stale_session_cleanup',
]
