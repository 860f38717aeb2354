"""Background tasks keeping crew sessions honest."""
import asyncio
import logging
from datetime import datetime, UTC

from crewwatch.schemas.crew import ActivityType
from crewwatch.schemas.realtime import RealtimeStatus
from crewwatch.services.crew_gateway import CrewMonitoringGateway
from crewwatch.services.crew_store import CrewMonitoringStore
from crewwatch.services.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

# Track if cleanup is running to prevent concurrent executions
_cleanup_task_running = False


async def run_stale_session_cleanup(gateway: CrewMonitoringGateway) -> bool:
    """Close sessions whose heartbeats stopped arriving.

    Returns False when skipped because a previous run is still in flight or
    when the remote call failed.
    """
    global _cleanup_task_running

    if _cleanup_task_running:
        logger.debug("Stale session cleanup already running, skipping")
        return False

    _cleanup_task_running = True
    try:
        await gateway.cleanup_stale_crew_sessions()
        logger.info("Stale crew sessions cleaned up")
        return True
    except Exception as e:
        logger.error(f"Error cleaning up stale crew sessions: {e}", exc_info=True)
        return False
    finally:
        _cleanup_task_running = False


async def schedule_stale_session_cleanup(gateway: CrewMonitoringGateway, interval_minutes: int = 5) -> None:
    """Run the stale session cleanup every ``interval_minutes``."""
    logger.info(f"Starting stale session cleanup scheduler (interval: {interval_minutes}m)")

    while True:
        try:
            await asyncio.sleep(interval_minutes * 60)
            await run_stale_session_cleanup(gateway)
        except asyncio.CancelledError:
            logger.info("Stale session cleanup scheduler cancelled")
            break
        except Exception as e:
            logger.error(f"Unexpected error in stale session cleanup scheduler: {e}", exc_info=True)


async def send_crew_heartbeat(store: CrewMonitoringStore) -> bool:
    """Record a heartbeat for the store's user while the change feed is live."""
    if store.realtime_status != RealtimeStatus.SUBSCRIBED.value:
        logger.debug(f"Skipping crew heartbeat, realtime status is {store.realtime_status}")
        return False

    return await store.update_crew_activity(
        ActivityType.HEARTBEAT.value,
        {"timestamp": datetime.now(UTC).isoformat()},
    )


async def schedule_crew_heartbeat(store: CrewMonitoringStore, interval_seconds: int = 30) -> None:
    """Send a heartbeat every ``interval_seconds`` while subscribed."""
    logger.info(f"Starting crew heartbeat scheduler (interval: {interval_seconds}s)")

    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await send_crew_heartbeat(store)
        except asyncio.CancelledError:
            logger.info("Crew heartbeat scheduler cancelled")
            break
        except Exception as e:
            logger.error(f"Unexpected error in crew heartbeat scheduler: {e}", exc_info=True)


def session_refresh_delay(client: SupabaseClient, margin_seconds: int) -> float | None:
    """Seconds to wait before refreshing the client's session, or None if it cannot be refreshed."""
    remaining = client.seconds_until_expiry()
    if remaining is None or not client.refresh_token:
        return None
    return max(remaining - margin_seconds, 0.0)


async def refresh_service_session(client: SupabaseClient) -> bool:
    """Refresh the monitoring account's token; failures are logged."""
    if not client.refresh_token:
        logger.debug("No refresh token, skipping session refresh")
        return False

    try:
        await client.refresh_session()
        return True
    except Exception as e:
        logger.error(f"Error refreshing service account session: {e}", exc_info=True)
        return False


async def schedule_session_refresh(
    client: SupabaseClient,
    margin_seconds: int = 60,
    retry_seconds: int = 30,
) -> None:
    """Refresh the access token ``margin_seconds`` before it expires."""
    logger.info(f"Starting session refresh scheduler (margin: {margin_seconds}s)")

    while True:
        try:
            delay = session_refresh_delay(client, margin_seconds)
            if delay is None:
                await asyncio.sleep(retry_seconds)
                continue

            await asyncio.sleep(delay)
            if not await refresh_service_session(client):
                await asyncio.sleep(retry_seconds)
        except asyncio.CancelledError:
            logger.info("Session refresh scheduler cancelled")
            break
        except Exception as e:
            logger.error(f"Unexpected error in session refresh scheduler: {e}", exc_info=True)
