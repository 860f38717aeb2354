"""Health check endpoints."""
import logging

from fastapi import APIRouter, Request

from crewwatch.config import get_settings
from crewwatch.schemas.realtime import RealtimeStatus
from crewwatch.version import APP_VERSION

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for monitoring."""
    store = getattr(request.app.state, "store", None)
    return {
        "status": "ok",
        "realtime": store.realtime_status if store else RealtimeStatus.DISCONNECTED.value,
    }


@router.get("/status")
async def service_status(request: Request):
    """Version, environment and freshness of each cached projection."""
    settings = get_settings()
    store = getattr(request.app.state, "store", None)

    if store is None:
        return {
            "version": APP_VERSION,
            "environment": settings.environment,
            "realtime_status": RealtimeStatus.DISCONNECTED.value,
            "is_loading": False,
            "slices": [],
        }

    return {
        "version": APP_VERSION,
        "environment": settings.environment,
        "realtime_status": store.realtime_status,
        "is_loading": store.is_loading,
        "slices": [item.state().model_dump(mode="json") for item in store.slices],
    }
