"""Crew-facing session endpoints.

Every call acts with the caller's own bearer token, so the session procedures
run as the crew member and row level security applies to them.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from crewwatch.dependencies import get_crew_session_service, get_current_user
from crewwatch.schemas.crew import AuthUser
from crewwatch.schemas.session import (
    ActionRequest,
    ActivityRequest,
    EndSessionByIdRequest,
    PageViewRequest,
    SessionStartRequest,
    SessionStartResponse,
    SuccessResponse,
)
from crewwatch.services.crew_session_service import CrewSessionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/crew", tags=["crew"])


def _require_recorded(recorded: bool, action: str) -> SuccessResponse:
    if not recorded:
        raise HTTPException(status_code=502, detail=f"Failed to {action}")
    return SuccessResponse(success=True)


@router.post("/session/start", response_model=SessionStartResponse)
async def start_session(
    request: Request,
    body: SessionStartRequest | None = None,
    user: AuthUser = Depends(get_current_user),
    service: CrewSessionService = Depends(get_crew_session_service),
):
    """Open a session for the caller. Non-crew accounts are not tracked."""
    body = body or SessionStartRequest()
    ip_address = body.ip_address or (request.client.host if request.client else None)
    user_agent = body.user_agent or request.headers.get("user-agent")

    session_id = await service.start_session(ip_address, user_agent, user=user)
    return SessionStartResponse(session_id=session_id, tracked=session_id is not None)


@router.post("/session/end", response_model=SuccessResponse)
async def end_session(
    user: AuthUser = Depends(get_current_user),
    service: CrewSessionService = Depends(get_crew_session_service),
):
    return _require_recorded(await service.end_session(user=user), "end session")


@router.post("/session/end-by-id", response_model=SuccessResponse)
async def end_session_by_id(
    body: EndSessionByIdRequest,
    user: AuthUser = Depends(get_current_user),
    service: CrewSessionService = Depends(get_crew_session_service),
):
    """Close a specific session, e.g. from a page unload beacon."""
    if not body.session_id:
        raise HTTPException(status_code=400, detail="Session ID required")

    try:
        await service.end_session_by_id(body.session_id)
    except Exception as e:
        logger.error(f"Error ending session {body.session_id} for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to end session") from e

    return SuccessResponse(success=True, message="Session ended successfully")


@router.post("/activity", response_model=SuccessResponse)
async def update_activity(
    body: ActivityRequest,
    user: AuthUser = Depends(get_current_user),
    service: CrewSessionService = Depends(get_crew_session_service),
):
    recorded = await service.update_activity(body.activity_type, body.activity_data, body.current_page)
    return _require_recorded(recorded, "record activity")


@router.post("/page-view", response_model=SuccessResponse)
async def track_page_view(
    body: PageViewRequest,
    user: AuthUser = Depends(get_current_user),
    service: CrewSessionService = Depends(get_crew_session_service),
):
    return _require_recorded(await service.track_page_view(body.page), "record page view")


@router.post("/action", response_model=SuccessResponse)
async def track_action(
    body: ActionRequest,
    user: AuthUser = Depends(get_current_user),
    service: CrewSessionService = Depends(get_crew_session_service),
):
    return _require_recorded(await service.track_action(body.action, body.data), "record action")
