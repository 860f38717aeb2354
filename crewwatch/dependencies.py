"""FastAPI dependencies."""
import logging

from fastapi import Depends, Header, HTTPException, Request

from crewwatch.config import get_settings
from crewwatch.schemas.crew import AuthUser
from crewwatch.services.crew_gateway import CrewMonitoringGateway
from crewwatch.services.crew_session_service import CrewSessionService
from crewwatch.services.crew_store import CrewMonitoringStore
from crewwatch.services.supabase_client import SupabaseError

logger = logging.getLogger(__name__)


def _mask_identifier(identifier: str) -> str:
    """Mask a sensitive identifier for logging (e.g., user id, token)."""
    if not identifier:
        return "<missing>"
    if len(identifier) <= 8:
        return f"{identifier[:2]}...{identifier[-2:]}"
    return f"{identifier[:4]}...{identifier[-4:]}"


def get_store(request: Request) -> CrewMonitoringStore:
    """The application's monitoring store, created during startup."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="monitoring_unavailable")
    return store


def get_gateway(request: Request) -> CrewMonitoringGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="monitoring_unavailable")
    return gateway


def get_access_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    """Extract the bearer token from the Authorization header."""
    if not authorization:
        raise HTTPException(status_code=401, detail="missing_credentials")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="invalid_authorization_header")
    return token.strip()


async def resolve_token_user(gateway: CrewMonitoringGateway, token: str) -> AuthUser:
    """Resolve the Supabase user behind an access token."""
    try:
        user = await gateway.client.with_access_token(token).get_current_user()
    except SupabaseError as e:
        logger.error(f"Error resolving user for token {_mask_identifier(token)}: {e.message}")
        raise HTTPException(status_code=502, detail="auth_unavailable") from e

    if not user:
        raise HTTPException(status_code=401, detail="invalid_token")
    return user


async def get_current_user(
    token: str = Depends(get_access_token),
    gateway: CrewMonitoringGateway = Depends(get_gateway),
) -> AuthUser:
    user = await resolve_token_user(gateway, token)
    logger.debug(f"Authenticated user via bearer token: {user.id}")
    return user


async def require_admin(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    """Verify that the authenticated user's email is in the admin_emails configuration."""
    if not get_settings().is_admin_email(user.email):
        logger.warning(f"Non-admin user {user.id} attempted to access crew monitoring")
        raise HTTPException(status_code=403, detail="admin_only")
    return user


def get_crew_session_service(
    token: str = Depends(get_access_token),
    gateway: CrewMonitoringGateway = Depends(get_gateway),
) -> CrewSessionService:
    """Session service acting as the caller, so every procedure runs under their token."""
    return CrewSessionService(gateway.for_access_token(token))
