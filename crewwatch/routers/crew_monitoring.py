"""Admin crew monitoring API with WebSocket support.

REST endpoints expose the monitoring store and the rendered dashboard; the
WebSocket pushes a fresh store snapshot whenever the store changes (fetch
applied or failed, realtime phase change, branch filter change).
"""
import asyncio
import logging
from datetime import date, datetime, UTC
from typing import Dict, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from crewwatch.config import get_settings
from crewwatch.dependencies import get_store, require_admin, resolve_token_user
from crewwatch.schemas.crew import AuthUser
from crewwatch.schemas.dashboard import BranchSelection, DashboardView, LoadStrategy, TabId
from crewwatch.schemas.snapshot import NotificationsResponse, StoreSnapshot
from crewwatch.services.crew_store import CrewMonitoringStore
from crewwatch.services.dashboard import CrewDashboard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/crew-monitoring", tags=["crew-monitoring"])

# Dashboards share one store; view state changes are serialized
_dashboard_lock = asyncio.Lock()


async def get_dashboard(request: Request, store: CrewMonitoringStore, strategy: Optional[str]) -> CrewDashboard:
    """Return the dashboard for a load strategy, creating and loading it on first use."""
    dashboards: Optional[Dict[str, CrewDashboard]] = getattr(request.app.state, "dashboards", None)
    if dashboards is None:
        dashboards = {}
        request.app.state.dashboards = dashboards

    strategy = strategy or store.settings.dashboard_load_strategy
    dashboard = dashboards.get(strategy)
    if dashboard is None:
        dashboard = CrewDashboard(store, strategy)
        dashboards[strategy] = dashboard
        await dashboard.load()
    return dashboard


@router.get("/dashboard", response_model=DashboardView)
async def get_dashboard_view(
    request: Request,
    tab: TabId = "online",
    strategy: Optional[LoadStrategy] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    _admin: AuthUser = Depends(require_admin),
    store: CrewMonitoringStore = Depends(get_store),
):
    """Render the dashboard for a tab, optionally changing the summary range."""
    async with _dashboard_lock:
        dashboard = await get_dashboard(request, store, strategy)

        if start is not None or end is not None:
            new_start = start or dashboard.date_range.start
            new_end = end or dashboard.date_range.end
            if new_start > new_end:
                raise HTTPException(status_code=400, detail="start must not be after end")
            if (new_start, new_end) != (dashboard.date_range.start, dashboard.date_range.end):
                await dashboard.set_date_range(new_start, new_end)

        await dashboard.select_tab(tab)
        return dashboard.render()


@router.post("/refresh", response_model=StoreSnapshot)
async def refresh(
    _admin: AuthUser = Depends(require_admin),
    store: CrewMonitoringStore = Depends(get_store),
):
    """Re-fetch every projection. Failed slices keep their last value."""
    await store.refresh_data()
    return store.snapshot()


@router.put("/branch", response_model=StoreSnapshot)
async def select_branch(
    request: Request,
    selection: BranchSelection,
    _admin: AuthUser = Depends(require_admin),
    store: CrewMonitoringStore = Depends(get_store),
):
    """Set the branch filter; an empty id selects all branches."""
    async with _dashboard_lock:
        dashboards: Dict[str, CrewDashboard] = getattr(request.app.state, "dashboards", None) or {}
        if dashboards:
            for dashboard in dashboards.values():
                await dashboard.set_branch(selection.branch_id)
        else:
            await store.set_selected_branch(selection.branch_id)
    return store.snapshot()


@router.get("/snapshot", response_model=StoreSnapshot)
async def get_snapshot(
    _admin: AuthUser = Depends(require_admin),
    store: CrewMonitoringStore = Depends(get_store),
):
    return store.snapshot()


@router.get("/notifications", response_model=NotificationsResponse)
async def get_notifications(
    limit: int = Query(default=20, ge=1, le=100),
    _admin: AuthUser = Depends(require_admin),
    store: CrewMonitoringStore = Depends(get_store),
):
    """Most recent change notifications, newest first."""
    notifications = list(store.notifications)
    return NotificationsResponse(notifications=notifications[:limit], total_count=len(notifications))


def snapshot_message(store: CrewMonitoringStore) -> dict:
    return {
        "type": "crew_monitoring_update",
        "snapshot": store.snapshot().model_dump(mode="json"),
        "timestamp": datetime.now(UTC).isoformat(),
    }


class ConnectionManager:
    """Manages WebSocket connections for crew monitoring updates."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self._store: Optional[CrewMonitoringStore] = None

    async def connect(self, websocket: WebSocket, store: CrewMonitoringStore):
        """Accept the connection, send the current snapshot and follow the store."""
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"New crew monitoring WebSocket connection. Total={len(self.active_connections)}")

        if self._store is not store:
            if self._store is not None:
                self._store.remove_listener(self.on_store_change)
            store.add_listener(self.on_store_change)
            self._store = store

        await websocket.send_json(snapshot_message(store))

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection; stop following the store when none remain."""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"Crew monitoring WebSocket disconnected. Total={len(self.active_connections)}")

        if not self.active_connections and self._store is not None:
            self._store.remove_listener(self.on_store_change)
            self._store = None

    async def broadcast(self, message: dict):
        """Broadcast a message to all connected clients."""
        if not self.active_connections:
            return

        disconnected = []
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error sending to WebSocket: {e}")
                disconnected.append(connection)

        for connection in disconnected:
            self.disconnect(connection)

    async def on_store_change(self, store: CrewMonitoringStore):
        await self.broadcast(snapshot_message(store))


# Global connection manager
manager = ConnectionManager()


async def authenticate_websocket(websocket: WebSocket) -> Optional[AuthUser]:
    """Authenticate an admin WebSocket using the ``token`` query parameter."""
    token = websocket.query_params.get("token")
    if not token:
        logger.warning("Crew monitoring WebSocket connection attempted without token")
        return None

    gateway = getattr(websocket.app.state, "gateway", None)
    if gateway is None:
        return None

    try:
        user = await resolve_token_user(gateway, token)
    except HTTPException as e:
        logger.warning(f"Crew monitoring WebSocket authentication failed: {e.detail}")
        return None

    if not get_settings().is_admin_email(user.email):
        logger.warning(f"Non-admin user {user.id} attempted to open crew monitoring WebSocket")
        return None
    return user


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for live crew monitoring snapshots.

    Requires an admin access token in the query params (?token=...).
    """
    user = await authenticate_websocket(websocket)
    store = getattr(websocket.app.state, "store", None)

    if not user or store is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication required")
        logger.info("Crew monitoring WebSocket rejected: authentication failed")
        return

    await manager.connect(websocket, store)

    try:
        # Updates are pushed by the store listener; inbound messages are ignored
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Crew monitoring WebSocket error for user {user.id}: {e}")
    finally:
        manager.disconnect(websocket)
        logger.info(f"Crew monitoring WebSocket closed for user {user.id}")
