"""API tests for the health, crew monitoring and crew session routers."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from crewwatch.dependencies import get_crew_session_service, get_current_user
from crewwatch.main import app as application
from crewwatch.routers.crew_monitoring import manager
from crewwatch.schemas.crew import AuthUser
from crewwatch.services.supabase_client import SupabaseError

ADMIN = {"Authorization": "Bearer admin-token"}
CREW = {"Authorization": "Bearer crew-token"}


@pytest.fixture
def app(store, gateway):
    users = {
        "admin-token": AuthUser(id="adm-1", email="Admin@BBQStall.test"),
        "crew-token": AuthUser(id="u-1", email="ana@bbqstall.test"),
    }

    def derive(token):
        derived = MagicMock()
        derived.get_current_user = AsyncMock(return_value=users.get(token))
        return derived

    gateway.client.with_access_token = MagicMock(side_effect=derive)
    application.state.store = store
    application.state.gateway = gateway
    application.state.dashboards = {}
    yield application
    application.dependency_overrides.clear()
    application.state.store = None
    application.state.gateway = None
    application.state.dashboards = {}


@pytest.fixture
def crew_service():
    service = MagicMock()
    service.start_session = AsyncMock(return_value="s-new")
    service.end_session = AsyncMock(return_value=True)
    service.end_session_by_id = AsyncMock(return_value=None)
    service.update_activity = AsyncMock(return_value=True)
    service.track_page_view = AsyncMock(return_value=True)
    service.track_action = AsyncMock(return_value=True)
    return service


@pytest.fixture
def crew_app(app, crew_user, crew_service):
    app.dependency_overrides[get_current_user] = lambda: crew_user
    app.dependency_overrides[get_crew_session_service] = lambda: crew_service
    return app


def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, app):
        async with _client(app) as ac:
            response = await ac.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "realtime": "DISCONNECTED"}

    @pytest.mark.asyncio
    async def test_status_reports_slices(self, app, store):
        await store.refresh_data()

        async with _client(app) as ac:
            response = await ac.get("/status")

        body = response.json()
        assert response.status_code == 200
        assert [item["name"] for item in body["slices"]] == [
            "online_crews",
            "session_history",
            "activity_logs",
            "work_hours_summary",
            "branches",
        ]
        assert all(item["last_success_at"] for item in body["slices"])


class TestAdminAuth:

    @pytest.mark.asyncio
    async def test_missing_token_is_401(self, app):
        async with _client(app) as ac:
            response = await ac.get("/admin/crew-monitoring/snapshot")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_token_is_401(self, app):
        async with _client(app) as ac:
            response = await ac.get("/admin/crew-monitoring/snapshot", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_crew_token_is_403(self, app):
        async with _client(app) as ac:
            response = await ac.get("/admin/crew-monitoring/snapshot", headers=CREW)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_auth_outage_is_502(self, app, gateway):
        gateway.client.with_access_token = MagicMock(
            return_value=MagicMock(get_current_user=AsyncMock(side_effect=SupabaseError("auth down")))
        )

        async with _client(app) as ac:
            response = await ac.get("/admin/crew-monitoring/snapshot", headers=ADMIN)

        assert response.status_code == 502


class TestCrewMonitoring:

    @pytest.mark.asyncio
    async def test_snapshot(self, app, store):
        await store.refresh_data()

        async with _client(app) as ac:
            response = await ac.get("/admin/crew-monitoring/snapshot", headers=ADMIN)

        body = response.json()
        assert response.status_code == 200
        assert len(body["online_crews"]) == 3
        assert body["selected_branch"] == ""

    @pytest.mark.asyncio
    async def test_refresh_fetches_everything(self, app, gateway):
        async with _client(app) as ac:
            response = await ac.post("/admin/crew-monitoring/refresh", headers=ADMIN)

        assert response.status_code == 200
        gateway.get_crew_online_status.assert_awaited_once()
        gateway.get_branches.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lazy_dashboard_loads_requested_tab(self, app, gateway):
        async with _client(app) as ac:
            response = await ac.get(
                "/admin/crew-monitoring/dashboard",
                params={"tab": "sessions", "strategy": "lazy"},
                headers=ADMIN,
            )

        body = response.json()
        assert response.status_code == 200
        assert body["load_strategy"] == "lazy"
        assert body["panel"]["tab"] == "sessions"
        assert len(body["panel"]["sessions"]) == 2
        gateway.get_session_history.assert_awaited_once()
        gateway.get_activity_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dashboard_date_range(self, app, gateway):
        async with _client(app) as ac:
            response = await ac.get(
                "/admin/crew-monitoring/dashboard",
                params={"tab": "summary", "strategy": "lazy", "start": "2025-03-01", "end": "2025-03-05"},
                headers=ADMIN,
            )

        assert response.status_code == 200
        assert response.json()["summary_start"] == "2025-03-01"
        start, end, _ = gateway.get_crew_work_hours_summary.await_args.args
        assert (start.isoformat(), end.isoformat()) == ("2025-03-01", "2025-03-05")

    @pytest.mark.asyncio
    async def test_dashboard_rejects_inverted_range(self, app):
        async with _client(app) as ac:
            response = await ac.get(
                "/admin/crew-monitoring/dashboard",
                params={"start": "2025-03-10", "end": "2025-03-01"},
                headers=ADMIN,
            )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_dashboard_rejects_unknown_tab(self, app):
        async with _client(app) as ac:
            response = await ac.get("/admin/crew-monitoring/dashboard", params={"tab": "payroll"}, headers=ADMIN)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_branch_selection(self, app, store):
        async with _client(app) as ac:
            response = await ac.put("/admin/crew-monitoring/branch", json={"branch_id": "b-north"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["selected_branch"] == "b-north"
        assert store.selected_branch == "b-north"

    @pytest.mark.asyncio
    async def test_notifications(self, app, store):
        await store.handle_change({"table": "crew_online_status", "type": "UPDATE", "record": {"user_id": "u-1"}})

        async with _client(app) as ac:
            response = await ac.get("/admin/crew-monitoring/notifications", headers=ADMIN)

        body = response.json()
        assert body["total_count"] == 1
        assert body["notifications"][0]["title"] == "Crew Status Update"


class TestCrewMonitoringWebSocket:

    def test_snapshot_pushed_on_connect(self, app):
        client = TestClient(app)

        with client.websocket_connect("/admin/crew-monitoring/ws?token=admin-token") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "crew_monitoring_update"
        assert message["snapshot"]["realtime_status"] == "DISCONNECTED"
        assert manager.active_connections == []

    def test_non_admin_rejected(self, app):
        client = TestClient(app)

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/admin/crew-monitoring/ws?token=crew-token") as websocket:
                websocket.receive_json()


class TestCrewSessions:

    @pytest.mark.asyncio
    async def test_start_uses_request_details(self, crew_app, crew_service, crew_user):
        async with _client(crew_app) as ac:
            response = await ac.post("/crew/session/start", headers={**CREW, "User-Agent": "GrillPad/2.1"})

        assert response.status_code == 200
        assert response.json() == {"session_id": "s-new", "tracked": True}
        ip_address, user_agent = crew_service.start_session.await_args.args
        assert user_agent == "GrillPad/2.1"
        assert crew_service.start_session.await_args.kwargs == {"user": crew_user}

    @pytest.mark.asyncio
    async def test_start_for_untracked_account(self, crew_app, crew_service):
        crew_service.start_session.return_value = None

        async with _client(crew_app) as ac:
            response = await ac.post("/crew/session/start", json={"user_agent": "Kiosk"}, headers=CREW)

        assert response.json() == {"session_id": None, "tracked": False}

    @pytest.mark.asyncio
    async def test_end_failure_is_502(self, crew_app, crew_service):
        crew_service.end_session.return_value = False

        async with _client(crew_app) as ac:
            response = await ac.post("/crew/session/end", headers=CREW)

        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_end_by_id_requires_session_id(self, crew_app, crew_service):
        async with _client(crew_app) as ac:
            response = await ac.post("/crew/session/end-by-id", json={}, headers=CREW)

        assert response.status_code == 400
        assert response.json()["detail"] == "Session ID required"
        crew_service.end_session_by_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_end_by_id_failure_is_500(self, crew_app, crew_service):
        crew_service.end_session_by_id.side_effect = SupabaseError("boom")

        async with _client(crew_app) as ac:
            response = await ac.post("/crew/session/end-by-id", json={"session_id": "s-1"}, headers=CREW)

        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to end session"

    @pytest.mark.asyncio
    async def test_end_by_id_success(self, crew_app, crew_service):
        async with _client(crew_app) as ac:
            response = await ac.post("/crew/session/end-by-id", json={"session_id": "s-1"}, headers=CREW)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Session ended successfully"}
        crew_service.end_session_by_id.assert_awaited_once_with("s-1")

    @pytest.mark.asyncio
    async def test_activity_endpoints(self, crew_app, crew_service):
        async with _client(crew_app) as ac:
            activity = await ac.post(
                "/crew/activity",
                json={"activity_type": "heartbeat", "activity_data": {"page": "/grill"}, "current_page": "/grill"},
                headers=CREW,
            )
            page_view = await ac.post("/crew/page-view", json={"page": "/orders"}, headers=CREW)
            action = await ac.post("/crew/action", json={"action": "refund", "data": {"order": 42}}, headers=CREW)

        assert [r.status_code for r in (activity, page_view, action)] == [200, 200, 200]
        crew_service.update_activity.assert_awaited_once_with("heartbeat", {"page": "/grill"}, "/grill")
        crew_service.track_page_view.assert_awaited_once_with("/orders")
        crew_service.track_action.assert_awaited_once_with("refund", {"order": 42})

    @pytest.mark.asyncio
    async def test_blank_page_is_validation_error(self, crew_app):
        async with _client(crew_app) as ac:
            response = await ac.post("/crew/page-view", json={"page": ""}, headers=CREW)

        assert response.status_code == 422
        assert response.json()["detail"] == "Request validation failed"

    @pytest.mark.asyncio
    async def test_crew_routes_require_token(self, app):
        async with _client(app) as ac:
            response = await ac.post("/crew/session/end")

        assert response.status_code == 401
