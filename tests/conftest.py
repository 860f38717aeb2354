"""Pytest configuration and fixtures."""
import os
import tempfile
from datetime import datetime, UTC
from unittest.mock import AsyncMock, MagicMock

import pytest

# Pin configuration before the package reads it
os.environ["ENVIRONMENT"] = "test"
os.environ["SUPABASE_URL"] = "https://crew-test.supabase.co"
os.environ["SUPABASE_ANON_KEY"] = "test-anon-key"
os.environ["SUPABASE_SERVICE_EMAIL"] = ""
os.environ["SUPABASE_SERVICE_PASSWORD"] = ""
os.environ["ADMIN_EMAILS"] = "admin@bbqstall.test"
os.environ["DASHBOARD_LOAD_STRATEGY"] = "eager"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="crewwatch-logs-")

from crewwatch.config import get_settings
from crewwatch.schemas.crew import (
    AuthUser,
    Branch,
    CrewActivityLog,
    CrewMember,
    CrewOnlineStatus,
    CrewSession,
    CrewWorkHoursSummary,
)
from crewwatch.services.crew_store import CrewMonitoringStore

NOW = datetime(2025, 3, 14, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def branches():
    return [
        Branch(id="b-north", name="North Stall"),
        Branch(id="b-south", name="South Stall"),
    ]


@pytest.fixture
def online_crews():
    return [
        CrewOnlineStatus(
            user_id="u-1",
            name="Ana",
            email="ana@bbqstall.test",
            branch_name="North Stall",
            is_online=True,
            last_seen=NOW,
            session_duration="01:15:30",
            current_page="/orders",
        ),
        CrewOnlineStatus(
            user_id="u-2",
            name="Ben",
            email="ben@bbqstall.test",
            branch_name="South Stall",
            is_online=False,
            last_seen=datetime(2025, 3, 14, 9, 0, 0, tzinfo=UTC),
        ),
        CrewOnlineStatus(
            user_id="u-3",
            name="Cy",
            email="cy@bbqstall.test",
            branch_name="North Stall",
            is_online=True,
            last_seen=NOW,
            session_duration="00:04:10",
        ),
    ]


@pytest.fixture
def session_history():
    return [
        CrewSession.model_validate({
            "id": "s-1",
            "user_id": "u-1",
            "branch_id": "b-north",
            "session_start": "2025-03-14T10:44:30+00:00",
            "last_activity": "2025-03-14T11:59:00+00:00",
            "is_active": True,
            "admin_users": {"name": "Ana", "email": "ana@bbqstall.test"},
            "branches": {"name": "North Stall"},
        }),
        CrewSession.model_validate({
            "id": "s-2",
            "user_id": "u-2",
            "branch_id": "b-south",
            "session_start": "2025-03-14T06:00:00+00:00",
            "last_activity": "2025-03-14T09:00:00+00:00",
            "is_active": False,
            "admin_users": {"name": "Ben", "email": "ben@bbqstall.test"},
            "branches": {"name": "South Stall"},
        }),
    ]


@pytest.fixture
def activity_logs():
    return [
        CrewActivityLog.model_validate({
            "id": "a-1",
            "user_id": "u-1",
            "branch_id": "b-north",
            "activity_type": "page_view",
            "activity_data": {"page": "/orders"},
            "created_at": "2025-03-14T11:55:00+00:00",
            "admin_users": {"name": "Ana", "email": "ana@bbqstall.test"},
            "branches": {"name": "North Stall"},
        }),
        CrewActivityLog.model_validate({
            "id": "a-2",
            "user_id": "u-1",
            "branch_id": "b-north",
            "activity_type": "heartbeat",
            "activity_data": {"page": "/orders"},
            "created_at": "2025-03-14T11:50:00+00:00",
            "admin_users": {"name": "Ana", "email": "ana@bbqstall.test"},
            "branches": {"name": "North Stall"},
        }),
        CrewActivityLog.model_validate({
            "id": "a-3",
            "user_id": "u-2",
            "branch_id": "b-south",
            "activity_type": "login",
            "activity_data": '{"ip_address": "10.0.0.7", "user_agent": "Mozilla/5.0 (X11)"}',
            "created_at": "2025-03-13T08:00:00+00:00",
            "admin_users": {"name": "Ben", "email": "ben@bbqstall.test"},
            "branches": {"name": "South Stall"},
        }),
    ]


@pytest.fixture
def work_hours_summary():
    return [
        CrewWorkHoursSummary(
            user_id="u-1",
            name="Ana",
            email="ana@bbqstall.test",
            branch_name="North Stall",
            total_hours=12.5,
            total_sessions=5,
            avg_session_duration="02:30:00",
        ),
        CrewWorkHoursSummary(
            user_id="u-2",
            name="Ben",
            email="ben@bbqstall.test",
            branch_name="South Stall",
            total_hours=7.25,
            total_sessions=3,
            avg_session_duration="01:30:00",
        ),
    ]


@pytest.fixture
def crew_user():
    return AuthUser(id="u-1", email="ana@bbqstall.test")


@pytest.fixture
def crew_member():
    return CrewMember(id="cm-1", user_id="u-1", role="crew", is_active=True, branch_id="b-north")


@pytest.fixture
def gateway(online_crews, session_history, activity_logs, work_hours_summary, branches):
    """Gateway double whose reads succeed with the sample rows."""
    gateway = MagicMock()
    gateway.client = MagicMock()
    gateway.client.access_token = "service-token"
    gateway.client.anon_key = "test-anon-key"
    gateway.get_crew_online_status = AsyncMock(return_value=online_crews)
    gateway.get_session_history = AsyncMock(return_value=session_history)
    gateway.get_activity_logs = AsyncMock(return_value=activity_logs)
    gateway.get_crew_work_hours_summary = AsyncMock(return_value=work_hours_summary)
    gateway.get_branches = AsyncMock(return_value=branches)
    gateway.get_crew_member = AsyncMock(return_value=None)
    gateway.start_crew_session = AsyncMock(return_value="s-new")
    gateway.end_crew_session = AsyncMock(return_value=None)
    gateway.update_crew_activity = AsyncMock(return_value=None)
    gateway.cleanup_stale_crew_sessions = AsyncMock(return_value=None)
    return gateway


@pytest.fixture
def session_service(crew_user):
    service = MagicMock()
    service.resolve_user = AsyncMock(return_value=crew_user)
    service.start_session = AsyncMock(return_value="s-new")
    service.end_session = AsyncMock(return_value=True)
    service.update_activity = AsyncMock(return_value=True)
    return service


@pytest.fixture
def store(gateway, session_service, settings):
    return CrewMonitoringStore(gateway, session_service=session_service, settings=settings)
