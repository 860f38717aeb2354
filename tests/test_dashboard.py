"""Tests for the crew monitoring dashboard."""
from datetime import date

import pytest

from crewwatch.services.dashboard import ERROR_MESSAGE, CrewDashboard
from crewwatch.services.supabase_client import SupabaseError

TODAY = date(2025, 3, 14)


@pytest.fixture
def eager(store):
    return CrewDashboard(store, "eager", today=TODAY)


@pytest.fixture
def lazy(store):
    return CrewDashboard(store, "lazy", today=TODAY)


class TestConstruction:

    def test_default_strategy_comes_from_settings(self, store):
        assert CrewDashboard(store).load_strategy == "eager"

    def test_unknown_strategy_rejected(self, store):
        with pytest.raises(ValueError):
            CrewDashboard(store, "sometimes")

    def test_default_range_is_last_week(self, lazy):
        assert lazy.date_range.start == date(2025, 3, 7)
        assert lazy.date_range.end == TODAY


class TestEagerLoading:

    @pytest.mark.asyncio
    async def test_load_fetches_everything(self, eager, gateway):
        await eager.load()

        gateway.get_crew_online_status.assert_awaited_once()
        gateway.get_session_history.assert_awaited_once()
        gateway.get_activity_logs.assert_awaited_once()
        gateway.get_crew_work_hours_summary.assert_awaited_once()
        gateway.get_branches.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tab_switch_does_not_fetch(self, eager, gateway):
        await eager.load()
        await eager.select_tab("activity")

        gateway.get_activity_logs.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_date_range_change_refetches_summary(self, eager, gateway):
        await eager.load()
        await eager.set_date_range(date(2025, 2, 1), date(2025, 2, 28))

        assert gateway.get_crew_work_hours_summary.await_args.args == (date(2025, 2, 1), date(2025, 2, 28), None)


class TestLazyLoading:

    @pytest.mark.asyncio
    async def test_load_fetches_online_and_branches_only(self, lazy, gateway):
        await lazy.load()

        gateway.get_crew_online_status.assert_awaited_once()
        gateway.get_branches.assert_awaited_once()
        gateway.get_session_history.assert_not_awaited()
        gateway.get_activity_logs.assert_not_awaited()
        gateway.get_crew_work_hours_summary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tab_fetched_on_first_selection_only(self, lazy, gateway):
        await lazy.load()
        await lazy.select_tab("sessions")
        await lazy.select_tab("online")
        await lazy.select_tab("sessions")

        gateway.get_session_history.assert_awaited_once()
        assert "sessions" in lazy.loaded_tabs

    @pytest.mark.asyncio
    async def test_branch_change_reloads_active_tab(self, lazy, gateway):
        await lazy.load()
        await lazy.select_tab("activity")
        await lazy.set_branch("b-north")

        assert gateway.get_activity_logs.await_count == 2
        assert lazy.store.selected_branch == "b-north"

    @pytest.mark.asyncio
    async def test_date_range_change_on_other_tab_defers_summary(self, lazy, gateway):
        await lazy.load()
        await lazy.select_tab("summary")
        await lazy.select_tab("online")
        await lazy.set_date_range(date(2025, 3, 1), date(2025, 3, 5))

        assert gateway.get_crew_work_hours_summary.await_count == 1

        await lazy.select_tab("summary")

        assert gateway.get_crew_work_hours_summary.await_count == 2
        assert gateway.get_crew_work_hours_summary.await_args.args == (date(2025, 3, 1), date(2025, 3, 5), None)

    @pytest.mark.asyncio
    async def test_summary_fetched_for_all_branches_and_filtered_on_render(self, lazy, gateway, now):
        await lazy.load()
        await lazy.set_branch("b-south")
        await lazy.select_tab("summary")

        assert gateway.get_crew_work_hours_summary.await_args.args == (date(2025, 3, 7), TODAY, None)
        assert [row.name for row in lazy.render(now).panel.summary] == ["Ben"]

    @pytest.mark.asyncio
    async def test_summary_shows_all_branches_after_clearing_selection(
        self, lazy, gateway, now, work_hours_summary
    ):
        branch_names = {"b-north": "North Stall", "b-south": "South Stall"}

        async def summary_for(start, end, branch_id=None):
            if branch_id is None:
                return work_hours_summary
            return [row for row in work_hours_summary if row.branch_name == branch_names[branch_id]]

        gateway.get_crew_work_hours_summary.side_effect = summary_for

        await lazy.load()
        await lazy.set_branch("b-north")
        await lazy.select_tab("summary")
        assert [row.name for row in lazy.render(now).panel.summary] == ["Ana"]

        await lazy.select_tab("online")
        await lazy.set_branch("")
        await lazy.select_tab("summary")

        view = lazy.render(now)
        assert [row.name for row in view.panel.summary] == ["Ana", "Ben"]
        assert view.stats.total_work_hours == 19.75

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "tab,panel,expected",
        [
            ("sessions", "sessions", ["s-1", "s-2"]),
            ("activity", "activity", ["a-1", "a-2", "a-3"]),
        ],
    )
    async def test_loaded_tab_shows_all_branches_after_clearing_selection(
        self, lazy, gateway, now, tab, panel, expected
    ):
        await lazy.load()
        await lazy.set_branch("b-south")
        await lazy.select_tab(tab)
        assert len(getattr(lazy.render(now).panel, panel)) == 1

        await lazy.select_tab("online")
        await lazy.set_branch("")
        await lazy.select_tab(tab)

        assert [row.id for row in getattr(lazy.render(now).panel, panel)] == expected

    @pytest.mark.asyncio
    async def test_invalid_range_rejected(self, lazy):
        with pytest.raises(ValueError):
            await lazy.set_date_range(date(2025, 3, 10), date(2025, 3, 1))

    @pytest.mark.asyncio
    async def test_unknown_tab_rejected(self, lazy):
        with pytest.raises(ValueError):
            await lazy.select_tab("payroll")

    @pytest.mark.asyncio
    async def test_retry_repeats_load_path(self, lazy, gateway):
        gateway.get_crew_online_status.side_effect = SupabaseError("offline")
        await lazy.load()
        assert lazy.render().error is not None

        gateway.get_crew_online_status.side_effect = None
        await lazy.retry()

        assert gateway.get_crew_online_status.await_count == 2
        assert lazy.render().error is None


class TestRender:

    @pytest.mark.asyncio
    async def test_stats_and_tabs(self, eager, now):
        await eager.load()

        view = eager.render(now)

        assert view.stats.online_now == 2
        assert view.stats.total_crew == 3
        assert view.stats.avg_session == "2h 0m 0s"
        assert view.stats.active_today == 1
        assert view.stats.total_work_hours == 19.75
        assert view.stats.branch_count == 2
        assert {tab.id: tab.count for tab in view.tabs} == {
            "online": 2,
            "sessions": 2,
            "activity": 3,
            "summary": 2,
        }
        assert [tab.id for tab in view.tabs if tab.active] == ["online"]
        assert view.error is None
        assert view.realtime_status == "DISCONNECTED"

    @pytest.mark.asyncio
    async def test_online_panel_rows(self, eager, now):
        await eager.load()

        rows = eager.render(now).panel.online

        assert [(row.name, row.status, row.detail) for row in rows] == [
            ("Ana", "Online", "1h 15m"),
            ("Ben", "Offline", "3h ago"),
            ("Cy", "Online", "4m 10s"),
        ]

    @pytest.mark.asyncio
    async def test_sessions_panel_rows(self, eager, now):
        await eager.load()
        await eager.select_tab("sessions")

        rows = eager.render(now).panel.sessions

        assert rows[0].session_start == "2025-03-14 10:44:30"
        assert rows[0].duration == "1h 15m 30s"
        assert rows[0].last_activity == "1m ago"
        assert rows[0].status == "Active"
        assert rows[1].duration == "3h 0m 0s"
        assert rows[1].status == "Ended"

    @pytest.mark.asyncio
    async def test_activity_panel_rows(self, eager, now):
        await eager.load()
        await eager.select_tab("activity")

        rows = eager.render(now).panel.activity

        assert rows[0].time_ago == "5m ago"
        assert rows[0].details == ["Viewed page", "Page: /orders"]
        assert rows[2].details == ["Logged in successfully", "IP: 10.0.0.7", "Device: Mozilla/5.0"]

    @pytest.mark.asyncio
    async def test_branch_filter_applies_to_rows_and_stats(self, eager, now):
        await eager.load()
        await eager.set_branch("b-north")

        view = eager.render(now)

        assert [row.user_id for row in view.panel.online] == ["u-1", "u-3"]
        assert view.stats.total_crew == 2
        assert view.stats.total_work_hours == 12.5
        assert view.selected_branch == "b-north"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "tab,fetcher,message",
        [
            ("online", "get_crew_online_status", "No crew members online"),
            ("sessions", "get_session_history", "No session history found"),
            ("activity", "get_activity_logs", "No activity logs found"),
            ("summary", "get_crew_work_hours_summary", "No work hours recorded for this period"),
        ],
    )
    async def test_empty_panels_have_explicit_message(self, eager, gateway, now, tab, fetcher, message):
        getattr(gateway, fetcher).return_value = []
        await eager.load()
        await eager.select_tab(tab)

        panel = eager.render(now).panel

        assert panel.tab == tab
        assert panel.empty_message == message

    @pytest.mark.asyncio
    async def test_populated_panel_has_no_empty_message(self, eager, now):
        await eager.load()

        assert eager.render(now).panel.empty_message is None

    @pytest.mark.asyncio
    async def test_error_banner_lists_failed_slices(self, eager, gateway, now, online_crews):
        gateway.get_branches.side_effect = SupabaseError("branches unavailable")
        await eager.load()

        view = eager.render(now)

        assert view.error.message == ERROR_MESSAGE
        assert view.error.failed_slices == ["branches"]
        assert view.error.can_retry
        assert len(view.panel.online) == len(online_crews)

    @pytest.mark.asyncio
    async def test_view_serializes(self, eager, now):
        await eager.load()

        data = eager.render(now).model_dump(mode="json")

        assert data["summary_start"] == "2025-03-07"
        assert data["panel"]["online"][0]["user_id"] == "u-1"
