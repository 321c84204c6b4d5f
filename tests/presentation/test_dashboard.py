"""Tests for the Textual state dashboard."""

import pytest
from textual.widgets import DataTable

from converge.domain.entities.resource_node import NodeStatus
from converge.domain.entities.state_record import NodeState, StateRecord
from converge.presentation.tui.dashboard import Dashboard


@pytest.fixture
def populated_store(state_store):
    state_store.save(
        StateRecord(
            nodes={
                "net": NodeState("net", "network", NodeStatus.CREATED, {}, {"id": "n-1"}),
                "vm": NodeState("vm", "instance", NodeStatus.FAILED, {}, {}, ("net",)),
            },
            create_order=(("net",), ("vm",)),
        )
    )
    state_store.record_run("apply", "2026-01-01T00:00:00+00:00", "failed", {"created": 1, "failed": 1})
    return state_store


class TestDashboard:
    @pytest.mark.asyncio
    async def test_tables_populated(self, populated_store):
        app = Dashboard(populated_store)
        async with app.run_test() as pilot:
            await pilot.pause()
            assert app.query_one("#state_table", DataTable).row_count == 2
            assert app.query_one("#runs_table", DataTable).row_count == 1
            assert any("Node vm is FAILED" in line for line in app._log_lines)
            assert any("State serial 1: 2 node(s)" in line for line in app._log_lines)

    @pytest.mark.asyncio
    async def test_refresh_interval_bounds(self, populated_store):
        app = Dashboard(populated_store)
        async with app.run_test():
            app.action_increase_interval()
            assert app._refresh_interval == 6.0
            for _ in range(10):
                app.action_decrease_interval()
            assert app._refresh_interval == 1.0

    @pytest.mark.asyncio
    async def test_empty_state(self, state_store):
        app = Dashboard(state_store)
        async with app.run_test() as pilot:
            await pilot.pause()
            assert app.query_one("#state_table", DataTable).row_count == 0
