"""Tests for the in-memory EventBus."""

from unittest.mock import AsyncMock

import pytest

from converge.domain.events.run_events import (
    ApplyFinishedEvent,
    NodeStatusChangedEvent,
    StepStatusChangedEvent,
)
from converge.domain.events.event_base import DomainEvent
from converge.infrastructure.event_bus import EventBus


class TestEventBus:
    @pytest.mark.asyncio
    async def test_handlers_receive_matching_events(self):
        bus = EventBus()
        handler = AsyncMock()
        bus.subscribe(NodeStatusChangedEvent, handler)

        node_event = NodeStatusChangedEvent(aggregate_id="net", status="CREATED", action="create")
        await bus.publish([node_event, StepStatusChangedEvent(aggregate_id="build")])

        handler.assert_awaited_once_with(node_event)

    @pytest.mark.asyncio
    async def test_base_class_subscription_sees_everything(self):
        bus = EventBus()
        handler = AsyncMock()
        bus.subscribe(DomainEvent, handler)

        await bus.publish([ApplyFinishedEvent(aggregate_id="apply"), StepStatusChangedEvent()])

        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_recent_history_is_bounded(self):
        bus = EventBus(history_size=3)
        await bus.publish([StepStatusChangedEvent(aggregate_id=str(i)) for i in range(5)])

        assert [e.aggregate_id for e in bus.recent()] == ["2", "3", "4"]
        assert [e.aggregate_id for e in bus.recent(limit=1)] == ["4"]

    def test_event_to_dict(self):
        event = NodeStatusChangedEvent(
            aggregate_id="net", status="FAILED", action="create", error_message="quota"
        )
        data = event.to_dict()
        assert data["event_type"] == "NodeStatusChangedEvent"
        assert data["status"] == "FAILED"
        assert data["error_message"] == "quota"
        assert data["occurred_at"]
