"""Tests for entity lifecycles and small value objects."""

import pytest

from converge.domain.entities.build_step import BuildStepNode, StepStatus
from converge.domain.entities.plan import ChangeAction, Plan, PlannedChange
from converge.domain.entities.resource_node import NodeStatus, ResourceNode
from converge.domain.entities.state_record import NodeState, StateRecord
from converge.domain.errors import InvalidTransitionError
from converge.domain.value_objects.declarations import StepAction
from converge.domain.value_objects.retry_policy import RetryPolicy
from converge.domain.value_objects.step_outcome import StepOutcome
from converge.domain.value_objects.trigger_event import TriggerEvent


class TestResourceNode:
    def test_create_lifecycle(self):
        node = ResourceNode(id="a", type="t")
        node.start_create()
        node.complete({"id": "a-1"})
        assert node.status == NodeStatus.CREATED
        assert node.has_remote_object
        assert node.attribute_value("id") == "a-1"

    def test_failed_create_clears_on_retry(self):
        node = ResourceNode(id="a", type="t")
        node.start_create()
        node.fail("boom")
        assert node.error_message == "boom"
        assert not node.has_remote_object
        node.start_create()
        assert node.error_message is None

    def test_destroy(self):
        node = ResourceNode(id="a", type="t", status=NodeStatus.CREATED, remote_attributes={"id": "1"})
        node.start_destroy()
        node.destroyed()
        assert node.status == NodeStatus.DESTROYED
        assert node.remote_attributes == {}

    def test_invalid_transition(self):
        node = ResourceNode(id="a", type="t")
        with pytest.raises(InvalidTransitionError):
            node.complete({})

    def test_attribute_value_prefers_remote(self):
        node = ResourceNode(
            id="a",
            type="t",
            resolved_attributes={"name": "local", "size": 1},
            remote_attributes={"name": "remote"},
        )
        assert node.attribute_value("name") == "remote"
        assert node.attribute_value("size") == 1
        with pytest.raises(KeyError):
            node.attribute_value("missing")

    def test_requires_id_and_type(self):
        with pytest.raises(ValueError):
            ResourceNode(id="", type="t")
        with pytest.raises(ValueError):
            ResourceNode(id="a", type="")


class TestBuildStep:
    def _step(self):
        return BuildStepNode(id="build", action=StepAction(kind="command", params={"command": "make"}))

    def test_succeed(self):
        step = self._step()
        step.start()
        step.succeed({"image": "app:1"}, output="ok")
        assert step.status == StepStatus.SUCCEEDED
        assert step.produced_artifacts == {"image": "app:1"}
        assert step.finished

    def test_skip_only_from_pending(self):
        step = self._step()
        step.skip()
        assert step.status == StepStatus.SKIPPED
        with pytest.raises(InvalidTransitionError):
            step.start()

    def test_cannot_skip_running(self):
        step = self._step()
        step.start()
        with pytest.raises(InvalidTransitionError):
            step.skip()


class TestValueObjects:
    def test_retry_delays_capped(self):
        policy = RetryPolicy(max_attempts=5, initial_delay=1.0, multiplier=3.0, max_delay=5.0)
        assert policy.delays() == [1.0, 3.0, 5.0, 5.0]

    def test_single_attempt_has_no_delays(self):
        assert RetryPolicy(max_attempts=1).delays() == []

    @pytest.mark.parametrize(
        "kwargs", [{"max_attempts": 0}, {"initial_delay": -1}, {"multiplier": 0.5}]
    )
    def test_retry_policy_rejects(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_trigger_scope(self):
        trigger = TriggerEvent(revision="0123456789abcdef", branch="main")
        assert trigger.short_revision == "0123456"
        assert trigger.scope()["branch"] == "main"

    def test_trigger_needs_revision(self):
        with pytest.raises(ValueError):
            TriggerEvent(revision="")

    def test_step_outcome_ok(self):
        assert StepOutcome(0).ok
        assert not StepOutcome(2, stderr="x").ok


class TestPlanAndState:
    def test_plan_summary(self):
        plan = Plan(
            changes=(
                PlannedChange("a", "t", ChangeAction.CREATE),
                PlannedChange("b", "t", ChangeAction.NO_OP),
                PlannedChange("c", "t", ChangeAction.DELETE),
            )
        )
        assert plan.summary() == {"create": 1, "update": 0, "delete": 1}
        assert plan.has_changes

    def test_no_op_only_plan_has_no_changes(self):
        assert not Plan(changes=(PlannedChange("a", "t", ChangeAction.NO_OP),)).has_changes

    def test_state_round_trip_through_dict(self):
        record = StateRecord(
            nodes={
                "a": NodeState("a", "t", NodeStatus.CREATED, {"k": 1}, {"id": "a-1"}),
                "b": NodeState("b", "t", NodeStatus.FAILED, dependencies=("a",)),
            },
            create_order=(("a",),),
            serial=3,
        )
        assert StateRecord.from_dict(record.to_dict()) == record

    def test_existing_ids(self):
        record = StateRecord(
            nodes={
                "a": NodeState("a", "t", NodeStatus.CREATED),
                "b": NodeState("b", "t", NodeStatus.FAILED),
                "c": NodeState("c", "t", NodeStatus.FAILED, remote_attributes={"id": "c"}),
            }
        )
        assert record.existing_ids == {"a", "c"}

    def test_with_dependents(self):
        record = StateRecord(
            nodes={
                "a": NodeState("a", "t", NodeStatus.CREATED),
                "b": NodeState("b", "t", NodeStatus.CREATED, dependencies=("a",)),
                "c": NodeState("c", "t", NodeStatus.CREATED, dependencies=("b",)),
                "d": NodeState("d", "t", NodeStatus.CREATED),
            }
        )
        assert record.with_dependents({"a"}) == {"a", "b", "c"}
        assert record.with_dependents({"c"}) == {"c"}

    def test_unordered_live_nodes_destroyed_first(self):
        record = StateRecord(
            nodes={
                "a": NodeState("a", "t", NodeStatus.CREATED),
                "x": NodeState("x", "t", NodeStatus.CREATED),
            },
            create_order=(("a",),),
        )
        assert record.destroy_batches() == [["x"], ["a"]]
