"""
Differ

Architectural Intent:
- Computes the Plan: what apply would create, update and delete, given the
  built graph and the last StateRecord
- Pure; never calls the control plane, so values that only the provider
  knows are shown as "(known after apply)"

Domain Logic:
- No remote object recorded -> CREATE
- Remote object recorded and rendered attributes differ from the recorded
  ones (ignoring `ignore_changes` keys) -> UPDATE, otherwise NO_OP
- Recorded remote object whose node is excluded or no longer declared ->
  DELETE, ordered by the recorded create order reversed and listed after
  the creates and updates, which apply runs first
"""

from __future__ import annotations
import logging
from typing import Any, Mapping, Optional

from converge.domain.entities.plan import ChangeAction, Plan, PlannedChange
from converge.domain.entities.resource_graph import ResourceGraph
from converge.domain.entities.resource_node import ResourceNode
from converge.domain.entities.state_record import NodeState, StateRecord
from converge.domain.errors import ValidationError
from converge.domain.services.expressions import UNKNOWN, contains_unknown
from converge.domain.services.scheduler import schedule_batches

logger = logging.getLogger(__name__)


def desired_attributes(
    node: ResourceNode,
    rendered: Mapping[str, Any],
    prior: Optional[NodeState],
) -> dict[str, Any]:
    """Rendered attributes with `ignore_changes` keys pinned to their recorded value."""
    desired = dict(rendered)
    if prior is None:
        return desired
    for key in node.ignore_changes:
        if key in prior.attributes:
            desired[key] = prior.attributes[key]
    return desired


def needs_update(
    node: ResourceNode, desired: Mapping[str, Any], prior: NodeState
) -> bool:
    if contains_unknown(dict(desired)):
        return True
    keys = (set(desired) | set(prior.attributes)) - set(node.ignore_changes)
    return any(desired.get(k) != prior.attributes.get(k) for k in keys)


class Differ:
    def plan(self, graph: ResourceGraph, state: StateRecord) -> Plan:
        for node in graph.active_nodes():
            prior = state.get(node.id)
            if prior and prior.has_remote_object and prior.type != node.type:
                raise ValidationError(
                    [
                        f"resource '{node.id}' changed type from '{prior.type}' to "
                        f"'{node.type}'; destroy it before re-declaring"
                    ]
                )

        rendered: dict[str, dict[str, Any]] = {}

        def render_node(node: ResourceNode) -> dict[str, Any]:
            if node.id not in rendered:
                rendered[node.id] = desired_attributes(
                    node,
                    graph.render_attributes(node, planned_value),
                    state.get(node.id),
                )
            return rendered[node.id]

        def planned_value(target: ResourceNode, field: str) -> Any:
            if field in target.attributes:
                return render_node(target)[field]
            prior = state.get(target.id)
            if prior and prior.has_remote_object and field in prior.remote_attributes:
                return prior.remote_attributes[field]
            return UNKNOWN

        create_batches = schedule_batches(graph.dependency_map())
        changes: list[PlannedChange] = []

        active_ids = {n.id for n in graph.active_nodes()}
        delete_ids = state.existing_ids - active_ids
        delete_batches = state.destroy_batches(only=delete_ids)

        for batch in create_batches:
            for node_id in batch:
                node = graph.node(node_id)
                after = render_node(node)
                prior = state.get(node_id)
                if prior is None or not prior.has_remote_object:
                    action = ChangeAction.CREATE
                    before: dict[str, Any] = {}
                else:
                    before = dict(prior.attributes)
                    action = (
                        ChangeAction.UPDATE
                        if needs_update(node, after, prior)
                        else ChangeAction.NO_OP
                    )
                changes.append(
                    PlannedChange(
                        node_id=node_id,
                        type=node.type,
                        action=action,
                        before=before,
                        after=after,
                    )
                )

        for batch in delete_batches:
            for node_id in batch:
                prior = state.nodes[node_id]
                changes.append(
                    PlannedChange(
                        node_id=node_id,
                        type=prior.type,
                        action=ChangeAction.DELETE,
                        before=dict(prior.attributes),
                    )
                )

        plan = Plan(
            changes=tuple(changes),
            create_batches=tuple(tuple(b) for b in create_batches),
            delete_batches=tuple(tuple(b) for b in delete_batches),
        )
        logger.info("%s", plan)
        return plan
