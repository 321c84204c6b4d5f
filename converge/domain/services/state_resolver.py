"""
Output/State Resolver

Architectural Intent:
- Owns the StateRecord lifecycle for a run: the executor hands it the
  per-node results and it folds them into the next record
- Renders outputs from the record alone, so `converge output` needs no
  provider call
- An output whose referenced nodes are not all CREATED is reported as
  unavailable instead of failing the run
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from converge.domain.entities.resource_graph import ResourceGraph
from converge.domain.entities.resource_node import NodeStatus, ResourceNode
from converge.domain.entities.state_record import NodeState, StateRecord
from converge.domain.errors import UnknownReferenceError
from converge.domain.services.expressions import (
    VAR_ROOT,
    Ref,
    references,
    render,
    scoped_resolver,
    walk_path,
)

SENSITIVE_MASK = "(sensitive)"


@dataclass(frozen=True)
class ResolvedOutput:
    name: str
    value: Any = None
    available: bool = True
    sensitive: bool = False
    reason: str = ""

    def display(self) -> str:
        if not self.available:
            return f"(unavailable: {self.reason})"
        if self.sensitive:
            return SENSITIVE_MASK
        return str(self.value)

    def to_dict(self, reveal: bool = False) -> dict[str, Any]:
        value = self.value
        if self.sensitive and not reveal:
            value = SENSITIVE_MASK
        return {
            "name": self.name,
            "value": value if self.available else None,
            "available": self.available,
            "sensitive": self.sensitive,
            "reason": self.reason,
        }


def node_state(node: ResourceNode) -> NodeState:
    return NodeState(
        node_id=node.id,
        type=node.type,
        status=node.status,
        attributes=dict(node.resolved_attributes),
        remote_attributes=dict(node.remote_attributes),
        dependencies=tuple(sorted(node.dependencies)),
    )


class StateResolver:
    def next_record(
        self,
        prior: StateRecord,
        entries: Mapping[str, Optional[NodeState]],
        batches: Iterable[Iterable[str]],
    ) -> StateRecord:
        """Fold this run's results into the prior record.

        `entries` maps node id to its new NodeState, or None when the remote
        object was destroyed. Nodes not mentioned keep their prior entry.
        """
        nodes = dict(prior.nodes)
        for node_id, entry in entries.items():
            if entry is None:
                nodes.pop(node_id, None)
            else:
                nodes[node_id] = entry
        live = {k for k, v in nodes.items() if v.has_remote_object}
        order = [tuple(n for n in batch if n in live) for batch in batches]
        return StateRecord(
            nodes=nodes,
            create_order=tuple(b for b in order if b),
            serial=prior.serial,
        )

    def _substitutes(self, graph: ResourceGraph) -> dict[str, str]:
        subs: dict[str, str] = {}
        for branch in graph.branches.values():
            active = [m for m in branch.members if graph.nodes[m].present]
            for member in branch.members:
                if active and member != active[0]:
                    subs[member] = active[0]
        return subs

    def outputs(self, graph: ResourceGraph, record: StateRecord) -> list[ResolvedOutput]:
        substitutes = self._substitutes(graph)
        resolved: list[ResolvedOutput] = []
        for output in graph.outputs:
            missing = sorted(
                {
                    substitutes.get(ref.root, ref.root)
                    for ref in references(output.value)
                    if ref.is_node_ref
                    and not self._is_created(
                        record, substitutes.get(ref.root, ref.root)
                    )
                }
            )
            if missing:
                resolved.append(
                    ResolvedOutput(
                        name=output.name,
                        available=False,
                        sensitive=output.sensitive,
                        reason=f"not created: {', '.join(missing)}",
                    )
                )
                continue

            def resolve_node(ref: Ref) -> Any:
                entry = record.nodes[substitutes.get(ref.root, ref.root)]
                if ref.field in entry.remote_attributes:
                    value = entry.remote_attributes[ref.field]
                elif ref.field in entry.attributes:
                    value = entry.attributes[ref.field]
                else:
                    raise UnknownReferenceError(
                        f"output '{output.name}'", str(ref), "not in state"
                    )
                return walk_path(value, ref)

            try:
                value = render(
                    output.value,
                    scoped_resolver({VAR_ROOT: graph.variables}, resolve_node),
                )
            except UnknownReferenceError as e:
                resolved.append(
                    ResolvedOutput(
                        name=output.name,
                        available=False,
                        sensitive=output.sensitive,
                        reason=str(e),
                    )
                )
                continue
            resolved.append(
                ResolvedOutput(name=output.name, value=value, sensitive=output.sensitive)
            )
        return resolved

    @staticmethod
    def _is_created(record: StateRecord, node_id: str) -> bool:
        entry = record.get(node_id)
        return entry is not None and entry.status == NodeStatus.CREATED
