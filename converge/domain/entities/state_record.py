"""
State Record Module

Architectural Intent:
- Persisted snapshot of every node's last known status and attributes
- Read once at the start of a run and written once at the end (or at the
  failure point); never mutated mid-run, so it is a frozen value
- Remembers the batches of the last successful create so destroy can run
  in exactly the reverse order instead of re-sorting the current graph
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from converge.domain.entities.resource_node import NodeStatus


@dataclass(frozen=True)
class NodeState:
    node_id: str
    type: str
    status: NodeStatus
    attributes: Mapping[str, Any] = field(default_factory=dict)
    remote_attributes: Mapping[str, Any] = field(default_factory=dict)
    dependencies: tuple[str, ...] = ()

    @property
    def has_remote_object(self) -> bool:
        return self.status in (NodeStatus.CREATED, NodeStatus.DESTROYING) or (
            self.status == NodeStatus.FAILED and bool(self.remote_attributes)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "type": self.type,
            "status": self.status.name,
            "attributes": dict(self.attributes),
            "remote_attributes": dict(self.remote_attributes),
            "dependencies": list(self.dependencies),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "NodeState":
        return NodeState(
            node_id=data["node_id"],
            type=data["type"],
            status=NodeStatus[data["status"]],
            attributes=dict(data.get("attributes") or {}),
            remote_attributes=dict(data.get("remote_attributes") or {}),
            dependencies=tuple(data.get("dependencies") or ()),
        )


@dataclass(frozen=True)
class StateRecord:
    nodes: Mapping[str, NodeState] = field(default_factory=dict)
    create_order: tuple[tuple[str, ...], ...] = ()
    serial: int = 0

    @staticmethod
    def empty() -> "StateRecord":
        return StateRecord()

    def get(self, node_id: str) -> Optional[NodeState]:
        return self.nodes.get(node_id)

    @property
    def existing_ids(self) -> set[str]:
        """Ids of nodes that have a live remote object."""
        return {n.node_id for n in self.nodes.values() if n.has_remote_object}

    def with_dependents(self, node_ids: Iterable[str]) -> set[str]:
        """The given ids plus every recorded node that transitively depends on them."""
        closure = set(node_ids)
        grew = True
        while grew:
            grew = False
            for entry in self.nodes.values():
                if entry.node_id not in closure and closure & set(entry.dependencies):
                    closure.add(entry.node_id)
                    grew = True
        return closure

    def destroy_batches(self, only: Optional[Iterable[str]] = None) -> list[list[str]]:
        """Reverse of the recorded create order, restricted to live objects.

        Live nodes missing from the recorded order go first: nothing that
        was created after them can depend on them.
        """
        targets = self.existing_ids
        if only is not None:
            targets &= set(only)
        ordered = {node_id for batch in self.create_order for node_id in batch}
        batches: list[list[str]] = []
        leftovers = sorted(targets - ordered, reverse=True)
        if leftovers:
            batches.append(leftovers)
        for batch in reversed(self.create_order):
            members = [node_id for node_id in reversed(batch) if node_id in targets]
            if members:
                batches.append(members)
        return batches

    def to_dict(self) -> dict[str, Any]:
        return {
            "serial": self.serial,
            "create_order": [list(batch) for batch in self.create_order],
            "nodes": {k: v.to_dict() for k, v in sorted(self.nodes.items())},
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "StateRecord":
        return StateRecord(
            nodes={
                k: NodeState.from_dict(v) for k, v in (data.get("nodes") or {}).items()
            },
            create_order=tuple(tuple(b) for b in data.get("create_order") or ()),
            serial=int(data.get("serial", 0)),
        )
