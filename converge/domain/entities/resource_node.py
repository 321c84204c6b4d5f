"""
Resource Node Module

Architectural Intent:
- ResourceNode is the unit of declared infrastructure in the dependency graph
- Lifecycle managed through status transitions enforced by entity methods
- The graph builder is the only writer of `dependencies` and
  `instance_count`; the apply executor is the only writer of `status`,
  `resolved_attributes` and `remote_attributes`

Lifecycle:
    PENDING -> CREATING -> CREATED | FAILED
    CREATED -> CREATING (update) | DESTROYING
    FAILED  -> CREATING (retry on next run) | DESTROYING
    DESTROYING -> DESTROYED | FAILED
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Optional

from converge.domain.errors import InvalidTransitionError


class NodeStatus(Enum):
    PENDING = auto()
    CREATING = auto()
    CREATED = auto()
    FAILED = auto()
    DESTROYING = auto()
    DESTROYED = auto()


_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.CREATING}),
    NodeStatus.CREATING: frozenset({NodeStatus.CREATED, NodeStatus.FAILED}),
    NodeStatus.CREATED: frozenset({NodeStatus.CREATING, NodeStatus.DESTROYING}),
    NodeStatus.FAILED: frozenset({NodeStatus.CREATING, NodeStatus.DESTROYING}),
    NodeStatus.DESTROYING: frozenset({NodeStatus.DESTROYED, NodeStatus.FAILED}),
    NodeStatus.DESTROYED: frozenset({NodeStatus.CREATING}),
}


@dataclass
class ResourceNode:
    id: str
    type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    explicit_dependencies: frozenset[str] = frozenset()
    condition: Optional[str] = None
    branch: Optional[str] = None
    ignore_changes: frozenset[str] = frozenset()
    timeout_seconds: Optional[float] = None
    dependencies: set[str] = field(default_factory=set)
    # Inactive branch member id -> active member id, for value substitution.
    substitutions: dict[str, str] = field(default_factory=dict)
    instance_count: int = 1
    status: NodeStatus = NodeStatus.PENDING
    resolved_attributes: dict[str, Any] = field(default_factory=dict)
    remote_attributes: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Node id cannot be empty")
        if not self.type:
            raise ValueError(f"Node '{self.id}' has no type")

    @property
    def present(self) -> bool:
        return self.instance_count == 1

    @property
    def has_remote_object(self) -> bool:
        return self.status in (NodeStatus.CREATED, NodeStatus.DESTROYING) or (
            self.status == NodeStatus.FAILED and bool(self.remote_attributes)
        )

    def attribute_value(self, name: str) -> Any:
        """Post-apply value of an attribute: remote first, then resolved."""
        if name in self.remote_attributes:
            return self.remote_attributes[name]
        if name in self.resolved_attributes:
            return self.resolved_attributes[name]
        raise KeyError(name)

    def _transition(self, new_status: NodeStatus) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Node '{self.id}' cannot move from {self.status.name} "
                f"to {new_status.name}"
            )
        self.status = new_status

    def start_create(self) -> None:
        self._transition(NodeStatus.CREATING)
        self.error_message = None

    def complete(self, remote_attributes: dict[str, Any]) -> None:
        self._transition(NodeStatus.CREATED)
        self.remote_attributes = dict(remote_attributes)

    def fail(self, message: str) -> None:
        self._transition(NodeStatus.FAILED)
        self.error_message = message

    def start_destroy(self) -> None:
        self._transition(NodeStatus.DESTROYING)
        self.error_message = None

    def destroyed(self) -> None:
        self._transition(NodeStatus.DESTROYED)
        self.remote_attributes = {}
