"""
Graph Aggregates

Architectural Intent:
- ResourceGraph is the consistency boundary for one convergence run:
  nodes, bound variables, branch groups, outputs and type schemas
- PipelineGraph is the equivalent boundary for one pipeline run
- Both expose a single way of turning a node's templates into values so the
  differ, the apply executor and the output resolver substitute identically
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from converge.domain.entities.build_step import BuildStepNode
from converge.domain.entities.resource_node import ResourceNode
from converge.domain.errors import UnknownReferenceError
from converge.domain.services.expressions import (
    Ref,
    VAR_ROOT,
    render,
    scoped_resolver,
    walk_path,
)
from converge.domain.value_objects.declarations import (
    BranchDeclaration,
    ResourceTypeSchema,
)
from converge.domain.value_objects.output_value import OutputValue

# (target node, field name) -> value
ValueOf = Callable[[ResourceNode, str], Any]


@dataclass
class ResourceGraph:
    nodes: dict[str, ResourceNode]
    variables: dict[str, Any] = field(default_factory=dict)
    branches: dict[str, BranchDeclaration] = field(default_factory=dict)
    outputs: tuple[OutputValue, ...] = ()
    schemas: Mapping[str, ResourceTypeSchema] = field(default_factory=dict)

    def node(self, node_id: str) -> ResourceNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise UnknownReferenceError("graph", node_id, "no such node") from None

    def active_nodes(self) -> list[ResourceNode]:
        return [self.nodes[k] for k in sorted(self.nodes) if self.nodes[k].present]

    def excluded_ids(self) -> set[str]:
        return {k for k, n in self.nodes.items() if not n.present}

    def dependency_map(self) -> dict[str, set[str]]:
        return {n.id: set(n.dependencies) for n in self.active_nodes()}

    def dependents_of(self, node_id: str) -> list[str]:
        return sorted(
            n.id for n in self.active_nodes() if node_id in n.dependencies
        )

    def timeout_for(self, node: ResourceNode) -> Optional[float]:
        if node.timeout_seconds is not None:
            return node.timeout_seconds
        schema = self.schemas.get(node.type)
        return schema.timeout_seconds if schema else None

    def resolver_for(self, node: Optional[ResourceNode], value_of: ValueOf):
        substitutions = node.substitutions if node else {}

        def resolve_node(ref: Ref) -> Any:
            target_id = substitutions.get(ref.root, ref.root)
            target = self.node(target_id)
            return walk_path(value_of(target, ref.field), ref)

        return scoped_resolver({VAR_ROOT: self.variables}, resolve_node)

    def render_attributes(self, node: ResourceNode, value_of: ValueOf) -> dict[str, Any]:
        return render(node.attributes, self.resolver_for(node, value_of))


@dataclass
class PipelineGraph:
    steps: dict[str, BuildStepNode]
    variables: dict[str, Any] = field(default_factory=dict)

    @property
    def order(self) -> list[str]:
        """Declaration order."""
        return list(self.steps)

    def step(self, step_id: str) -> BuildStepNode:
        try:
            return self.steps[step_id]
        except KeyError:
            raise UnknownReferenceError("pipeline", step_id, "no such step") from None
