"""
Conditional Resolver

Architectural Intent:
- Decides which declared nodes exist for this run (instance count 0 or 1)
- Selects exactly one member of every exclusive branch pair from its boolean
  selector, as a construction-time invariant rather than a runtime race
- Rewrites live edges that point at an excluded branch member to the active
  member, and refuses to build a node whose required input was excluded

Domain Logic:
- A node's live edges come from references that can actually be read under
  the bound variables; the untaken arm of a variable-only ternary is dead
- Attribute references are required inputs; explicit depends_on entries only
  order execution and are dropped when their target is excluded
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from converge.domain.entities.resource_node import ResourceNode
from converge.domain.errors import UnsatisfiedDependencyError, ValidationError
from converge.domain.services.expressions import (
    VAR_ROOT,
    evaluate,
    live_references,
    parse_condition,
    scoped_resolver,
)
from converge.domain.value_objects.declarations import BranchDeclaration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    instance_counts: dict[str, int] = field(default_factory=dict)
    dependencies: dict[str, set[str]] = field(default_factory=dict)
    substitutions: dict[str, dict[str, str]] = field(default_factory=dict)
    selected_branches: dict[str, str] = field(default_factory=dict)


class ConditionalResolver:
    def resolve(
        self,
        nodes: Mapping[str, ResourceNode],
        branches: Sequence[BranchDeclaration],
        variables: Mapping[str, Any],
    ) -> Resolution:
        resolve_var = scoped_resolver({VAR_ROOT: dict(variables)})
        counts: dict[str, int] = {}
        active_member_of: dict[str, str] = {}
        selected: dict[str, str] = {}

        for branch in branches:
            choice = evaluate(parse_condition(branch.selector), resolve_var)
            if not isinstance(choice, bool):
                raise ValidationError(
                    [f"branch '{branch.name}': selector must be a boolean, got {choice!r}"]
                )
            active = branch.active_member(choice)
            selected[branch.name] = active
            for member in branch.members:
                counts[member] = 1 if member == active else 0
                active_member_of[member] = active
            logger.debug("Branch %s selected %s", branch.name, active)

        for node_id in sorted(nodes):
            if node_id in counts:
                continue
            node = nodes[node_id]
            if node.condition is None:
                counts[node_id] = 1
                continue
            result = evaluate(parse_condition(node.condition), resolve_var)
            if not isinstance(result, bool):
                raise ValidationError(
                    [f"condition of '{node_id}' must be a boolean, got {result!r}"]
                )
            counts[node_id] = 1 if result else 0
            if not result:
                logger.debug("Node %s excluded by condition %s", node_id, node.condition)

        dependencies: dict[str, set[str]] = {}
        substitutions: dict[str, dict[str, str]] = {}
        for node_id in sorted(nodes):
            node = nodes[node_id]
            deps: set[str] = set()
            subs: dict[str, str] = {}
            dependencies[node_id] = deps
            substitutions[node_id] = subs
            if counts[node_id] == 0:
                continue

            live = sorted(
                {
                    ref.root
                    for ref in live_references(node.attributes, resolve_var)
                    if ref.is_node_ref
                }
            )
            for target in live:
                if counts[target] == 1:
                    deps.add(target)
                    continue
                substitute = active_member_of.get(target)
                if substitute is None or substitute == node_id:
                    raise UnsatisfiedDependencyError(node_id, target)
                deps.add(substitute)
                subs[target] = substitute

            for target in sorted(node.explicit_dependencies):
                if counts[target] == 1:
                    deps.add(target)
                elif active_member_of.get(target) not in (None, node_id):
                    deps.add(active_member_of[target])
                else:
                    logger.debug(
                        "Dropping ordering edge %s -> %s (target excluded)",
                        node_id,
                        target,
                    )

        return Resolution(
            instance_counts=counts,
            dependencies=dependencies,
            substitutions=substitutions,
            selected_branches=selected,
        )
