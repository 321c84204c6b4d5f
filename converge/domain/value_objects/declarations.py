"""
Declaration Value Objects

Architectural Intent:
- Immutable, already-parsed form of a declaration file
- Produced by the infrastructure loader, consumed by the graph builders
- Carries no behaviour beyond small lookups; validation of cross references
  lives in the graph builder where all declarations are visible at once
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from converge.domain.value_objects.output_value import OutputValue
from converge.domain.value_objects.variable import Variable


@dataclass(frozen=True)
class ResourceTypeSchema:
    """What the control plane computes for a type, and how long it may take."""
    name: str
    computed: tuple[str, ...] = ("id",)
    required: tuple[str, ...] = ()
    timeout_seconds: Optional[float] = None

    def fields(self, declared: Mapping[str, Any]) -> set[str]:
        return set(declared) | set(self.computed) | {"id"}


@dataclass(frozen=True)
class ResourceDeclaration:
    id: str
    type: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    condition: Optional[str] = None
    ignore_changes: tuple[str, ...] = ()


@dataclass(frozen=True)
class BranchDeclaration:
    """Two mutually exclusive resources picked by one boolean selector."""
    name: str
    selector: str
    when_true: str
    when_false: str

    @property
    def members(self) -> tuple[str, str]:
        return (self.when_true, self.when_false)

    def active_member(self, selected: bool) -> str:
        return self.when_true if selected else self.when_false

    def inactive_member(self, selected: bool) -> str:
        return self.when_false if selected else self.when_true


@dataclass(frozen=True)
class StepAction:
    """Opaque step descriptor: a kind plus kind-specific parameters."""
    kind: str
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepDeclaration:
    id: str
    action: StepAction
    # None means "every previously declared step"; ("-",) means "no wait".
    wait_for: Optional[tuple[str, ...]] = None
    artifacts: Mapping[str, Any] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class Declarations:
    variables: tuple[Variable, ...] = ()
    resource_types: Mapping[str, ResourceTypeSchema] = field(default_factory=dict)
    resources: tuple[ResourceDeclaration, ...] = ()
    branches: tuple[BranchDeclaration, ...] = ()
    outputs: tuple[OutputValue, ...] = ()
    steps: tuple[StepDeclaration, ...] = ()

    def schema_for(self, resource_type: str) -> ResourceTypeSchema:
        return self.resource_types.get(resource_type) or ResourceTypeSchema(
            name=resource_type
        )

    def resource(self, node_id: str) -> Optional[ResourceDeclaration]:
        for decl in self.resources:
            if decl.id == node_id:
                return decl
        return None
