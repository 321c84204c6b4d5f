"""
Show Outputs Use Case

Architectural Intent:
- Renders declared outputs from the recorded state without touching the
  control plane
"""

from typing import Any, Mapping, Optional

from converge.domain.ports.state_store_port import StateStorePort
from converge.domain.services.graph_builder import GraphBuilder
from converge.domain.services.state_resolver import ResolvedOutput, StateResolver
from converge.domain.value_objects.declarations import Declarations


class ShowOutputs:
    def __init__(self, state_store: StateStorePort):
        self.state_store = state_store
        self.resolver = StateResolver()

    async def execute(
        self,
        declarations: Declarations,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> list[ResolvedOutput]:
        graph = GraphBuilder(declarations).build(variables)
        return self.resolver.outputs(graph, self.state_store.load())
