"""
Plan Infrastructure Use Case

Architectural Intent:
- Builds the graph and diffs it against the last recorded state
- Read-only: never calls the control plane and never writes state
"""

import logging
from typing import Any, Mapping, Optional

from converge.domain.entities.plan import Plan
from converge.domain.ports.state_store_port import StateStorePort
from converge.domain.services.differ import Differ
from converge.domain.services.graph_builder import GraphBuilder
from converge.domain.value_objects.declarations import Declarations

logger = logging.getLogger(__name__)


class PlanInfrastructure:
    def __init__(self, state_store: StateStorePort):
        self.state_store = state_store
        self.differ = Differ()

    async def execute(
        self,
        declarations: Declarations,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> Plan:
        graph = GraphBuilder(declarations).build(variables)
        return self.differ.plan(graph, self.state_store.load())
