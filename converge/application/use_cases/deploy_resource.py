"""
Deploy Resource Use Case

Architectural Intent:
- Implements DeployerPort for the pipeline's terminal deploy step
- Rebuilds the graph, overrides attributes of exactly one node and runs a
  single-node apply; every other node is left untouched

Design Decisions:
- The override lives only for this run. Declarations that should keep the
  deployed value across full applies list those keys in `ignore_changes`
"""

import logging
from typing import Any, Mapping, Optional

from converge.application.orchestration.apply_executor import ApplyExecutor
from converge.domain.errors import ValidationError
from converge.domain.services.expressions import references
from converge.domain.services.graph_builder import GraphBuilder
from converge.domain.value_objects.declarations import Declarations

logger = logging.getLogger(__name__)


class DeployResource:
    def __init__(
        self,
        executor: ApplyExecutor,
        declarations: Declarations,
        variables: Optional[Mapping[str, Any]] = None,
    ):
        self.executor = executor
        self.declarations = declarations
        self.variables = dict(variables or {})

    async def deploy(self, node_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        if references(attributes):
            raise ValidationError(
                [f"deploy attributes for '{node_id}' must be fully rendered values"]
            )
        graph = GraphBuilder(self.declarations).build(self.variables)
        node = graph.node(node_id)
        node.attributes.update(attributes)
        node.ignore_changes = node.ignore_changes - set(attributes)
        logger.info("Deploying %s: %s", node_id, ", ".join(sorted(attributes)))
        result = await self.executor.apply_node(graph, node_id)
        return dict(result.state.nodes[node_id].remote_attributes)
