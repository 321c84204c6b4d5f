"""
Apply Infrastructure Use Case

Architectural Intent:
- Full convergence: build, resolve, schedule, apply, persist, render outputs
- Structural errors surface before the executor makes any provider call
"""

import logging
from typing import Any, Mapping, Optional

from converge.application.orchestration.apply_executor import ApplyExecutor, ApplyResult
from converge.domain.services.graph_builder import GraphBuilder
from converge.domain.value_objects.declarations import Declarations

logger = logging.getLogger(__name__)


class ApplyInfrastructure:
    def __init__(self, executor: ApplyExecutor):
        self.executor = executor

    async def execute(
        self,
        declarations: Declarations,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> ApplyResult:
        graph = GraphBuilder(declarations).build(variables)
        return await self.executor.apply(graph)
