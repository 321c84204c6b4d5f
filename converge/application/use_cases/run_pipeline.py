"""
Run Pipeline Use Case

Architectural Intent:
- Entry point for a push event (CLI or webhook)
- Builds the pipeline DAG with the bound variables and hands it to the
  PipelineExecutor together with the trigger
"""

import logging
from typing import Any, Mapping, Optional

from converge.application.dtos.run_dtos import PushEventRequest
from converge.application.orchestration.pipeline_executor import (
    PipelineExecutor,
    PipelineResult,
)
from converge.domain.errors import ValidationError
from converge.domain.services.graph_builder import GraphBuilder
from converge.domain.value_objects.declarations import Declarations

logger = logging.getLogger(__name__)


class RunPipeline:
    def __init__(self, executor: PipelineExecutor):
        self.executor = executor

    async def execute(
        self,
        declarations: Declarations,
        request: PushEventRequest,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> PipelineResult:
        if not declarations.steps:
            raise ValidationError(["no pipeline steps declared"])
        graph = GraphBuilder(declarations).build_pipeline(variables)
        logger.info(
            "Running %d step(s) for %s@%s",
            len(graph.steps),
            request.repository or "(repository)",
            request.revision[:7],
        )
        return await self.executor.run(graph, request.to_trigger())
