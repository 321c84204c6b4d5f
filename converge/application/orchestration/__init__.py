"""
Application Orchestration Package

Architectural Intent:
- Contains the two graph executors
- ApplyExecutor converges resource graphs batch by batch
- PipelineExecutor runs the build pipeline DAG with fail-fast skipping
"""

from converge.application.orchestration.apply_executor import (
    ApplyExecutor,
    ApplyResult,
    ExecutorSettings,
)
from converge.application.orchestration.pipeline_executor import (
    PipelineExecutor,
    PipelineResult,
)

__all__ = [
    "ApplyExecutor",
    "ApplyResult",
    "ExecutorSettings",
    "PipelineExecutor",
    "PipelineResult",
]
