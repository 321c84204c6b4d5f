"""
Build Step Module

Architectural Intent:
- BuildStepNode is one step of the CI pipeline DAG
- SKIPPED means "did not run", FAILED means "ran and failed"; the two are
  never conflated
- Artifacts are only visible to dependents once the step SUCCEEDED
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Optional

from converge.domain.errors import InvalidTransitionError
from converge.domain.value_objects.declarations import StepAction


class StepStatus(Enum):
    PENDING = auto()
    RUNNING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    SKIPPED = auto()


@dataclass
class BuildStepNode:
    id: str
    action: StepAction
    wait_for: frozenset[str] = frozenset()
    artifacts: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    dependencies: set[str] = field(default_factory=set)
    produced_artifacts: dict[str, Any] = field(default_factory=dict)
    status: StepStatus = StepStatus.PENDING
    error_message: Optional[str] = None
    output: str = ""

    @property
    def finished(self) -> bool:
        return self.status in (
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        )

    def start(self) -> None:
        if self.status != StepStatus.PENDING:
            raise InvalidTransitionError(
                f"Step '{self.id}' can only start from PENDING, not {self.status.name}"
            )
        self.status = StepStatus.RUNNING

    def succeed(self, artifacts: dict[str, Any], output: str = "") -> None:
        if self.status != StepStatus.RUNNING:
            raise InvalidTransitionError(f"Step '{self.id}' is not RUNNING")
        self.status = StepStatus.SUCCEEDED
        self.produced_artifacts = dict(artifacts)
        self.output = output

    def fail(self, message: str, output: str = "") -> None:
        if self.status != StepStatus.RUNNING:
            raise InvalidTransitionError(f"Step '{self.id}' is not RUNNING")
        self.status = StepStatus.FAILED
        self.error_message = message
        self.output = output

    def skip(self) -> None:
        if self.status != StepStatus.PENDING:
            raise InvalidTransitionError(
                f"Step '{self.id}' can only be skipped while PENDING"
            )
        self.status = StepStatus.SKIPPED
