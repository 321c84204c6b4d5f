"""
Error Taxonomy

Architectural Intent:
- Single hierarchy rooted at ConvergeError so callers can catch broadly
- Structural errors (validation, cycles, references) are raised before any
  provider call is made
- Execution errors carry enough context for the CLI to report partial state

Design Decisions:
- ValidationError aggregates every problem instead of stopping at the first
- PartialApplyError and BuildStepError carry the run result so the caller can
  print exactly which nodes/steps succeeded
"""

from __future__ import annotations
from typing import Any, Iterable, Optional


class ConvergeError(Exception):
    """Base class for all converge errors."""


class ValidationError(ConvergeError):
    def __init__(self, problems: Iterable[str]) -> None:
        self.problems = list(problems)
        if len(self.problems) == 1:
            message = self.problems[0]
        else:
            message = f"{len(self.problems)} validation problems:\n" + "\n".join(
                f"  - {p}" for p in self.problems
            )
        super().__init__(message)


class CyclicDependencyError(ConvergeError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class UnknownReferenceError(ConvergeError):
    def __init__(self, source: str, reference: str, reason: str = "") -> None:
        self.source = source
        self.reference = reference
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"{source} references unknown '{reference}'{detail}"
        )


class UnsatisfiedDependencyError(ConvergeError):
    def __init__(self, node_id: str, missing: str) -> None:
        self.node_id = node_id
        self.missing = missing
        super().__init__(
            f"Node '{node_id}' requires '{missing}', which is excluded by its "
            "condition and has no active substitute branch"
        )


class InvalidTransitionError(ValueError):
    pass


class TransientAPIError(ConvergeError):
    """Rate limit, 5xx or timeout from the control plane. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NodeApplyError(ConvergeError):
    """Non-transient provider failure (validation, permission). Not retried."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ResourceAlreadyExistsError(ConvergeError):
    pass


class PartialApplyError(ConvergeError):
    def __init__(self, result: Any) -> None:
        self.result = result
        failed = ", ".join(
            f"{node_id}: {message}" for node_id, message in result.failed.items()
        )
        super().__init__(
            f"Apply failed for {len(result.failed)} node(s) [{failed}]; "
            f"{len(result.pending)} node(s) not attempted"
        )


class BuildStepError(ConvergeError):
    def __init__(self, result: Any) -> None:
        self.result = result
        failed = ", ".join(
            f"{step_id}: {message}" for step_id, message in result.errors.items()
        )
        super().__init__(f"Pipeline failed [{failed}]")


class MissingArtifactError(ConvergeError):
    def __init__(self, step_id: str, artifact: str, reason: str) -> None:
        self.step_id = step_id
        self.artifact = artifact
        super().__init__(
            f"Step '{step_id}' cannot read artifact '{artifact}': {reason}"
        )


class StepExecutionError(ConvergeError):
    """A step runner could not run the command at all (spawn/SSH failure)."""
