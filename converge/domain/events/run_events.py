"""
Run Events

Architectural Intent:
- One event per observable status change of a resource node or build step,
  plus one event per finished apply/destroy/pipeline run
- aggregate_id is the node or step id for status events and the run kind
  for the finished events
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from converge.domain.events.event_base import DomainEvent


@dataclass(frozen=True)
class NodeStatusChangedEvent(DomainEvent):
    status: str = ""
    action: str = ""
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            status=self.status, action=self.action, error_message=self.error_message
        )
        return data


@dataclass(frozen=True)
class StepStatusChangedEvent(DomainEvent):
    status: str = ""
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(status=self.status, error_message=self.error_message)
        return data


@dataclass(frozen=True)
class ApplyFinishedEvent(DomainEvent):
    success: bool = True
    counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(success=self.success, counts=dict(self.counts))
        return data


@dataclass(frozen=True)
class PipelineFinishedEvent(DomainEvent):
    success: bool = True
    statuses: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(success=self.success, statuses=dict(self.statuses))
        return data
