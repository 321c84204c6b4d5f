"""
Domain Events Package

Architectural Intent:
- Contains domain events published during apply and pipeline runs
- Events are the primary mechanism for reporting progress across layers
"""

from converge.domain.events.event_base import DomainEvent
from converge.domain.events.run_events import (
    ApplyFinishedEvent,
    NodeStatusChangedEvent,
    PipelineFinishedEvent,
    StepStatusChangedEvent,
)

__all__ = [
    "DomainEvent",
    "NodeStatusChangedEvent",
    "StepStatusChangedEvent",
    "ApplyFinishedEvent",
    "PipelineFinishedEvent",
]
