"""
Domain Ports Package

Architectural Intent:
- Contains port interfaces (abstract contracts) for external dependencies
- Ports define what the domain needs, adapters implement how
- Follows Hexagonal Architecture principles
"""

from converge.domain.ports.deployer_port import DeployerPort
from converge.domain.ports.event_bus_port import EventBusPort
from converge.domain.ports.resource_provider_port import ResourceProviderPort
from converge.domain.ports.state_store_port import StateStorePort
from converge.domain.ports.step_runner_port import StepRunnerPort
from converge.domain.ports.telemetry_port import TelemetryPort

__all__ = [
    "DeployerPort",
    "EventBusPort",
    "ResourceProviderPort",
    "StateStorePort",
    "StepRunnerPort",
    "TelemetryPort",
]
