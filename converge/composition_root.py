"""
Composition Root

Architectural Intent:
- Dependency injection composition root for the converge application
- Single place where all adapters and use cases are wired together
- No adapter instantiation should occur outside this module (except tests)

Design Decisions:
- Uses a simple dataclass container instead of a DI framework
- Factory function creates and wires all dependencies from ConvergeConfig
- The pipeline's deploy step needs the declarations and variables of the
  current invocation, so RunPipeline is built per call by `pipeline_for`
- Telemetry is only created when an endpoint is configured
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from converge.application.orchestration.apply_executor import (
    ApplyExecutor,
    ExecutorSettings,
)
from converge.application.orchestration.pipeline_executor import PipelineExecutor
from converge.application.use_cases.apply_infrastructure import ApplyInfrastructure
from converge.application.use_cases.deploy_resource import DeployResource
from converge.application.use_cases.destroy_infrastructure import DestroyInfrastructure
from converge.application.use_cases.plan_infrastructure import PlanInfrastructure
from converge.application.use_cases.run_pipeline import RunPipeline
from converge.application.use_cases.show_outputs import ShowOutputs
from converge.domain.ports.resource_provider_port import ResourceProviderPort
from converge.domain.ports.step_runner_port import StepRunnerPort
from converge.domain.value_objects.declarations import Declarations
from converge.domain.value_objects.retry_policy import RetryPolicy
from converge.infrastructure.adapters.fabric_runner import FabricCommandRunner
from converge.infrastructure.adapters.http_control_plane import HttpControlPlaneAdapter
from converge.infrastructure.adapters.local_command_runner import LocalCommandRunner
from converge.infrastructure.adapters.simulated_control_plane import (
    SimulatedControlPlaneAdapter,
)
from converge.infrastructure.config import ConvergeConfig, ProviderConfig
from converge.infrastructure.event_bus import EventBus
from converge.infrastructure.repositories.sqlite_state_store import SQLiteStateStore
from converge.infrastructure.telemetry.otel_exporter import OTELExporter, create_exporter


@dataclass
class ConvergeContainer:
    """DI container holding all wired dependencies."""

    config: ConvergeConfig
    provider: ResourceProviderPort
    state_store: SQLiteStateStore
    event_bus: EventBus
    telemetry: Optional[OTELExporter]
    executor: ApplyExecutor
    runners: dict[str, StepRunnerPort]
    plan: PlanInfrastructure
    apply: ApplyInfrastructure
    destroy: DestroyInfrastructure
    outputs: ShowOutputs

    def pipeline_for(
        self,
        declarations: Declarations,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> RunPipeline:
        """RunPipeline whose deploy step applies into these declarations."""
        deployer = DeployResource(self.executor, declarations, variables)
        executor = PipelineExecutor(
            self.runners,
            deployer=deployer,
            concurrency=self.config.pipeline.concurrency,
            event_bus=self.event_bus,
            telemetry=self.telemetry,
            state_store=self.state_store,
        )
        return RunPipeline(executor)

    def close(self) -> None:
        self.state_store.close()


def create_provider(config: ProviderConfig) -> ResourceProviderPort:
    if config.kind == "simulated":
        return SimulatedControlPlaneAdapter(
            project=config.project, registry_path=config.registry_path or None
        )
    if config.kind == "http":
        return HttpControlPlaneAdapter(
            endpoint=config.endpoint,
            project=config.project,
            api_token=config.api_token,
            timeout_seconds=config.timeout_seconds,
        )
    raise ValueError(f"Unknown provider kind: {config.kind!r} (expected simulated or http)")


def create_runners(config: ConvergeConfig) -> dict[str, StepRunnerPort]:
    runners: dict[str, StepRunnerPort] = {
        "command": LocalCommandRunner(workdir=config.pipeline.workdir),
    }
    if config.pipeline.build_host:
        runners["remote"] = FabricCommandRunner(
            config.pipeline.build_host,
            key_filename=config.pipeline.ssh_key_path,
            workdir=config.pipeline.workdir if config.pipeline.workdir != "." else "",
        )
    return runners


def create_container(
    config: Optional[ConvergeConfig] = None,
    provider: Optional[ResourceProviderPort] = None,
) -> ConvergeContainer:
    """Create and wire all dependencies."""
    config = config or ConvergeConfig()
    provider = provider or create_provider(config.provider)
    state_store = SQLiteStateStore(config.state.path)
    event_bus = EventBus()
    telemetry = None
    if config.telemetry.endpoint:
        telemetry = create_exporter(
            endpoint=config.telemetry.endpoint, insecure=config.telemetry.insecure
        )

    settings = ExecutorSettings(
        concurrency=config.executor.concurrency,
        retry=RetryPolicy(
            max_attempts=config.executor.max_attempts,
            initial_delay=config.executor.backoff_initial,
            multiplier=config.executor.backoff_multiplier,
            max_delay=config.executor.backoff_max,
        ),
        default_timeout_seconds=config.executor.default_timeout_seconds,
    )
    executor = ApplyExecutor(
        provider,
        state_store,
        settings=settings,
        event_bus=event_bus,
        telemetry=telemetry,
    )

    return ConvergeContainer(
        config=config,
        provider=provider,
        state_store=state_store,
        event_bus=event_bus,
        telemetry=telemetry,
        executor=executor,
        runners=create_runners(config),
        plan=PlanInfrastructure(state_store),
        apply=ApplyInfrastructure(executor),
        destroy=DestroyInfrastructure(executor),
        outputs=ShowOutputs(state_store),
    )
