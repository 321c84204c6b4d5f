"""
Pipeline Executor

Architectural Intent:
- Runs the build pipeline DAG for one trigger event (a push)
- A step becomes ready once every step it waits for SUCCEEDED
- Step commands go through StepRunnerPort adapters chosen by action kind;
  the terminal `deploy` kind goes through the DeployerPort
- Values substituted into a step command are shell-quoted; only the
  literal command text is interpreted by the shell

Parallelization Strategy:
- Ready steps start in declaration order, at most `concurrency` at a time
- asyncio.wait(FIRST_COMPLETED) so a failure is seen as soon as it happens
- Fail-fast: the first FAILED step turns every not-yet-started step into
  SKIPPED; steps already running are allowed to finish

Artifacts:
- Rendered after a step succeeds, with `step.stdout`, `step.digest` and
  `step.exit_code` in scope; an empty result means "not produced"
- Reading an artifact of a step that did not succeed, or that it did not
  produce, raises MissingArtifactError inside the reading step
"""

from __future__ import annotations
import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Mapping, Optional

from converge.domain.entities.build_step import BuildStepNode, StepStatus
from converge.domain.entities.resource_graph import PipelineGraph
from converge.domain.errors import (
    BuildStepError,
    ConvergeError,
    MissingArtifactError,
    ValidationError,
)
from converge.domain.events.event_base import DomainEvent
from converge.domain.events.run_events import (
    PipelineFinishedEvent,
    StepStatusChangedEvent,
)
from converge.domain.ports.deployer_port import DeployerPort
from converge.domain.ports.event_bus_port import EventBusPort
from converge.domain.ports.state_store_port import StateStorePort
from converge.domain.ports.step_runner_port import StepRunnerPort
from converge.domain.ports.telemetry_port import TelemetryPort
from converge.domain.services.expressions import (
    STEP_ROOT,
    TRIGGER_ROOT,
    VAR_ROOT,
    Ref,
    render,
    render_command,
    scoped_resolver,
    walk_path,
)
from converge.domain.value_objects.step_outcome import StepOutcome
from converge.domain.value_objects.trigger_event import TriggerEvent

logger = logging.getLogger(__name__)

DEPLOY_KIND = "deploy"
_DIGEST_RE = re.compile(r"sha256:[0-9a-f]{64}")


def step_digest(stdout: str) -> str:
    """Last sha256 digest printed by the step, else a digest of its output."""
    found = _DIGEST_RE.findall(stdout)
    if found:
        return found[-1]
    return "sha256:" + hashlib.sha256(stdout.encode()).hexdigest()


@dataclass
class PipelineResult:
    trigger: TriggerEvent
    statuses: dict[str, StepStatus] = field(default_factory=dict)
    artifacts: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(s == StepStatus.SUCCEEDED for s in self.statuses.values())

    def ids_with(self, status: StepStatus) -> list[str]:
        return [k for k, v in self.statuses.items() if v == status]


class PipelineExecutor:
    def __init__(
        self,
        runners: Mapping[str, StepRunnerPort],
        deployer: Optional[DeployerPort] = None,
        concurrency: int = 2,
        event_bus: Optional[EventBusPort] = None,
        telemetry: Optional[TelemetryPort] = None,
        state_store: Optional[StateStorePort] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.runners = dict(runners)
        self.deployer = deployer
        self.concurrency = concurrency
        self.event_bus = event_bus
        self.telemetry = telemetry
        self.state_store = state_store

    def _check_kinds(self, graph: PipelineGraph) -> None:
        problems = []
        for step in graph.steps.values():
            kind = step.action.kind
            if kind == DEPLOY_KIND:
                if self.deployer is None:
                    problems.append(f"step '{step.id}': no deployer configured")
            elif kind not in self.runners:
                problems.append(
                    f"step '{step.id}': no runner for action kind '{kind}' "
                    f"(available: {', '.join(sorted(self.runners)) or 'none'})"
                )
            elif not step.action.params.get("command"):
                problems.append(f"step '{step.id}': '{kind}' action needs a 'command'")
        if problems:
            raise ValidationError(problems)

    async def run(self, graph: PipelineGraph, trigger: TriggerEvent) -> PipelineResult:
        self._check_kinds(graph)
        started_at = datetime.now(UTC).isoformat()
        span = None
        if self.telemetry is not None:
            span = self.telemetry.start_span(
                "converge.pipeline", {"revision": trigger.revision}
            )
        logger.info(
            "Pipeline started for %s (%d step(s))", trigger.short_revision, len(graph.steps)
        )

        running: dict[asyncio.Task, str] = {}
        aborted = False
        while True:
            if not aborted:
                for step_id in graph.order:
                    if len(running) >= self.concurrency:
                        break
                    step = graph.step(step_id)
                    if step.status == StepStatus.PENDING and self._ready(graph, step):
                        step.start()
                        await self._step_event(step)
                        task = asyncio.create_task(self._run_step(graph, step, trigger))
                        running[task] = step_id
            if not running:
                break
            done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                step = graph.step(running.pop(task))
                error = task.exception()
                if error is not None:
                    if not isinstance(error, Exception):
                        raise error
                    logger.error("Unexpected error in step %s: %r", step.id, error)
                    step.fail(f"unexpected error: {error!r}")
                await self._step_event(step)
                if step.status == StepStatus.FAILED and not aborted:
                    aborted = True
                    logger.error(
                        "Step %s failed: %s; skipping remaining steps",
                        step.id,
                        step.error_message,
                    )
                    for other in graph.steps.values():
                        if other.status == StepStatus.PENDING:
                            other.skip()
                            await self._step_event(other)

        for step in graph.steps.values():
            if step.status == StepStatus.PENDING:
                step.skip()
                await self._step_event(step)

        result = PipelineResult(
            trigger=trigger,
            statuses={k: s.status for k, s in graph.steps.items()},
            artifacts={
                k: dict(s.produced_artifacts)
                for k, s in graph.steps.items()
                if s.status == StepStatus.SUCCEEDED
            },
            errors={
                k: s.error_message or "failed"
                for k, s in graph.steps.items()
                if s.status == StepStatus.FAILED
            },
            outputs={k: s.output for k, s in graph.steps.items() if s.output},
        )
        await self._finish(result, started_at, span)
        if not result.success:
            raise BuildStepError(result)
        return result

    @staticmethod
    def _ready(graph: PipelineGraph, step: BuildStepNode) -> bool:
        return all(
            graph.step(dep).status == StepStatus.SUCCEEDED for dep in step.dependencies
        )

    def _resolver(
        self,
        graph: PipelineGraph,
        step: BuildStepNode,
        trigger: TriggerEvent,
        own: Optional[dict[str, Any]] = None,
    ):
        scopes: dict[str, Mapping[str, Any]] = {
            VAR_ROOT: graph.variables,
            TRIGGER_ROOT: trigger.scope(),
        }
        if own is not None:
            scopes[STEP_ROOT] = own

        def resolve_artifact(ref: Ref) -> Any:
            source = graph.step(ref.root)
            if source.status != StepStatus.SUCCEEDED:
                raise MissingArtifactError(
                    step.id, str(ref), f"step '{source.id}' is {source.status.name}"
                )
            if ref.field not in source.produced_artifacts:
                raise MissingArtifactError(
                    step.id, str(ref), f"step '{source.id}' did not produce it"
                )
            return walk_path(source.produced_artifacts[ref.field], ref)

        return scoped_resolver(scopes, resolve_artifact)

    async def _run_step(
        self, graph: PipelineGraph, step: BuildStepNode, trigger: TriggerEvent
    ) -> None:
        begin = time.monotonic()
        output = ""
        try:
            resolve = self._resolver(graph, step, trigger)
            if step.action.kind == DEPLOY_KIND:
                params = render(dict(step.action.params), resolve)
                outcome = await self._deploy(step, params)
            else:
                params = dict(step.action.params)
                command = render_command(str(params.pop("command")), resolve)
                params = render(params, resolve)
                outcome = await self.runners[step.action.kind].run(
                    command,
                    env={k: str(v) for k, v in (params.get("env") or {}).items()},
                    timeout=step.timeout_seconds,
                )
            output = outcome.stdout
            if not outcome.ok:
                tail = (outcome.stderr or outcome.stdout).strip().splitlines()[-5:]
                step.fail(f"exit code {outcome.exit_code}: {' | '.join(tail)}", output)
            else:
                own = {
                    "stdout": outcome.stdout.strip(),
                    "digest": step_digest(outcome.stdout),
                    "exit_code": outcome.exit_code,
                }
                artifacts = render(
                    dict(step.artifacts), self._resolver(graph, step, trigger, own)
                )
                for name, value in artifacts.items():
                    if value is None or value == "":
                        raise MissingArtifactError(step.id, name, "rendered empty")
                step.succeed(artifacts, output)
        except asyncio.TimeoutError:
            step.fail(f"timed out after {step.timeout_seconds}s", output)
        except ConvergeError as e:
            step.fail(str(e), output)

        if self.telemetry is not None:
            self.telemetry.record_metric(
                "converge.step.duration_ms",
                (time.monotonic() - begin) * 1000.0,
                unit="ms",
                attributes={"step_id": step.id, "status": step.status.name},
            )
        if step.status == StepStatus.SUCCEEDED:
            logger.info("Step %s succeeded", step.id)

    async def _deploy(self, step: BuildStepNode, params: Mapping[str, Any]) -> StepOutcome:
        assert self.deployer is not None
        remote = await asyncio.wait_for(
            self.deployer.deploy(str(params["resource"]), dict(params["attributes"])),
            timeout=step.timeout_seconds,
        )
        return StepOutcome(exit_code=0, stdout=json.dumps(remote, sort_keys=True))

    async def _finish(self, result: PipelineResult, started_at: str, span: Any) -> None:
        statuses = {k: v.name for k, v in result.statuses.items()}
        if self.state_store is not None:
            counts: dict[str, int] = {}
            for name in statuses.values():
                counts[name.lower()] = counts.get(name.lower(), 0) + 1
            self.state_store.record_run(
                f"pipeline:{result.trigger.short_revision}",
                started_at,
                "success" if result.success else "failed",
                counts,
                "; ".join(f"{k}: {v}" for k, v in sorted(result.errors.items())),
            )
        await self._publish(
            PipelineFinishedEvent(
                aggregate_id=result.trigger.revision,
                success=result.success,
                statuses=statuses,
            )
        )
        if self.telemetry is not None:
            self.telemetry.end_span(span)
        logger.info(
            "Pipeline %s: %s",
            "succeeded" if result.success else "failed",
            ", ".join(f"{k}={v}" for k, v in statuses.items()),
        )

    async def _step_event(self, step: BuildStepNode) -> None:
        await self._publish(
            StepStatusChangedEvent(
                aggregate_id=step.id,
                status=step.status.name,
                error_message=step.error_message,
            )
        )

    async def _publish(self, event: DomainEvent) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish([event])
