"""
Apply Executor

Architectural Intent:
- Converges a built ResourceGraph against the control plane, batch by batch
- Only component that calls the ResourceProviderPort and the only writer of
  node status and attributes after creation
- Reads the StateRecord once at the start and writes it once at the end of
  the run (or at the failure point)

Parallelization Strategy:
- Nodes of one batch run concurrently, bounded by an asyncio.Semaphore
- Batch k+1 starts only when every node of batch k finished; a FAILED node
  lets its siblings finish and stops all later batches
- Deletions of excluded/removed nodes run after every create and update
  succeeded, in reverse create order; a failed create leaves them pending

Failure Handling:
- TransientAPIError is retried with exponential backoff (RetryPolicy)
- NodeApplyError fails the node immediately
- The per-node timeout wraps the whole retrying operation; exceeding it
  fails the node without a further retry
- No rollback: whatever was created stays recorded in state
"""

from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from converge.domain.entities.plan import Plan
from converge.domain.entities.resource_graph import ResourceGraph
from converge.domain.entities.resource_node import NodeStatus, ResourceNode
from converge.domain.entities.state_record import NodeState, StateRecord
from converge.domain.errors import (
    ConvergeError,
    NodeApplyError,
    PartialApplyError,
    ResourceAlreadyExistsError,
    TransientAPIError,
    UnsatisfiedDependencyError,
    ValidationError,
)
from converge.domain.events.event_base import DomainEvent
from converge.domain.events.run_events import (
    ApplyFinishedEvent,
    NodeStatusChangedEvent,
)
from converge.domain.ports.event_bus_port import EventBusPort
from converge.domain.ports.resource_provider_port import ResourceProviderPort
from converge.domain.ports.state_store_port import StateStorePort
from converge.domain.ports.telemetry_port import TelemetryPort
from converge.domain.services.differ import Differ, desired_attributes, needs_update
from converge.domain.services.scheduler import TopologicalScheduler
from converge.domain.services.state_resolver import (
    ResolvedOutput,
    StateResolver,
    node_state,
)
from converge.domain.value_objects.declarations import ResourceTypeSchema
from converge.domain.value_objects.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutorSettings:
    concurrency: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    default_timeout_seconds: Optional[float] = 300.0

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")


@dataclass
class ApplyResult:
    command: str = "apply"
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    state: StateRecord = field(default_factory=StateRecord.empty)
    outputs: list[ResolvedOutput] = field(default_factory=list)
    plan: Optional[Plan] = None

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def counts(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
            "unchanged": len(self.unchanged),
            "failed": len(self.failed),
            "pending": len(self.pending),
        }


def _restore(node: ResourceNode, prior: Optional[NodeState]) -> None:
    """Load the last recorded status/attributes into a freshly built node."""
    if prior is None or not prior.has_remote_object:
        node.status = NodeStatus.FAILED if prior else NodeStatus.PENDING
        return
    node.status = (
        NodeStatus.FAILED if prior.status == NodeStatus.FAILED else NodeStatus.CREATED
    )
    node.resolved_attributes = dict(prior.attributes)
    node.remote_attributes = dict(prior.remote_attributes)


class ApplyExecutor:
    def __init__(
        self,
        provider: ResourceProviderPort,
        state_store: StateStorePort,
        settings: Optional[ExecutorSettings] = None,
        event_bus: Optional[EventBusPort] = None,
        telemetry: Optional[TelemetryPort] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.state_store = state_store
        self.settings = settings or ExecutorSettings()
        self.event_bus = event_bus
        self.telemetry = telemetry
        self._sleep = sleep
        self.differ = Differ()
        self.scheduler = TopologicalScheduler()
        self.state_resolver = StateResolver()

    # -- Public operations ---------------------------------------------------

    async def apply(self, graph: ResourceGraph) -> ApplyResult:
        started_at = datetime.now(UTC).isoformat()
        prior = self.state_store.load()
        plan = self.differ.plan(graph, prior)
        result = ApplyResult(command="apply", plan=plan)
        entries: dict[str, Optional[NodeState]] = {}
        span = self._start_span("converge.apply", {"nodes": str(len(graph.nodes))})

        for node in graph.nodes.values():
            _restore(node, prior.get(node.id))
        active = {n.id for n in graph.active_nodes()}
        for node_id, entry in prior.nodes.items():
            if node_id not in active and not entry.has_remote_object:
                entries[node_id] = None

        semaphore = asyncio.Semaphore(self.settings.concurrency)
        create_batches = [list(b) for b in plan.create_batches]
        delete_batches = [list(b) for b in plan.delete_batches]
        for index, batch in enumerate(create_batches):
            logger.info("Batch %d/%d: %s", index + 1, len(create_batches), batch)
            outcomes = await asyncio.gather(
                *(
                    self._guarded(
                        semaphore,
                        self._converge(graph, graph.node(node_id), prior.get(node_id)),
                    )
                    for node_id in batch
                ),
                return_exceptions=True,
            )
            for node_id, outcome in zip(batch, outcomes):
                node = graph.node(node_id)
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.error("Unexpected error applying %s: %r", node_id, outcome)
                    if node.status == NodeStatus.CREATING:
                        node.fail(f"unexpected error: {outcome!r}")
                        await self._node_event(node, "error")
                    result.failed[node_id] = node.error_message or repr(outcome)
                elif outcome == "failed":
                    result.failed[node_id] = node.error_message or "failed"
                else:
                    getattr(result, outcome).append(node_id)
                entries[node_id] = node_state(node)
            if result.failed:
                result.pending.extend(
                    n for later in create_batches[index + 1:] for n in later
                )
                result.pending.extend(n for b in delete_batches for n in b)
                logger.error(
                    "Batch %d failed (%s); %d node(s) not attempted",
                    index + 1,
                    ", ".join(sorted(result.failed)),
                    len(result.pending),
                )
                break
        else:
            # Dependents were re-pointed or removed above, so nothing live
            # still references what is deleted here.
            await self._run_deletions(
                delete_batches, prior, semaphore, result, entries, graph.schemas
            )

        record = self.state_resolver.next_record(prior, entries, create_batches)
        await self._finish(result, record, started_at, span)
        result.outputs = self.state_resolver.outputs(graph, result.state)
        if not result.success:
            raise PartialApplyError(result)
        return result

    async def destroy(
        self,
        only: Optional[Iterable[str]] = None,
        schemas: Optional[Mapping[str, ResourceTypeSchema]] = None,
    ) -> ApplyResult:
        """Delete every recorded remote object in reverse create order.

        ``schemas`` supplies per-type timeouts when declarations are at hand;
        types without one fall back to the default timeout.
        """
        started_at = datetime.now(UTC).isoformat()
        prior = self.state_store.load()
        result = ApplyResult(command="destroy")
        entries: dict[str, Optional[NodeState]] = {}
        span = self._start_span("converge.destroy")
        if only is not None:
            only = prior.with_dependents(only)
        batches = self.scheduler.destroy_batches(prior, only)
        semaphore = asyncio.Semaphore(self.settings.concurrency)
        await self._run_deletions(batches, prior, semaphore, result, entries, schemas)
        record = self.state_resolver.next_record(
            prior, entries, [list(b) for b in prior.create_order]
        )
        await self._finish(result, record, started_at, span)
        if not result.success:
            raise PartialApplyError(result)
        return result

    async def apply_node(self, graph: ResourceGraph, node_id: str) -> ApplyResult:
        """Converge exactly one node; its dependencies must already exist."""
        started_at = datetime.now(UTC).isoformat()
        prior = self.state_store.load()
        node = graph.node(node_id)
        if not node.present:
            raise ValidationError(
                [f"resource '{node_id}' is excluded by its condition or branch"]
            )
        for other in graph.nodes.values():
            _restore(other, prior.get(other.id))
        for dep in sorted(node.dependencies):
            if graph.node(dep).status != NodeStatus.CREATED:
                raise UnsatisfiedDependencyError(node_id, dep)

        result = ApplyResult(command=f"apply:{node_id}")
        span = self._start_span("converge.apply_node", {"node_id": node_id})
        semaphore = asyncio.Semaphore(1)
        outcome = await self._guarded(
            semaphore, self._converge(graph, node, prior.get(node_id))
        )
        if outcome == "failed":
            result.failed[node_id] = node.error_message or "failed"
        else:
            getattr(result, outcome).append(node_id)

        order = [list(b) for b in prior.create_order]
        if not any(node_id in b for b in order):
            order.append([node_id])
        record = self.state_resolver.next_record(
            prior, {node_id: node_state(node)}, order
        )
        await self._finish(result, record, started_at, span)
        result.outputs = self.state_resolver.outputs(graph, result.state)
        if not result.success:
            raise PartialApplyError(result)
        return result

    # -- Node operations -----------------------------------------------------

    async def _guarded(self, semaphore: asyncio.Semaphore, operation: Awaitable[str]) -> str:
        async with semaphore:
            return await operation

    async def _converge(
        self, graph: ResourceGraph, node: ResourceNode, prior: Optional[NodeState]
    ) -> str:
        """Create or update one node. Returns the ApplyResult bucket name."""
        exists = prior is not None and prior.has_remote_object
        action = "update" if exists else "create"
        try:
            rendered = desired_attributes(
                node, graph.render_attributes(node, self._value_of), prior
            )
        except (ConvergeError, KeyError) as e:
            node.start_create()
            node.fail(f"cannot resolve attributes: {e}")
            await self._node_event(node, action)
            return "failed"

        if (
            exists
            and prior.status == NodeStatus.CREATED
            and not needs_update(node, rendered, prior)
        ):
            node.resolved_attributes = rendered
            logger.debug("%s unchanged", node.id)
            return "unchanged"

        node.start_create()
        await self._node_event(node, action)
        timeout = graph.timeout_for(node) or self.settings.default_timeout_seconds
        begin = time.monotonic()
        try:
            if exists:
                operation = self._update(node, rendered)
            else:
                operation = self._create(node, rendered)
            remote = await asyncio.wait_for(operation, timeout=timeout)
        except asyncio.TimeoutError:
            node.fail(f"{action} timed out after {timeout}s")
        except TransientAPIError as e:
            node.fail(
                f"{action} gave up after {self.settings.retry.max_attempts} "
                f"attempt(s): {e}"
            )
        except (NodeApplyError, ResourceAlreadyExistsError) as e:
            node.fail(f"{action} failed: {e}")
        else:
            node.resolved_attributes = rendered
            node.complete(remote)

        self._record_duration(node, action, begin)
        await self._node_event(node, action)
        if node.status == NodeStatus.FAILED:
            logger.error("%s %s failed: %s", action.capitalize(), node.id, node.error_message)
            return "failed"
        logger.info("%s %s", "Updated" if exists else "Created", node.id)
        return "updated" if exists else "created"

    async def _create(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._with_retry(
                node, lambda: self.provider.create(node.type, node.id, attributes)
            )
        except ResourceAlreadyExistsError:
            logger.info("%s already exists remotely, reconciling", node.id)
        existing = await self._with_retry(
            node, lambda: self.provider.read(node.type, node.id)
        )
        if existing is None:
            raise NodeApplyError(
                f"'{node.id}' reported as existing but could not be read back"
            )
        if all(existing.get(k) == v for k, v in attributes.items()):
            return existing
        return await self._update(node, attributes)

    async def _update(self, node: ResourceNode, attributes: dict[str, Any]) -> dict[str, Any]:
        return await self._with_retry(
            node, lambda: self.provider.update(node.type, node.id, attributes)
        )

    async def _with_retry(self, node: ResourceNode, call: Callable[[], Awaitable[Any]]) -> Any:
        delays = self.settings.retry.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except TransientAPIError as e:
                if attempt > len(delays):
                    raise
                delay = delays[attempt - 1]
                logger.warning(
                    "Transient error on %s (attempt %d/%d): %s; retrying in %.2fs",
                    node.id,
                    attempt,
                    self.settings.retry.max_attempts,
                    e,
                    delay,
                )
                await self._sleep(delay)

    async def _run_deletions(
        self,
        batches: list[list[str]],
        prior: StateRecord,
        semaphore: asyncio.Semaphore,
        result: ApplyResult,
        entries: dict[str, Optional[NodeState]],
        schemas: Optional[Mapping[str, ResourceTypeSchema]] = None,
    ) -> None:
        schemas = schemas or {}
        for index, batch in enumerate(batches):
            logger.info("Delete batch %d/%d: %s", index + 1, len(batches), batch)
            nodes = [self._from_state(prior.nodes[node_id]) for node_id in batch]
            await asyncio.gather(
                *(
                    self._guarded(
                        semaphore, self._delete(node, self._type_timeout(schemas, node))
                    )
                    for node in nodes
                )
            )
            for node in nodes:
                if node.status == NodeStatus.DESTROYED:
                    result.deleted.append(node.id)
                    entries[node.id] = None
                else:
                    result.failed[node.id] = node.error_message or "delete failed"
                    entries[node.id] = node_state(node)
            if result.failed:
                result.pending.extend(n for later in batches[index + 1:] for n in later)
                return

    @staticmethod
    def _from_state(entry: NodeState) -> ResourceNode:
        return ResourceNode(
            id=entry.node_id,
            type=entry.type,
            status=NodeStatus.CREATED,
            dependencies=set(entry.dependencies),
            resolved_attributes=dict(entry.attributes),
            remote_attributes=dict(entry.remote_attributes),
        )

    def _type_timeout(
        self, schemas: Mapping[str, ResourceTypeSchema], node: ResourceNode
    ) -> Optional[float]:
        schema = schemas.get(node.type)
        if schema is not None and schema.timeout_seconds:
            return schema.timeout_seconds
        return self.settings.default_timeout_seconds

    async def _delete(self, node: ResourceNode, timeout: Optional[float]) -> str:
        node.start_destroy()
        await self._node_event(node, "delete")
        begin = time.monotonic()
        try:
            await asyncio.wait_for(
                self._with_retry(node, lambda: self.provider.delete(node.type, node.id)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            node.fail(f"delete timed out after {timeout}s")
        except (TransientAPIError, NodeApplyError) as e:
            node.fail(f"delete failed: {e}")
        else:
            node.destroyed()
            logger.info("Destroyed %s", node.id)
        self._record_duration(node, "delete", begin)
        await self._node_event(node, "delete")
        return node.status.name

    def _value_of(self, target: ResourceNode, field_name: str) -> Any:
        try:
            return target.attribute_value(field_name)
        except KeyError:
            raise NodeApplyError(
                f"'{target.id}' has no value for '{field_name}' "
                f"(status {target.status.name})"
            ) from None

    # -- Reporting -----------------------------------------------------------

    async def _finish(
        self, result: ApplyResult, record: StateRecord, started_at: str, span: Any
    ) -> None:
        result.state = self.state_store.save(record)
        outcome = "success" if result.success else "failed"
        self.state_store.record_run(
            result.command,
            started_at,
            outcome,
            result.counts(),
            "; ".join(f"{k}: {v}" for k, v in sorted(result.failed.items())),
        )
        await self._publish(
            ApplyFinishedEvent(
                aggregate_id=result.command,
                success=result.success,
                counts=result.counts(),
            )
        )
        if self.telemetry is not None:
            self.telemetry.end_span(span)
        logger.info(
            "%s finished (%s): %s",
            result.command,
            outcome,
            ", ".join(f"{k}={v}" for k, v in result.counts().items()),
        )

    async def _node_event(self, node: ResourceNode, action: str) -> None:
        await self._publish(
            NodeStatusChangedEvent(
                aggregate_id=node.id,
                status=node.status.name,
                action=action,
                error_message=node.error_message,
            )
        )

    async def _publish(self, event: DomainEvent) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish([event])

    def _start_span(self, name: str, attributes: Optional[dict[str, str]] = None) -> Any:
        if self.telemetry is None:
            return None
        return self.telemetry.start_span(name, attributes)

    def _record_duration(self, node: ResourceNode, action: str, begin: float) -> None:
        if self.telemetry is None:
            return
        self.telemetry.record_metric(
            "converge.node.duration_ms",
            (time.monotonic() - begin) * 1000.0,
            unit="ms",
            attributes={
                "node_id": node.id,
                "type": node.type,
                "action": action,
                "status": node.status.name,
            },
        )
