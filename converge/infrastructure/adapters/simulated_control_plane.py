"""
Simulated Control Plane Adapter

Architectural Intent:
- Implements ResourceProviderPort with an in-memory registry shaped like a
  REST cloud control plane (Compute-style self links, numeric ids,
  generations, operation timestamps)
- Lets plan/apply/destroy and the pipeline deploy step run end to end with
  zero cloud credentials
- Fault injection (transient/fatal errors, latency) for exercising the
  executor's retry, timeout and partial-failure paths

Design Decisions:
- Ids are sequential and therefore deterministic within one adapter
- Every call is appended to `calls`; `mutations` counts create/update/delete
- Computed attributes per type come from small _stub_* helpers; unknown
  types only get the common fields (id, self_link, generation, create_time)
- `max_in_flight` tracks the highest number of concurrent calls seen
- With a registry_path the registry survives between CLI invocations (JSON
  file rewritten after every mutation); without one it lives in memory

Simulated defaults:
  project : converge-sim
  region  : us-central1
"""

import asyncio
import datetime
import json
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Callable, Optional

from converge.domain.errors import (
    NodeApplyError,
    ResourceAlreadyExistsError,
    TransientAPIError,
)

logger = logging.getLogger(__name__)

MUTATING_OPERATIONS = ("create", "update", "delete")


# ---------------------------------------------------------------------------
# Internal helpers that mimic the shape of control-plane REST payloads
# ---------------------------------------------------------------------------

def _make_self_link(project: str, region: str, resource_type: str, name: str) -> str:
    return (
        f"https://control.example.com/v1/projects/{project}"
        f"/regions/{region}/{resource_type}s/{name}"
    )


def _make_address(index: int) -> str:
    return f"34.120.{(index // 250) % 250}.{index % 250 + 1}"


def _stub_global_address(name: str, attributes: dict, index: int, **_: Any) -> dict:
    return {"address": _make_address(index), "address_type": "EXTERNAL"}


def _stub_managed_certificate(name: str, attributes: dict, index: int, **_: Any) -> dict:
    domains = attributes.get("domains") or []
    return {
        "certificate_status": "ACTIVE",
        "domain_status": {d: "ACTIVE" for d in domains},
    }


def _stub_service(name: str, attributes: dict, index: int, project: str, **_: Any) -> dict:
    return {
        "url": f"https://{name}-{index:06d}.run.example.app",
        "latest_ready_revision": f"{name}-{index:05d}",
    }


def _stub_forwarding_rule(name: str, attributes: dict, index: int, **_: Any) -> dict:
    return {"ip_address": attributes.get("ip_address") or _make_address(index)}


_COMPUTED: dict[str, Callable[..., dict]] = {
    "global_address": _stub_global_address,
    "managed_ssl_certificate": _stub_managed_certificate,
    "cloud_run_service": _stub_service,
    "forwarding_rule": _stub_forwarding_rule,
}


@dataclass
class _Fault:
    operation: str
    resource_type: Optional[str]
    name: Optional[str]
    kind: str  # "transient" or "fatal"
    remaining: int

    def matches(self, operation: str, resource_type: str, name: str) -> bool:
        return (
            self.remaining != 0
            and self.operation == operation
            and self.resource_type in (None, resource_type)
            and self.name in (None, name)
        )


# ---------------------------------------------------------------------------
# Public adapter
# ---------------------------------------------------------------------------

class SimulatedControlPlaneAdapter:
    """
    In-memory control plane implementing ResourceProviderPort.
    """

    def __init__(
        self,
        project: str = "converge-sim",
        region: str = "us-central1",
        registry_path: Optional[str] = None,
    ) -> None:
        self.project = project
        self.region = region
        self._registry_path = Path(registry_path) if registry_path else None
        self._objects: dict[tuple[str, str], dict[str, Any]] = {}
        self._sequence = 0
        self._faults: list[_Fault] = []
        self._latency: dict[str, float] = {}
        self._in_flight = 0
        self.max_in_flight = 0
        self.calls: list[tuple[str, str, str]] = []
        self._load()

    # -- Test and demo hooks -------------------------------------------------

    def inject_failure(
        self,
        operation: str = "create",
        resource_type: Optional[str] = None,
        name: Optional[str] = None,
        kind: str = "transient",
        times: int = 1,
    ) -> None:
        """Make the next `times` matching calls fail (times=-1: forever)."""
        if kind not in ("transient", "fatal"):
            raise ValueError(f"Unknown fault kind: {kind}")
        self._faults.append(_Fault(operation, resource_type, name, kind, times))

    def set_latency(self, name: str, seconds: float) -> None:
        self._latency[name] = seconds

    def seed(self, resource_type: str, name: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Place an object in the registry without going through create()."""
        remote = self._materialize(resource_type, name, attributes)
        self._objects[(resource_type, name)] = remote
        self._save()
        return self._public(remote)

    @property
    def mutations(self) -> int:
        return sum(1 for op, _, _ in self.calls if op in MUTATING_OPERATIONS)

    def objects(self) -> dict[str, dict[str, Any]]:
        return {name: self._public(obj) for (_, name), obj in sorted(self._objects.items())}

    # -- ResourceProviderPort ------------------------------------------------

    async def create(
        self, resource_type: str, name: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._call("create", resource_type, name):
            if (resource_type, name) in self._objects:
                raise ResourceAlreadyExistsError(
                    f"{resource_type} '{name}' already exists"
                )
            remote = self._materialize(resource_type, name, attributes)
            self._objects[(resource_type, name)] = remote
            self._save()
            logger.debug("Simulated create %s/%s -> id %s", resource_type, name, remote["id"])
            return self._public(remote)

    async def read(self, resource_type: str, name: str) -> Optional[dict[str, Any]]:
        async with self._call("read", resource_type, name):
            remote = self._objects.get((resource_type, name))
            return self._public(remote) if remote else None

    async def update(
        self, resource_type: str, name: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._call("update", resource_type, name):
            current = self._objects.get((resource_type, name))
            if current is None:
                raise NodeApplyError(f"{resource_type} '{name}' not found", 404)
            computed = {k: v for k, v in current.items() if k not in current["_declared"]}
            remote = {**computed, **attributes}
            remote["_declared"] = tuple(attributes)
            remote["generation"] = current["generation"] + 1
            remote["update_time"] = self._now()
            self._objects[(resource_type, name)] = remote
            self._save()
            logger.debug("Simulated update %s/%s (generation %d)", resource_type, name, remote["generation"])
            return self._public(remote)

    async def delete(self, resource_type: str, name: str) -> None:
        async with self._call("delete", resource_type, name):
            if self._objects.pop((resource_type, name), None) is None:
                logger.debug("Simulated delete of missing %s/%s", resource_type, name)
            else:
                self._save()

    # -- Internals -----------------------------------------------------------

    def _load(self) -> None:
        if self._registry_path is None or not self._registry_path.exists():
            return
        with open(self._registry_path) as f:
            data = json.load(f)
        self._sequence = int(data.get("sequence", 0))
        for key, remote in data.get("objects", {}).items():
            resource_type, _, name = key.partition("/")
            remote["_declared"] = tuple(remote.get("_declared", ()))
            self._objects[(resource_type, name)] = remote
        logger.debug("Loaded %d simulated object(s) from %s", len(self._objects), self._registry_path)

    def _save(self) -> None:
        if self._registry_path is None:
            return
        data = {
            "sequence": self._sequence,
            "objects": {
                f"{t}/{n}": {**obj, "_declared": list(obj["_declared"])}
                for (t, n), obj in sorted(self._objects.items())
            },
        }
        with open(self._registry_path, "w") as f:
            json.dump(data, f, indent=2, sort_keys=True)

    def _materialize(self, resource_type: str, name: str, attributes: dict[str, Any]) -> dict[str, Any]:
        self._sequence += 1
        index = self._sequence
        stub = _COMPUTED.get(resource_type)
        computed = stub(name, attributes, index, project=self.project) if stub else {}
        return {
            "id": str(1000000 + index),
            "self_link": _make_self_link(self.project, self.region, resource_type, name),
            "generation": 1,
            "create_time": self._now(),
            **computed,
            **attributes,
            "_declared": tuple(attributes),
        }

    @staticmethod
    def _public(remote: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in remote.items() if k != "_declared"}

    @staticmethod
    def _now() -> str:
        return datetime.datetime.now(datetime.UTC).isoformat()

    def _call(self, operation: str, resource_type: str, name: str) -> "_CallContext":
        return _CallContext(self, operation, resource_type, name)


class _CallContext:
    """Bookkeeping around one simulated API call: log, latency, faults."""

    def __init__(self, adapter: SimulatedControlPlaneAdapter, operation: str, resource_type: str, name: str) -> None:
        self.adapter = adapter
        self.operation = operation
        self.resource_type = resource_type
        self.name = name

    async def __aenter__(self) -> None:
        adapter = self.adapter
        adapter.calls.append((self.operation, self.resource_type, self.name))
        adapter._in_flight += 1
        adapter.max_in_flight = max(adapter.max_in_flight, adapter._in_flight)
        try:
            await asyncio.sleep(adapter._latency.get(self.name, 0.0))
            self._raise_injected()
        except BaseException:
            adapter._in_flight -= 1
            raise

    def _raise_injected(self) -> None:
        for fault in self.adapter._faults:
            if fault.matches(self.operation, self.resource_type, self.name):
                if fault.remaining > 0:
                    fault.remaining -= 1
                message = f"injected {fault.kind} failure on {self.operation} {self.name}"
                if fault.kind == "transient":
                    raise TransientAPIError(message, 503)
                raise NodeApplyError(message, 400)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.adapter._in_flight -= 1
