"""
Run DTOs

Architectural Intent:
- Data Transfer Objects for the pipeline trigger boundary
- Input validation at the application boundary (CLI flags, webhook body)
- Decouples the external push payload from the domain TriggerEvent
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping

from converge.domain.value_objects.trigger_event import TriggerEvent

_REVISION_RE = re.compile(r"[0-9A-Za-z._-]{1,64}")
_BRANCH_RE = re.compile(r"[0-9A-Za-z._/-]{0,255}")
_REPOSITORY_RE = re.compile(r"[0-9A-Za-z._/:@-]{0,255}")
_BRANCH_PREFIX = "refs/heads/"


@dataclass(frozen=True)
class PushEventRequest:
    revision: str
    branch: str = ""
    repository: str = ""

    def __post_init__(self) -> None:
        if not self.revision:
            raise ValueError("revision cannot be empty")
        if not _REVISION_RE.fullmatch(self.revision):
            raise ValueError(f"invalid revision: {self.revision!r}")
        if not _BRANCH_RE.fullmatch(self.branch):
            raise ValueError(f"invalid branch: {self.branch!r}")
        if not _REPOSITORY_RE.fullmatch(self.repository):
            raise ValueError(f"invalid repository: {self.repository!r}")

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "PushEventRequest":
        """Accept a flat {revision, branch, repository} body or a git host push body."""
        if "revision" in payload:
            return PushEventRequest(
                revision=str(payload["revision"]),
                branch=str(payload.get("branch") or ""),
                repository=str(payload.get("repository") or ""),
            )
        ref = str(payload.get("ref") or "")
        repository = payload.get("repository") or {}
        if isinstance(repository, Mapping):
            repository = repository.get("full_name") or repository.get("name") or ""
        return PushEventRequest(
            revision=str(payload.get("after") or ""),
            branch=ref[len(_BRANCH_PREFIX):] if ref.startswith(_BRANCH_PREFIX) else ref,
            repository=str(repository),
        )

    def to_trigger(self) -> TriggerEvent:
        return TriggerEvent(
            revision=self.revision, branch=self.branch, repository=self.repository
        )


@dataclass(frozen=True)
class PipelineRunResponse:
    success: bool
    message: str
    statuses: dict[str, str]
