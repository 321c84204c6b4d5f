"""
Plan Module

Architectural Intent:
- Read-only diff between declared desired state and the last StateRecord
- Produced by the differ for `plan`, and used by `apply` to report what it
  is about to do; executing a plan never mutates it
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass(frozen=True)
class PlannedChange:
    node_id: str
    type: str
    action: ChangeAction
    before: Mapping[str, Any] = field(default_factory=dict)
    after: Mapping[str, Any] = field(default_factory=dict)

    @property
    def changed_keys(self) -> list[str]:
        keys = set(self.before) | set(self.after)
        return sorted(k for k in keys if self.before.get(k) != self.after.get(k))


@dataclass(frozen=True)
class Plan:
    changes: tuple[PlannedChange, ...] = ()
    create_batches: tuple[tuple[str, ...], ...] = ()
    delete_batches: tuple[tuple[str, ...], ...] = ()

    @property
    def has_changes(self) -> bool:
        return any(c.action != ChangeAction.NO_OP for c in self.changes)

    def by_action(self, action: ChangeAction) -> list[PlannedChange]:
        return [c for c in self.changes if c.action == action]

    def summary(self) -> dict[str, int]:
        return {
            action.value: len(self.by_action(action))
            for action in (ChangeAction.CREATE, ChangeAction.UPDATE, ChangeAction.DELETE)
        }

    def __str__(self) -> str:
        counts = self.summary()
        return (
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['delete']} to delete"
        )
