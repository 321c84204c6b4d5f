"""
State Store Port

Architectural Intent:
- Persistence contract for the StateRecord and the run history
- The executors read the record once at the start of a run and write it
  once at the end (or at the failure point)
"""

from typing import Any, Optional, Protocol, runtime_checkable

from converge.domain.entities.state_record import StateRecord


@runtime_checkable
class StateStorePort(Protocol):
    def load(self) -> StateRecord: ...

    def save(self, record: StateRecord) -> StateRecord:
        """Persist the record with the next serial and return what was stored."""
        ...

    def record_run(
        self,
        command: str,
        started_at: str,
        outcome: str,
        counts: Optional[dict[str, int]] = None,
        details: str = "",
    ) -> int: ...

    def list_runs(self, limit: int = 50) -> list[dict[str, Any]]: ...
