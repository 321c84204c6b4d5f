"""
Destroy Infrastructure Use Case

Architectural Intent:
- Deletes every recorded remote object, in exactly the reverse of the
  recorded create order
- Works from state alone, so it still runs when the declaration file no
  longer builds; declarations, when given, only contribute per-type
  timeouts
"""

from typing import Iterable, Optional

from converge.application.orchestration.apply_executor import ApplyExecutor, ApplyResult
from converge.domain.value_objects.declarations import Declarations


class DestroyInfrastructure:
    def __init__(self, executor: ApplyExecutor):
        self.executor = executor

    async def execute(
        self,
        targets: Optional[Iterable[str]] = None,
        declarations: Optional[Declarations] = None,
    ) -> ApplyResult:
        schemas = declarations.resource_types if declarations is not None else None
        return await self.executor.destroy(targets, schemas)
