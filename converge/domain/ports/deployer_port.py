"""
Deployer Port

Architectural Intent:
- What the pipeline's terminal deploy step needs from the apply side:
  change the attributes of exactly one resource node and converge only it
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class DeployerPort(Protocol):
    async def deploy(self, node_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Apply new attributes to one node and return its remote attributes."""
        ...
