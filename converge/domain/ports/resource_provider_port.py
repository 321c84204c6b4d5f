"""
Resource Provider Port

Architectural Intent:
- Port interface for the remote control plane that owns real resources
- Implemented by the simulated in-memory adapter and the HTTP adapter
- Remote objects are addressed by (resource type, node id)

Design Decisions:
- Uses Protocol for structural typing (no inheritance needed)
- Every call returns the provider's view of the object; "id" is always set
- Failure signalling is by exception: TransientAPIError (retry),
  NodeApplyError (fatal for the node), ResourceAlreadyExistsError (create
  on an object that already exists; the caller reconciles)
"""

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class ResourceProviderPort(Protocol):
    """Port for control-plane CRUD operations."""

    async def create(
        self, resource_type: str, name: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        """Create an object and return its remote attributes."""
        ...

    async def read(self, resource_type: str, name: str) -> Optional[dict[str, Any]]:
        """Return remote attributes, or None if the object does not exist."""
        ...

    async def update(
        self, resource_type: str, name: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace the declared attributes of an existing object."""
        ...

    async def delete(self, resource_type: str, name: str) -> None:
        """Delete an object. Deleting a missing object is not an error."""
        ...
