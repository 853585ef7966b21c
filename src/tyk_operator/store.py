"""Interfaces to the orchestration runtime.

The engine never talks to the runtime's native object model directly. It
reads and writes managed resources through a ResourceStore and receives
change notifications from an EventSource. The Kubernetes implementations
live in kube.py; tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .dependency import ChangeEvent
    from .models import ManagedResource, ObjectKey
    from .resource_kinds import ResourceKind


class ResourceStore(Protocol):
    """Reads and writes managed resources and their backing configuration."""

    async def get(self, kind: ResourceKind, key: ObjectKey) -> ManagedResource:
        """Fetch one resource.

        Raises:
            ResourceNotFoundError: If the resource does not exist.
        """
        ...

    async def list(self, kind: ResourceKind) -> list[ManagedResource]:
        """List every resource of a kind within the watched namespaces."""
        ...

    async def update_finalizers(self, resource: ManagedResource) -> None:
        """Persist ``resource.metadata.finalizers``.

        Raises:
            ResourceNotFoundError: If the resource no longer exists.
            ResourceConflictError: If the resource changed since it was read.
        """
        ...

    async def update_status(self, resource: ManagedResource) -> None:
        """Persist ``resource.status``.

        Raises:
            ResourceNotFoundError: If the resource no longer exists.
        """
        ...

    async def read_configmap(self, key: ObjectKey) -> dict[str, str]:
        """Return the data section of a ConfigMap.

        Raises:
            ResourceNotFoundError: If the ConfigMap does not exist.
        """
        ...


class EventSource(Protocol):
    """Stream of change notifications from the orchestration runtime."""

    def stream(self) -> AsyncIterator[ChangeEvent]:
        """Yield change events until the source is closed."""
        ...
