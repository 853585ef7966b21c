"""Finalizer protocol guarding remote deletion.

The finalizer is added and persisted before the first remote create, and
removed only once the remote object is confirmed gone. A crash at any point
therefore leaves either the finalizer in place (the delete will be retried)
or no remote object behind.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import RemoteNotFoundError
from .models import Finalizer, ManagedResource
from .sync import RemoteApi, execute_with_timeout

if TYPE_CHECKING:
    from .store import ResourceStore

logger = logging.getLogger(__name__)


class FinalizerProtocol:
    """Adds and releases one finalizer around the remote object's lifetime."""

    def __init__(
        self,
        store: ResourceStore,
        remote: RemoteApi,
        finalizer: Finalizer,
        timeout_seconds: float,
    ) -> None:
        self._store = store
        self._remote = remote
        self._finalizer = finalizer
        self._timeout = timeout_seconds

    @property
    def finalizer(self) -> Finalizer:
        return self._finalizer

    async def ensure(self, resource: ManagedResource) -> bool:
        """Add the finalizer if missing and persist it.

        Returns:
            True if the finalizer had to be added.

        Raises:
            ResourceNotFoundError: If the resource vanished.
            ResourceConflictError: If the resource changed since it was read.
        """
        if not self._finalizer.add_to(resource):
            return False
        await self._store.update_finalizers(resource)
        logger.debug(
            "Added finalizer",
            extra={"resource": str(resource.key), "finalizer": self._finalizer.name},
        )
        return True

    async def finalize(self, resource: ManagedResource) -> None:
        """Delete the remote object, then release the finalizer.

        An empty external ID means nothing was ever created remotely. A
        not-found answer from the remote counts as a confirmed deletion.
        Any other error leaves the finalizer in place.

        Raises:
            RemoteApiError: The remote delete failed.
            TimeoutError: The remote delete exceeded the timeout.
        """
        external_id = resource.status.external_id
        if external_id:
            try:
                await execute_with_timeout(
                    self._remote.delete(external_id), self._timeout, "Delete"
                )
            except RemoteNotFoundError:
                logger.info(
                    "Remote object already deleted",
                    extra={"resource": str(resource.key), "external_id": external_id},
                )
            else:
                logger.info(
                    "Deleted remote object",
                    extra={"resource": str(resource.key), "external_id": external_id},
                )

        if self._finalizer.remove_from(resource):
            await self._store.update_finalizers(resource)
