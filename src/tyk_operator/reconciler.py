"""Reconciliation of a single managed resource.

One pass takes one resource from whatever state it is in one step closer to
its declaration:

    Absent -> Creating -> Synced <-> Updating
    (any)  -> Deleting -> Removed       whenever deletion was requested

Upsert path:
1. Ensure the finalizer is persisted (before anything is created remotely)
2. Load the desired payload from the resource or its backing configuration
3. Resolve the external ID (status > embedded > encoded key)
4. Create or fully replace the remote object; an ID assigned by the remote
   is persisted right away
5. Write the last transaction and observed fields onto the status
6. Ask the gateway to reload

Deletion path:
1. Delete the remote object (not-found counts as deleted)
2. Release the finalizer
3. Ask the gateway to reload

Every pass is level-triggered: the desired state is re-submitted even when
nothing changed, which also repairs out-of-band edits on the remote side.
Failures leave the resource in its previous logical state and come back
with an explicit ``requeue_after``; nothing sleeps here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from .config import Config
from .errors import (
    ErrorKind,
    OperatorError,
    ResourceNotFoundError,
    classify_error,
)
from .finalizer import FinalizerProtocol
from .identity import resolve_external_id
from .models import ManagedResource
from .resource_kinds import RemoteCollection, ResourceKind, get_kind
from .status import StatusReporter
from .store import ResourceStore
from .sync import RemoteApi, SyncEngine, execute_with_timeout
from .work_queue import ReconcileRequest

logger = logging.getLogger(__name__)

# Errors a pass records on the resource instead of propagating
RECORDED_ERRORS: tuple[type[BaseException], ...] = (OperatorError, TimeoutError)


class GatewayClient(Protocol):
    """What the reconciler needs from the management API client."""

    def collection(self, collection: RemoteCollection) -> RemoteApi: ...

    async def reload(self) -> None: ...


class ReconcilePhase(str, Enum):
    """Logical state of a resource after a pass."""

    ABSENT = "Absent"
    CREATING = "Creating"
    SYNCED = "Synced"
    UPDATING = "Updating"
    DELETING = "Deleting"
    REMOVED = "Removed"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    request: ReconcileRequest
    phase: ReconcilePhase = ReconcilePhase.ABSENT
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    external_id: str = ""
    created: bool = False
    reloaded: bool = False
    error: BaseException | None = None
    requeue_after: float | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    @property
    def error_kind(self) -> ErrorKind | None:
        if self.error is None:
            return None
        return classify_error(self.error)


class Reconciler:
    """Converges managed resources onto the remote management API.

    The reconciler holds no per-resource state. Exclusivity per resource is
    the caller's job (see ResourceQueue).
    """

    def __init__(
        self,
        config: Config,
        store: ResourceStore,
        client: GatewayClient,
        reporter: StatusReporter | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._client = client
        self._reporter = reporter or StatusReporter(store)
        self._timeout = config.request_timeout_seconds

    @property
    def config(self) -> Config:
        return self._config

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """Run one pass for one resource.

        Never raises for failures of the pass itself; those are recorded on
        the result. Cancellation propagates.
        """
        result = ReconcileResult(request=request)
        kind = get_kind(request.kind)

        try:
            resource = await self._store.get(kind, request.key)
            remote = self._client.collection(kind.collection)
            if resource.deletion_requested:
                await self._delete(resource, kind, remote, result)
            else:
                await self._upsert(resource, kind, remote, result)
        except ResourceNotFoundError:
            # Gone from the store, either never existed or already finalized
            logger.debug("Resource not found, nothing to do", extra={"resource": str(request)})
            result.phase = ReconcilePhase.REMOVED
        except RECORDED_ERRORS as e:
            result.error = e
        except Exception as e:
            logger.exception(
                "Unexpected error during reconciliation", extra={"resource": str(request)}
            )
            result.error = e

        if result.error is not None and classify_error(result.error).should_retry:
            result.requeue_after = self._config.requeue_after_seconds

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _upsert(
        self,
        resource: ManagedResource,
        kind: ResourceKind,
        remote: RemoteApi,
        result: ReconcileResult,
    ) -> None:
        recorded_id = resource.status.external_id
        prior = ReconcilePhase.SYNCED if recorded_id else ReconcilePhase.ABSENT
        result.external_id = recorded_id
        result.phase = prior

        finalizers = FinalizerProtocol(self._store, remote, kind.finalizer, self._timeout)
        try:
            await finalizers.ensure(resource)
        except ResourceNotFoundError:
            raise
        except RECORDED_ERRORS as e:
            result.error = e
            logger.warning(
                "Failed to add finalizer, nothing sent",
                extra={"resource": str(resource.key), "kind": kind.kind, "error": str(e)},
            )
            self._reporter.record_transaction(resource, e)
            await self._write_status_best_effort(resource)
            return

        sync_error: BaseException | None = None
        assigned_id = ""
        try:
            payload = await kind.load_payload(resource, self._store)
            external_id = resolve_external_id(resource.key, recorded_id, payload, kind.id_paths)
            result.external_id = external_id
            result.phase = ReconcilePhase.UPDATING if recorded_id else ReconcilePhase.CREATING

            engine = SyncEngine(remote, self._timeout)
            synced = await engine.sync(external_id, payload, kind.required_section)
            result.external_id = synced.external_id
            result.created = synced.created
            result.phase = ReconcilePhase.SYNCED
            if synced.created and synced.external_id != external_id:
                assigned_id = synced.external_id
        except RECORDED_ERRORS as e:
            sync_error = e
            result.error = e
            result.phase = prior
            logger.warning(
                "Sync failed",
                extra={
                    "resource": str(resource.key),
                    "kind": kind.kind,
                    "error_kind": classify_error(e).value,
                    "error": str(e),
                },
            )

        if assigned_id:
            await self._persist_assigned_id(resource, assigned_id)

        await self._reporter.report(resource, kind, result.external_id, sync_error)
        if resource.status.external_id:
            result.external_id = resource.status.external_id

        if sync_error is None:
            await self._reload(resource, result)

    async def _delete(
        self,
        resource: ManagedResource,
        kind: ResourceKind,
        remote: RemoteApi,
        result: ReconcileResult,
    ) -> None:
        result.external_id = resource.status.external_id

        if not kind.finalizer.is_set_on(resource):
            result.phase = ReconcilePhase.REMOVED
            return

        result.phase = ReconcilePhase.DELETING
        finalizers = FinalizerProtocol(self._store, remote, kind.finalizer, self._timeout)
        try:
            await finalizers.finalize(resource)
        except ResourceNotFoundError:
            raise
        except RECORDED_ERRORS as e:
            result.error = e
            logger.warning(
                "Finalization failed, keeping finalizer",
                extra={
                    "resource": str(resource.key),
                    "kind": kind.kind,
                    "external_id": result.external_id,
                    "error": str(e),
                },
            )
            self._reporter.record_transaction(resource, e)
            await self._write_status_best_effort(resource)
            return

        result.phase = ReconcilePhase.REMOVED
        if result.external_id:
            await self._reload(None, result)

    async def _reload(self, resource: ManagedResource | None, result: ReconcileResult) -> None:
        """Ask the gateway to pick up the change. Never rolls the sync back."""
        try:
            await execute_with_timeout(self._client.reload(), self._timeout, "Reload")
        except RECORDED_ERRORS as e:
            result.error = e
            logger.warning(
                "Gateway reload failed",
                extra={"resource": str(result.request), "error": str(e)},
            )
            if resource is not None:
                self._reporter.record_transaction(resource, e)
                await self._write_status_best_effort(resource)
            return
        result.reloaded = True

    async def _persist_assigned_id(self, resource: ManagedResource, assigned_id: str) -> None:
        """Record an ID chosen by the remote before anything else can fail.

        The next pass cannot derive this ID on its own; losing it would
        create the object a second time.
        """
        resource.status.external_id = assigned_id
        try:
            await self._store.update_status(resource)
        except ResourceNotFoundError:
            raise
        except OperatorError as e:
            # The status report at the end of the pass writes it again
            logger.warning(
                "Failed to persist assigned external ID",
                extra={"resource": str(resource.key), "external_id": assigned_id, "error": str(e)},
            )

    async def _write_status_best_effort(self, resource: ManagedResource) -> None:
        try:
            await self._store.update_status(resource)
        except OperatorError as e:
            logger.warning(
                "Failed to write status",
                extra={"resource": str(resource.key), "error": str(e)},
            )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "resource": str(result.request.key),
            "kind": result.request.kind,
            "phase": result.phase.value,
            "external_id": result.external_id,
            "created_remote": result.created,
            "reloaded": result.reloaded,
            "requeue_after": result.requeue_after,
            "duration_seconds": result.duration_seconds,
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_kind"] = classify_error(result.error).value
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
