"""Controller manager: event pump, dependency fan-out and worker pool.

Control flow:

    event source -> handle_event() -> [change filter -> dependency index]
                 -> ResourceQueue -> worker -> Reconciler
                 -> on failure: enqueue again after result.requeue_after

On start every existing resource is listed once, which seeds the dependency
index and schedules a first pass for each of them.

Updates of a managed resource whose generation and deletion state did not
change are dropped. The operator's own status and finalizer writes arrive as
such updates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from .config import Config
from .dependency import ChangeEvent, ChangeFilter, ChangeType, DependencyIndex
from .models import ManagedResource
from .reconciler import GatewayClient, Reconciler
from .resource_kinds import KINDS, ResourceKind
from .store import EventSource, ResourceStore
from .work_queue import QueueShutDown, ReconcileRequest, ResourceQueue

logger = logging.getLogger(__name__)

# Time in-flight reconciles get to finish after shutdown was requested
SHUTDOWN_GRACE_SECONDS = 10.0


def _generation_of(resource: ManagedResource) -> tuple[int | None, bool]:
    """What decides whether an update event carries new desired state."""
    return resource.metadata.generation, resource.deletion_requested


class Controller:
    """Runs reconciliation for every managed kind until shutdown."""

    def __init__(
        self,
        config: Config,
        store: ResourceStore,
        client: GatewayClient,
        event_source: EventSource,
        kinds: Mapping[str, ResourceKind] | None = None,
        reconciler: Reconciler | None = None,
        change_filter: ChangeFilter | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._event_source = event_source
        self._kinds = dict(kinds if kinds is not None else KINDS)
        self._reconciler = reconciler or Reconciler(config, store, client)
        self._filter = change_filter or ChangeFilter()
        self._queue: ResourceQueue[ReconcileRequest] = ResourceQueue()
        # One reverse index per kind that reads from another object
        self._indexes: dict[str, DependencyIndex] = {
            name: DependencyIndex()
            for name, kind in self._kinds.items()
            if kind.dependency_source is not None
        }
        # Last generation and deletion state seen per resource
        self._seen: dict[ReconcileRequest, tuple[int | None, bool]] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def queue(self) -> ResourceQueue[ReconcileRequest]:
        return self._queue

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    def index_for(self, kind_name: str) -> DependencyIndex | None:
        return self._indexes.get(kind_name)

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run workers and the event pump until shutdown() is called."""
        logger.info(
            "Starting controller",
            extra={
                "mode": self._config.mode.value,
                "namespaces": list(self._config.namespaces) or "all",
                "workers": self._config.worker_count,
                "kinds": list(self._kinds),
            },
        )

        await self.initial_sync()

        workers = [
            asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}")
            for i in range(self._config.worker_count)
        ]
        pump = asyncio.create_task(self._pump_events(), name="event-pump")

        await self._shutdown_event.wait()

        self._queue.shutdown()
        pump.cancel()
        _, still_running = await asyncio.wait(workers, timeout=SHUTDOWN_GRACE_SECONDS)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*workers, pump, return_exceptions=True)

        logger.info("Controller shutdown complete")

    async def initial_sync(self) -> int:
        """List every managed resource, seed the indexes and enqueue all of them.

        Returns:
            Number of resources scheduled.
        """
        scheduled = 0
        for name, kind in self._kinds.items():
            resources = await self._store.list(kind)

            index = self._indexes.get(name)
            if index is not None:
                index.rebuild((r.key, kind.dependency_key(r)) for r in resources)

            for resource in resources:
                request = ReconcileRequest(kind=name, key=resource.key)
                self._seen[request] = _generation_of(resource)
                self._queue.enqueue(request)
            scheduled += len(resources)

            logger.info("Initial sync listed resources", extra={"kind": name, "count": len(resources)})
        return scheduled

    def handle_event(self, event: ChangeEvent) -> list[ReconcileRequest]:
        """Turn one change notification into reconcile requests.

        Returns:
            The requests that were enqueued.
        """
        kind = self._kinds.get(event.source)
        if kind is not None:
            return self._handle_managed_event(kind, event)
        return self._handle_dependency_event(event)

    def _handle_managed_event(self, kind: ResourceKind, event: ChangeEvent) -> list[ReconcileRequest]:
        index = self._indexes.get(kind.kind)
        request = ReconcileRequest(kind=kind.kind, key=event.key)

        if event.change == ChangeType.DELETED:
            # Finalization already ran before the object could disappear
            if index is not None:
                index.remove(event.key)
            self._seen.pop(request, None)
            return []

        resource = None
        if event.object is not None:
            try:
                resource = ManagedResource.from_object(kind.kind, event.object)
            except ValueError as e:
                logger.warning(
                    "Ignoring malformed object in change event",
                    extra={"resource": str(event.key), "kind": kind.kind, "error": str(e)},
                )

        if resource is not None:
            if index is not None:
                index.upsert(event.key, kind.dependency_key(resource))

            seen = _generation_of(resource)
            previous = self._seen.get(request)
            self._seen[request] = seen
            if (
                event.change == ChangeType.UPDATED
                and seen[0] is not None
                and previous == seen
            ):
                # Status and finalizer writes leave the generation alone
                logger.debug(
                    "Generation unchanged, skipping update",
                    extra={"resource": str(event.key), "kind": kind.kind, "generation": seen[0]},
                )
                return []

        self._queue.enqueue(request)
        return [request]

    def _handle_dependency_event(self, event: ChangeEvent) -> list[ReconcileRequest]:
        if not self._filter.should_reconcile(event):
            logger.debug(
                "Dependency change filtered out",
                extra={"source": event.source, "key": str(event.key), "change": event.change.value},
            )
            return []

        requests = []
        for name, kind in self._kinds.items():
            if kind.dependency_source != event.source:
                continue
            for dependent in sorted(self._indexes[name].lookup_dependents(event.key)):
                request = ReconcileRequest(kind=name, key=dependent)
                self._queue.enqueue(request)
                requests.append(request)

        if requests:
            logger.info(
                "Dependency changed, reconciling dependents",
                extra={
                    "source": event.source,
                    "key": str(event.key),
                    "change": event.change.value,
                    "dependents": [str(r) for r in requests],
                },
            )
        return requests

    async def _pump_events(self) -> None:
        try:
            async for event in self._event_source.stream():
                self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Without events the controller would silently go stale
            logger.exception("Event stream failed, shutting down")
            self.shutdown()

    async def _worker(self, worker_id: int) -> None:
        logger.debug("Worker started", extra={"worker": worker_id})
        while True:
            try:
                request = await self._queue.dequeue()
            except QueueShutDown:
                logger.debug("Worker stopped", extra={"worker": worker_id})
                return

            try:
                result = await self._reconciler.reconcile(request)
            except asyncio.CancelledError:
                # Aborted mid-pass; the key goes back for a later retry
                self._queue.enqueue(request, self._config.requeue_after_seconds, override=True)
                raise
            except Exception:
                logger.exception("Reconcile raised", extra={"resource": str(request)})
                self._queue.enqueue(request, self._config.requeue_after_seconds, override=True)
            else:
                if result.requeue_after is not None:
                    self._queue.enqueue(request, result.requeue_after, override=True)
            finally:
                self._queue.done(request)
