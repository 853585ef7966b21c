"""Kubernetes adapter: resource store and watch-based event source.

The kubernetes client is synchronous. Store calls run in the default
executor, bounded by the request timeout. Watches run in daemon threads and
hand their events to the asyncio loop with call_soon_threadsafe.

Watch handling:
- one watch per managed kind plus one on ConfigMaps, per watched namespace
  (or cluster-wide when no namespace is configured)
- a watch started without a resourceVersion replays every existing object
  as ADDED; the queue coalesces those with the initial list
- 410 Gone restarts the watch from scratch
- 401/403 are configuration errors and end the stream
- other failures back off exponentially with jitter, capped at 30s
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import threading
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException
from pydantic import ValidationError

from .dependency import ChangeEvent, ChangeType
from .errors import (
    DependencyReadError,
    OperatorError,
    ResourceConflictError,
    ResourceNotFoundError,
    StoreError,
)
from .models import ManagedResource, ObjectKey
from .resource_kinds import CONFIGMAP_SOURCE, ResourceKind, get_kind

logger = logging.getLogger(__name__)

# Server-side timeout of one watch request; the watch is reopened after it
WATCH_TIMEOUT_SECONDS = 300
MAX_WATCH_BACKOFF_SECONDS = 30

_WATCH_EVENT_TYPES = {
    "ADDED": ChangeType.CREATED,
    "MODIFIED": ChangeType.UPDATED,
    "DELETED": ChangeType.DELETED,
}


def load_kube_config() -> tuple[client.CustomObjectsApi, client.CoreV1Api]:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    return client.CustomObjectsApi(), client.CoreV1Api()


def _translate_api_error(e: ApiException, what: str) -> OperatorError:
    if e.status == 404:
        return ResourceNotFoundError(f"{what} not found")
    if e.status == 409:
        return ResourceConflictError(f"{what} was modified concurrently")
    return StoreError(f"Kubernetes API error for {what}: {e.status} {e.reason}")


class KubernetesResourceStore:
    """ResourceStore backed by the Kubernetes API server."""

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        core_api: client.CoreV1Api,
        namespaces: Sequence[str] = (),
        timeout_seconds: float = 30,
    ) -> None:
        self._custom = custom_api
        self._core = core_api
        self._namespaces = tuple(namespaces)
        self._timeout = timeout_seconds

    async def _call(self, what: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, **kwargs)),
                timeout=self._timeout,
            )
        except ApiException as e:
            raise _translate_api_error(e, what) from e

    async def get(self, kind: ResourceKind, key: ObjectKey) -> ManagedResource:
        obj = await self._call(
            f"{kind.kind} {key}",
            self._custom.get_namespaced_custom_object,
            group=kind.group,
            version=kind.version,
            namespace=key.namespace,
            plural=kind.plural,
            name=key.name,
        )
        return ManagedResource.from_object(kind.kind, obj)

    async def list(self, kind: ResourceKind) -> list[ManagedResource]:
        items: list[dict[str, Any]] = []
        if not self._namespaces:
            response = await self._call(
                f"{kind.kind} list",
                self._custom.list_cluster_custom_object,
                group=kind.group,
                version=kind.version,
                plural=kind.plural,
            )
            items.extend(response.get("items", []))
        else:
            for namespace in self._namespaces:
                response = await self._call(
                    f"{kind.kind} list in {namespace}",
                    self._custom.list_namespaced_custom_object,
                    group=kind.group,
                    version=kind.version,
                    namespace=namespace,
                    plural=kind.plural,
                )
                items.extend(response.get("items", []))

        resources = []
        for item in items:
            try:
                resources.append(ManagedResource.from_object(kind.kind, item))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed object",
                    extra={"kind": kind.kind, "error": str(e)},
                )
        return resources

    async def update_finalizers(self, resource: ManagedResource) -> None:
        kind = get_kind(resource.kind)
        body = {
            "metadata": {
                "finalizers": list(resource.metadata.finalizers),
                # Makes the patch fail with 409 if the object changed meanwhile
                "resourceVersion": resource.metadata.resource_version,
            }
        }
        updated = await self._call(
            f"{resource.kind} {resource.key}",
            self._custom.patch_namespaced_custom_object,
            group=kind.group,
            version=kind.version,
            namespace=resource.metadata.namespace,
            plural=kind.plural,
            name=resource.metadata.name,
            body=body,
        )
        self._refresh_version(resource, updated)

    async def update_status(self, resource: ManagedResource) -> None:
        kind = get_kind(resource.kind)
        # Nulls are kept so the merge patch clears fields that disappeared
        body = {"status": resource.status.model_dump(by_alias=True, mode="json")}
        updated = await self._call(
            f"{resource.kind} {resource.key} status",
            self._custom.patch_namespaced_custom_object_status,
            group=kind.group,
            version=kind.version,
            namespace=resource.metadata.namespace,
            plural=kind.plural,
            name=resource.metadata.name,
            body=body,
        )
        self._refresh_version(resource, updated)

    async def read_configmap(self, key: ObjectKey) -> dict[str, str]:
        try:
            configmap = await self._call(
                f"ConfigMap {key}",
                self._core.read_namespaced_config_map,
                name=key.name,
                namespace=key.namespace,
            )
        except StoreError as e:
            raise DependencyReadError(str(e)) from e
        return dict(configmap.data or {})

    @staticmethod
    def _refresh_version(resource: ManagedResource, updated: Any) -> None:
        if isinstance(updated, dict):
            version = updated.get("metadata", {}).get("resourceVersion")
            if version:
                resource.metadata.resource_version = version


class WatchFailedError(OperatorError):
    """Raised from the event stream when a watch cannot continue."""

    pass


class KubernetesEventSource:
    """EventSource that watches managed kinds and ConfigMaps."""

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        core_api: client.CoreV1Api,
        kinds: Sequence[ResourceKind],
        namespaces: Sequence[str] = (),
    ) -> None:
        self._custom = custom_api
        self._core = core_api
        self._kinds = tuple(kinds)
        self._namespaces = tuple(namespaces)
        self._stop = threading.Event()
        self._watchers: set[watch.Watch] = set()
        self._watchers_lock = threading.Lock()

    def close(self) -> None:
        """Stop every watch thread."""
        self._stop.set()
        with self._watchers_lock:
            watchers = list(self._watchers)
        for watcher in watchers:
            watcher.stop()

    async def stream(self) -> AsyncIterator[ChangeEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ChangeEvent | BaseException] = asyncio.Queue()

        def emit(item: ChangeEvent | BaseException) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, item)

        threads = [
            threading.Thread(
                target=self._watch_loop,
                args=(source, list_fn, kwargs, emit),
                name=f"watch-{source}-{kwargs.get('namespace', 'all')}",
                daemon=True,
            )
            for source, list_fn, kwargs in self._watch_targets()
        ]
        for thread in threads:
            thread.start()

        try:
            while True:
                item = await queue.get()
                if isinstance(item, BaseException):
                    raise WatchFailedError(str(item)) from item
                yield item
        finally:
            self.close()

    def _watch_targets(self) -> list[tuple[str, Callable[..., Any], dict[str, Any]]]:
        targets: list[tuple[str, Callable[..., Any], dict[str, Any]]] = []
        for kind in self._kinds:
            base = {"group": kind.group, "version": kind.version, "plural": kind.plural}
            if not self._namespaces:
                targets.append((kind.kind, self._custom.list_cluster_custom_object, base))
            for namespace in self._namespaces:
                targets.append(
                    (
                        kind.kind,
                        self._custom.list_namespaced_custom_object,
                        {**base, "namespace": namespace},
                    )
                )

        if any(kind.dependency_source == CONFIGMAP_SOURCE for kind in self._kinds):
            if not self._namespaces:
                targets.append((CONFIGMAP_SOURCE, self._core.list_config_map_for_all_namespaces, {}))
            for namespace in self._namespaces:
                targets.append(
                    (CONFIGMAP_SOURCE, self._core.list_namespaced_config_map, {"namespace": namespace})
                )
        return targets

    def _watch_loop(
        self,
        source: str,
        list_fn: Callable[..., Any],
        kwargs: dict[str, Any],
        emit: Callable[[ChangeEvent | BaseException], None],
    ) -> None:
        resource_version: str | None = None
        backoff_seconds = 1

        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watchers_lock:
                self._watchers.add(watcher)
            try:
                stream_kwargs = dict(kwargs, timeout_seconds=WATCH_TIMEOUT_SECONDS)
                if resource_version:
                    stream_kwargs["resource_version"] = resource_version

                for raw in watcher.stream(list_fn, **stream_kwargs):
                    if self._stop.is_set():
                        break
                    event = to_change_event(source, raw)
                    if event is None:
                        continue
                    if event.object is not None:
                        resource_version = (
                            event.object.get("metadata", {}).get("resourceVersion")
                            or resource_version
                        )
                    emit(event)
                backoff_seconds = 1
            except ApiException as e:
                if e.status == 410:
                    logger.warning("Watch resource version expired, restarting", extra={"source": source})
                    resource_version = None
                    continue
                if e.status in {401, 403}:
                    logger.error(
                        "Kubernetes API watch denied, check RBAC",
                        extra={"source": source, "status_code": e.status},
                    )
                    emit(e)
                    return
                logger.exception("Kubernetes API watch error", extra={"source": source})
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            except Exception:
                logger.exception("Unexpected watch error", extra={"source": source})
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watchers_lock:
                    self._watchers.discard(watcher)


def to_change_event(source: str, raw: dict[str, Any]) -> ChangeEvent | None:
    """Convert one raw watch event. Returns None for events to skip."""
    change = _WATCH_EVENT_TYPES.get(str(raw.get("type", "")))
    # Typed watches deserialize "object"; the JSON form is kept in "raw_object"
    obj = raw.get("raw_object") or raw.get("object")
    if change is None or not isinstance(obj, dict):
        return None

    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        return None
    key = ObjectKey(namespace=metadata.get("namespace") or "default", name=name)
    return ChangeEvent(source=source, key=key, change=change, object=obj)
