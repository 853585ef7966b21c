"""Dependency tracking between managed resources and their backing objects.

Managed resources may read their configuration from another object, e.g. a
TykOasApiDefinition reads its OAS document from a ConfigMap. When that
object changes, every resource reading it must be reconciled again.

This module implements:
1. Change events as delivered by the runtime's watch streams
2. A change filter deciding which dependency events cause work
3. A reverse index from dependency key to dependent resource keys

DESIGN:
- The index is rebuilt from the resources' declared dependency reference,
  never from remote state
- Dependency creation is ignored: nothing can meaningfully reference an
  object before it exists
- Updates and deletions fan out to every dependent
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import ObjectKey

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Kind of change reported for an object."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    """A change notification for one object.

    Attributes:
        source: Kind of the changed object (a managed kind or "ConfigMap").
        key: Namespace and name of the changed object.
        change: What happened to it.
        object: The raw object as delivered by the runtime, if any.
    """

    source: str
    key: ObjectKey
    change: ChangeType
    object: dict[str, Any] | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ChangeFilter:
    """Predicate over dependency change notifications."""

    react_to_create: bool = False
    react_to_update: bool = True
    react_to_delete: bool = True

    def should_reconcile(self, event: ChangeEvent) -> bool:
        match event.change:
            case ChangeType.CREATED:
                return self.react_to_create
            case ChangeType.UPDATED:
                return self.react_to_update
            case ChangeType.DELETED:
                return self.react_to_delete
            case _:
                return False


class DependencyIndex:
    """Reverse index: dependency key -> keys of resources depending on it.

    Each resource depends on at most one object. Mutations come from the
    notification path; lookups may come from any task or thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._dependents: dict[ObjectKey, set[ObjectKey]] = {}
        self._dependency_of: dict[ObjectKey, ObjectKey] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._dependency_of)

    def upsert(self, resource_key: ObjectKey, dependency_key: ObjectKey | None) -> None:
        """Record (or clear, when None) the dependency of one resource."""
        with self._lock:
            self._unlink(resource_key)
            if dependency_key is None:
                return
            self._dependency_of[resource_key] = dependency_key
            self._dependents.setdefault(dependency_key, set()).add(resource_key)

    def remove(self, resource_key: ObjectKey) -> None:
        """Forget a resource that no longer exists."""
        with self._lock:
            self._unlink(resource_key)

    def rebuild(self, edges: Iterable[tuple[ObjectKey, ObjectKey | None]]) -> None:
        """Replace the whole index from ``(resource_key, dependency_key)`` pairs."""
        dependents: dict[ObjectKey, set[ObjectKey]] = {}
        dependency_of: dict[ObjectKey, ObjectKey] = {}
        for resource_key, dependency_key in edges:
            if dependency_key is None:
                continue
            dependency_of[resource_key] = dependency_key
            dependents.setdefault(dependency_key, set()).add(resource_key)

        with self._lock:
            self._dependents = dependents
            self._dependency_of = dependency_of

        logger.debug(
            "Dependency index rebuilt",
            extra={"resources": len(dependency_of), "dependencies": len(dependents)},
        )

    def lookup_dependents(self, dependency_key: ObjectKey) -> frozenset[ObjectKey]:
        """Keys of every resource reading from ``dependency_key``."""
        with self._lock:
            return frozenset(self._dependents.get(dependency_key, ()))

    def dependency_of(self, resource_key: ObjectKey) -> ObjectKey | None:
        with self._lock:
            return self._dependency_of.get(resource_key)

    def _unlink(self, resource_key: ObjectKey) -> None:
        previous = self._dependency_of.pop(resource_key, None)
        if previous is None:
            return
        dependents = self._dependents.get(previous)
        if dependents is not None:
            dependents.discard(resource_key)
            if not dependents:
                del self._dependents[previous]
