"""Status and drift reporting.

After every sync attempt the reporter writes two things onto the resource:

- the outcome of the attempt (``latestTransaction``), always
- a handful of fields projected out of the desired document
  (``observedFields``), best effort

Field extraction is a sequence of independent lookups. A missing or
mistyped field leaves that one field absent and never fails the reconcile.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from .errors import DependencyReadError, PayloadValidationError
from .models import ManagedResource, ObservedFields, TransactionInfo, TransactionStatus

if TYPE_CHECKING:
    from .resource_kinds import ResourceKind
    from .store import ResourceStore

logger = logging.getLogger(__name__)

_MISSING = object()


def try_extract(document: Any, path: Sequence[str]) -> Any | None:
    """Walk ``path`` through nested mappings.

    Returns None when any segment is missing or an intermediate value is
    not a mapping.
    """
    current: Any = document
    for segment in path:
        if not isinstance(current, dict):
            return None
        current = current.get(segment, _MISSING)
        if current is _MISSING:
            return None
    return current


@dataclass(frozen=True)
class ObservedFieldPath:
    """Where one observed field is read from and what type it must have."""

    field_name: str
    path: tuple[str, ...]
    expected_type: type

    def extract(self, document: dict[str, Any]) -> Any | None:
        value = try_extract(document, self.path)
        if value is None:
            return None
        # bool is an int subclass; keep the check exact
        if type(value) is not self.expected_type:
            logger.warning(
                "Observed field has unexpected type",
                extra={
                    "field": self.field_name,
                    "path": ".".join(self.path),
                    "expected": self.expected_type.__name__,
                    "actual": type(value).__name__,
                },
            )
            return None
        return value


def extract_observed_fields(
    document: dict[str, Any], paths: Sequence[ObservedFieldPath]
) -> ObservedFields:
    """Project the configured fields out of a document."""
    values: dict[str, Any] = {}
    for field_path in paths:
        value = field_path.extract(document)
        if value is not None:
            values[field_path.field_name] = value
    return ObservedFields.model_validate(values)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StatusReporter:
    """Writes the last transaction and observed fields onto a resource."""

    def __init__(self, store: ResourceStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    def record_transaction(self, resource: ManagedResource, error: BaseException | None) -> None:
        """Stamp the outcome of the last sync attempt.

        The timestamp never moves backwards, even if the clock does.
        """
        now = self._clock()
        previous = resource.status.latest_transaction
        if previous is not None and previous.time > now:
            now = previous.time

        resource.status.latest_transaction = TransactionInfo(
            status=TransactionStatus.FAILED if error else TransactionStatus.SUCCESSFUL,
            time=now,
            error=str(error) if error else None,
        )

    async def report(
        self,
        resource: ManagedResource,
        kind: ResourceKind,
        external_id: str,
        error: BaseException | None,
    ) -> None:
        """Update the resource status and persist it.

        Args:
            resource: Resource being reconciled, mutated in place.
            kind: Descriptor telling where observed fields live.
            external_id: ID resolved during this pass, may be empty.
            error: Error of the sync attempt, None on success.

        Raises:
            ResourceNotFoundError: If the resource vanished meanwhile.
            ResourceConflictError: If the status write lost a race.
        """
        if not resource.status.external_id and external_id and error is None:
            resource.status.external_id = external_id

        try:
            document = await kind.load_payload(resource, self._store)
        except (DependencyReadError, PayloadValidationError) as e:
            logger.error(
                "Failed to read backing configuration for status",
                extra={"resource": str(resource.key), "kind": kind.kind, "error": str(e)},
            )
            self.record_transaction(resource, error or e)
        else:
            resource.status.observed_fields = extract_observed_fields(
                document, kind.observed_fields
            )
            self.record_transaction(resource, error)

        await self._store.update_status(resource)
