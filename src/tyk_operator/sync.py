"""Desired-state sync engine.

One sync converges one remote object onto the desired payload:

1. Structural validation. A payload without its required top-level section
   is rejected before any remote call; the error is terminal.
2. Existence check by external ID.
3. Create when absent. The ID the remote assigns is reported back so the
   caller can persist it.
4. Full-replace update when present. There is no diffing; every pass
   re-submits the whole document, which makes the sync idempotent.

Remote errors propagate unchanged for the reconciler to classify.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from .errors import PayloadValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RemoteApi(Protocol):
    """Management API of one remote object collection."""

    async def exists(self, external_id: str) -> bool: ...

    async def create(self, external_id: str, payload: dict[str, Any]) -> str: ...

    async def update(self, external_id: str, payload: dict[str, Any]) -> None: ...

    async def delete(self, external_id: str) -> None: ...


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a successful sync."""

    external_id: str
    created: bool


async def execute_with_timeout(
    operation: Awaitable[T], timeout_seconds: float, operation_name: str
) -> T:
    """Await a remote call, bounded by a timeout.

    Raises:
        TimeoutError: If the call does not finish in time.
    """
    try:
        return await asyncio.wait_for(operation, timeout=timeout_seconds)
    except TimeoutError:
        logger.error(
            f"{operation_name} timed out",
            extra={"timeout_seconds": timeout_seconds},
        )
        raise


def validate_payload(payload: Any, required_section: str) -> None:
    """Check the structural contract of a desired payload.

    Raises:
        PayloadValidationError: If the payload is not a mapping or lacks
            the required section.
    """
    if not isinstance(payload, dict):
        raise PayloadValidationError(
            f"payload must be a mapping, got {type(payload).__name__}"
        )
    section = payload.get(required_section)
    if section is None or section == "" or section == {}:
        raise PayloadValidationError(f"payload is missing required section '{required_section}'")


class SyncEngine:
    """Creates or fully replaces remote objects from desired payloads."""

    def __init__(self, remote: RemoteApi, timeout_seconds: float) -> None:
        self._remote = remote
        self._timeout = timeout_seconds

    async def sync(
        self, external_id: str, payload: dict[str, Any], required_section: str
    ) -> SyncResult:
        """Apply the payload to the remote object addressed by ``external_id``.

        Returns:
            The ID the remote object now lives under and whether it was created.

        Raises:
            PayloadValidationError: Payload fails validation; nothing was sent.
            RemoteApiError: The management API rejected a call.
            TimeoutError: A remote call exceeded the timeout.
        """
        validate_payload(payload, required_section)

        present = await execute_with_timeout(
            self._remote.exists(external_id), self._timeout, "Existence check"
        )

        if not present:
            assigned = await execute_with_timeout(
                self._remote.create(external_id, payload), self._timeout, "Create"
            )
            logger.info(
                "Created remote object",
                extra={"external_id": external_id, "assigned_id": assigned},
            )
            return SyncResult(external_id=assigned or external_id, created=True)

        await execute_with_timeout(
            self._remote.update(external_id, payload), self._timeout, "Update"
        )
        logger.debug("Updated remote object", extra={"external_id": external_id})
        return SyncResult(external_id=external_id, created=False)
