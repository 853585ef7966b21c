"""Error taxonomy for the reconciliation engine.

Every failure a reconcile pass can hit is mapped onto one of a handful of
kinds, and the kind alone decides whether the resource is retried:

- VALIDATION: the desired payload is malformed. Resubmitting the same payload
  cannot fix it, so no automatic retry is scheduled.
- NOT_FOUND: the remote object does not exist. On delete this is success.
- TRANSIENT: timeouts, 5xx, connection failures, write conflicts and
  runtime API failures. Retried
  after a fixed delay.
- DEPENDENCY_READ: the backing configuration could not be read. Retried.
- RELOAD: the gateway refused to reload. The sync itself stands. Retried.
- REMOTE: any other error reported by the management API. Retried.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx


class OperatorError(Exception):
    """Base class for errors raised by the operator."""

    pass


class PayloadValidationError(OperatorError):
    """Raised when a desired payload fails the structural contract."""

    pass


class RemoteApiError(OperatorError):
    """Raised when the management API rejects a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFoundError(RemoteApiError):
    """Raised when the addressed remote object does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)


class TransientRemoteError(RemoteApiError):
    """Raised for failures that are expected to clear on their own."""

    pass


class ReloadError(OperatorError):
    """Raised when the gateway hot reload request fails."""

    pass


class DependencyReadError(OperatorError):
    """Raised when a resource's backing configuration cannot be read."""

    pass


class ResourceNotFoundError(OperatorError):
    """Raised when a managed resource no longer exists in the store."""

    pass


class ResourceConflictError(OperatorError):
    """Raised when a resource write loses an optimistic concurrency race."""

    pass


class StoreError(OperatorError):
    """Raised when the orchestration runtime API fails for another reason."""

    pass


class ErrorKind(str, Enum):
    """Classification of reconcile failures."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    DEPENDENCY_READ = "dependency_read"
    RELOAD = "reload"
    REMOTE = "remote"

    @property
    def should_retry(self) -> bool:
        """Whether a failure of this kind schedules a delayed requeue."""
        return self is not ErrorKind.VALIDATION


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception onto the error taxonomy."""
    match error:
        case PayloadValidationError():
            return ErrorKind.VALIDATION
        case RemoteNotFoundError():
            return ErrorKind.NOT_FOUND
        case TransientRemoteError() | ResourceConflictError() | StoreError():
            return ErrorKind.TRANSIENT
        case RemoteApiError(status_code=code) if code is not None and code >= 500:
            return ErrorKind.TRANSIENT
        case RemoteApiError():
            return ErrorKind.REMOTE
        case ReloadError():
            return ErrorKind.RELOAD
        case DependencyReadError():
            return ErrorKind.DEPENDENCY_READ
        case TimeoutError() | asyncio.TimeoutError() | httpx.TransportError() | ConnectionError():
            return ErrorKind.TRANSIENT
        case _:
            return ErrorKind.REMOTE
