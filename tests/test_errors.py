"""Tests for error classification."""

import asyncio

import httpx
import pytest

from tyk_operator.errors import (
    DependencyReadError,
    ErrorKind,
    PayloadValidationError,
    ReloadError,
    RemoteApiError,
    RemoteNotFoundError,
    ResourceConflictError,
    StoreError,
    TransientRemoteError,
    classify_error,
)


class TestClassifyError:
    """Tests for mapping exceptions onto the taxonomy."""

    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (PayloadValidationError("missing required section"), ErrorKind.VALIDATION),
            (RemoteNotFoundError("gone"), ErrorKind.NOT_FOUND),
            (TransientRemoteError("502", status_code=502), ErrorKind.TRANSIENT),
            (RemoteApiError("503", status_code=503), ErrorKind.TRANSIENT),
            (RemoteApiError("bad request", status_code=400), ErrorKind.REMOTE),
            (ResourceConflictError("conflict"), ErrorKind.TRANSIENT),
            (StoreError("api server down"), ErrorKind.TRANSIENT),
            (ReloadError("not ok"), ErrorKind.RELOAD),
            (DependencyReadError("no configmap"), ErrorKind.DEPENDENCY_READ),
            (TimeoutError(), ErrorKind.TRANSIENT),
            (asyncio.TimeoutError(), ErrorKind.TRANSIENT),
            (httpx.ConnectError("refused"), ErrorKind.TRANSIENT),
            (ConnectionResetError(), ErrorKind.TRANSIENT),
            (RuntimeError("unexpected"), ErrorKind.REMOTE),
        ],
    )
    def test_classification(self, error: BaseException, kind: ErrorKind) -> None:
        assert classify_error(error) == kind

    def test_not_found_carries_status_code(self) -> None:
        assert RemoteNotFoundError("gone").status_code == 404


class TestShouldRetry:
    """Tests for the retry decision."""

    def test_validation_is_terminal(self) -> None:
        assert ErrorKind.VALIDATION.should_retry is False

    @pytest.mark.parametrize(
        "kind",
        [k for k in ErrorKind if k is not ErrorKind.VALIDATION],
    )
    def test_everything_else_is_retried(self, kind: ErrorKind) -> None:
        assert kind.should_retry is True
