"""Async REST client for the Tyk gateway and dashboard management APIs.

Two flavours of the API are supported, selected by ``Config.mode``:

    ce   Open-source gateway. Auth header ``x-tyk-authorization``.
         OAS APIs under /tyk/apis/oas, policies under /tyk/policies,
         hot reload via /tyk/reload/group.
    pro  Dashboard. Auth header ``authorization``.
         OAS APIs under /api/apis/oas, policies under /api/portal/policies.
         The dashboard propagates changes itself, reload is a no-op.

HTTP failures are converted to the operator's error taxonomy:
404 -> RemoteNotFoundError, 5xx/timeouts/connection errors ->
TransientRemoteError, any other 4xx -> RemoteApiError. No retries happen at
this layer; the reconciler requeues instead.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .config import Config, OperatorMode
from .errors import (
    ReloadError,
    RemoteApiError,
    RemoteNotFoundError,
    TransientRemoteError,
)
from .resource_kinds import TYK_OAS_EXTENSION, RemoteCollection

logger = logging.getLogger(__name__)

# Endpoint prefixes per mode
GATEWAY_ENDPOINTS: dict[RemoteCollection, str] = {
    RemoteCollection.OAS_APIS: "/tyk/apis/oas",
    RemoteCollection.POLICIES: "/tyk/policies",
}
DASHBOARD_ENDPOINTS: dict[RemoteCollection, str] = {
    RemoteCollection.OAS_APIS: "/api/apis/oas",
    RemoteCollection.POLICIES: "/api/portal/policies",
}
ENDPOINT_RELOAD = "/tyk/reload/group"

# Where the submitted document carries its own ID
ID_PATHS: dict[RemoteCollection, tuple[str, ...]] = {
    RemoteCollection.OAS_APIS: (TYK_OAS_EXTENSION, "info", "id"),
    RemoteCollection.POLICIES: ("id",),
}

MAX_ERROR_BODY_CHARS = 200


class ResponseMsg(BaseModel):
    """Status message returned by mutating gateway and dashboard calls.

    The gateway answers in lower case (``key``/``status``), the dashboard
    capitalises (``Status``/``Message``/``Meta``).
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    key: str | None = None
    status: str | None = None
    action: str | None = None
    message: str | None = None
    upper_status: str | None = Field(None, alias="Status")
    upper_message: str | None = Field(None, alias="Message")
    meta: Any | None = Field(None, alias="Meta")

    @property
    def ok(self) -> bool:
        value = (self.status or self.upper_status or "").lower()
        return value == "ok"

    @property
    def text(self) -> str:
        return self.message or self.upper_message or ""


def _set_path(document: dict[str, Any], path: tuple[str, ...], value: str) -> dict[str, Any]:
    """Return a copy of ``document`` with ``value`` stored at ``path``."""
    result = copy.deepcopy(document)
    current = result
    for segment in path[:-1]:
        nested = current.get(segment)
        if not isinstance(nested, dict):
            nested = {}
            current[segment] = nested
        current = nested
    current[path[-1]] = value
    return result


class TykClient:
    """Connection to one Tyk management API.

    Use as an async context manager:

        async with TykClient(config) as client:
            await client.collection(RemoteCollection.OAS_APIS).exists(api_id)
    """

    def __init__(self, config: Config, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def mode(self) -> OperatorMode:
        return self._config.mode

    async def __aenter__(self) -> TykClient:
        auth_header = "authorization" if self.mode == OperatorMode.PRO else "x-tyk-authorization"
        self._client = httpx.AsyncClient(
            base_url=self._config.url,
            headers={auth_header: self._config.auth, "Content-Type": "application/json"},
            timeout=self._config.request_timeout_seconds,
            verify=not self._config.insecure_skip_verify,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def collection(self, collection: RemoteCollection) -> RemoteCollectionApi:
        """API handle for one object collection."""
        endpoints = DASHBOARD_ENDPOINTS if self.mode == OperatorMode.PRO else GATEWAY_ENDPOINTS
        return RemoteCollectionApi(
            client=self,
            base_path=endpoints[collection],
            id_path=ID_PATHS[collection],
            org_id=self._config.org or None,
            # The dashboard returns the ID of a new policy in the message field
            id_in_message=self.mode == OperatorMode.PRO and collection == RemoteCollection.POLICIES,
        )

    async def reload(self) -> None:
        """Ask the gateway group to hot reload.

        Raises:
            ReloadError: If the gateway answers with a non-ok status.
            TransientRemoteError: On network failure or 5xx.
        """
        if not self._config.reload_enabled or self.mode == OperatorMode.PRO:
            return

        response = await self.request("GET", ENDPOINT_RELOAD)
        msg = ResponseMsg.model_validate(_json_body(response))
        if not msg.ok:
            raise ReloadError(f"API request completed, but with error: {msg.text}")
        logger.debug("Gateway reload requested")

    async def request(
        self, method: str, path: str, json_data: dict[str, Any] | None = None
    ) -> httpx.Response:
        """Send one request and map failures onto the error taxonomy."""
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        try:
            response = await self._client.request(method, path, json=json_data)
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"{method} {path} failed: {e}") from e

        if response.status_code < 400:
            return response

        body = response.text[:MAX_ERROR_BODY_CHARS]
        logger.warning(
            "Tyk API error",
            extra={"method": method, "path": path, "status_code": response.status_code},
        )
        message = f"{method} {path} returned {response.status_code}: {body}"
        if response.status_code == 404:
            raise RemoteNotFoundError(message)
        if response.status_code >= 500:
            raise TransientRemoteError(message, status_code=response.status_code)
        raise RemoteApiError(message, status_code=response.status_code)


def _json_body(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError as e:
        raise RemoteApiError(
            f"Invalid JSON from {response.request.method} {response.request.url.path}",
            status_code=response.status_code,
        ) from e
    return body if isinstance(body, dict) else {}


class RemoteCollectionApi:
    """Create, read, update and delete objects of one collection by ID."""

    def __init__(
        self,
        client: TykClient,
        base_path: str,
        id_path: tuple[str, ...],
        org_id: str | None = None,
        id_in_message: bool = False,
    ) -> None:
        self._client = client
        self._base_path = base_path
        self._id_path = id_path
        self._org_id = org_id
        self._id_in_message = id_in_message

    def _path(self, external_id: str) -> str:
        return f"{self._base_path}/{external_id}"

    def _prepare(self, external_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        document = _set_path(payload, self._id_path, external_id)
        if self._org_id and self._id_path == ("id",):
            document["org_id"] = self._org_id
        return document

    async def exists(self, external_id: str) -> bool:
        try:
            await self._client.request("GET", self._path(external_id))
        except RemoteNotFoundError:
            return False
        return True

    async def get(self, external_id: str) -> dict[str, Any]:
        """Fetch the remote object.

        Raises:
            RemoteNotFoundError: If no object has this ID.
        """
        response = await self._client.request("GET", self._path(external_id))
        return _json_body(response)

    async def create(self, external_id: str, payload: dict[str, Any]) -> str:
        """Create the object and return the ID the remote assigned to it."""
        response = await self._client.request(
            "POST", self._base_path, self._prepare(external_id, payload)
        )
        msg = ResponseMsg.model_validate(_json_body(response))

        if self._id_in_message and msg.ok and msg.text:
            return msg.text
        if msg.key:
            return msg.key
        if isinstance(msg.meta, str) and msg.meta:
            return msg.meta
        return external_id

    async def update(self, external_id: str, payload: dict[str, Any]) -> None:
        await self._client.request(
            "PUT", self._path(external_id), self._prepare(external_id, payload)
        )

    async def delete(self, external_id: str) -> None:
        try:
            await self._client.request("DELETE", self._path(external_id))
        except RemoteNotFoundError:
            logger.info(
                "Remote object already absent",
                extra={"path": self._path(external_id)},
            )
