"""Resource kinds managed by the operator.

Each kind is a descriptor telling the generic engine:
- which API group/version/plural the resources live under
- which finalizer sentinel guards their deletion
- how to load the desired payload and what structure it must have
- where an embedded ID and the observed fields sit in the payload
- which remote collection on the gateway stores them
- which other object, if any, the resource depends on
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ValidationError

from .errors import DependencyReadError, PayloadValidationError, ResourceNotFoundError
from .models import (
    Finalizer,
    ManagedResource,
    ObjectKey,
    SecurityPolicySpec,
    TykOasApiDefinitionSpec,
)
from .status import ObservedFieldPath

if TYPE_CHECKING:
    from .store import ResourceStore

API_GROUP = "tyk.tyk.io"
API_VERSION = "v1alpha1"

# Top-level extension every Tyk OAS document must carry
TYK_OAS_EXTENSION = "x-tyk-api-gateway"

CONFIGMAP_SOURCE = "ConfigMap"


class RemoteCollection(str, Enum):
    """Object collections exposed by the Tyk management API."""

    OAS_APIS = "oas"
    POLICIES = "policies"


def _format_validation_error(kind: str, key: ObjectKey, error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        problems.append(f"{loc}: {item['msg']}")
    return f"invalid {kind} {key}: " + "; ".join(problems)


def _parse_spec(model: type[BaseModel], resource: ManagedResource) -> Any:
    try:
        return model.model_validate(resource.spec)
    except ValidationError as e:
        raise PayloadValidationError(
            _format_validation_error(resource.kind, resource.key, e)
        ) from e


class ResourceKind(ABC):
    """Descriptor of one managed resource kind."""

    kind: str
    plural: str
    group: str = API_GROUP
    version: str = API_VERSION
    finalizer: Finalizer
    collection: RemoteCollection
    required_section: str
    id_paths: tuple[tuple[str, ...], ...] = ()
    observed_fields: tuple[ObservedFieldPath, ...] = ()
    # Kind of the object this kind depends on, if any
    dependency_source: str | None = None

    def __repr__(self) -> str:
        return f"<ResourceKind {self.kind}>"

    @abstractmethod
    async def load_payload(self, resource: ManagedResource, store: ResourceStore) -> dict[str, Any]:
        """Build the desired-state document for a resource.

        Raises:
            PayloadValidationError: If the resource spec or document is malformed.
            DependencyReadError: If the backing configuration cannot be read.
        """

    def dependency_key(self, resource: ManagedResource) -> ObjectKey | None:
        """Key of the object this resource reads its configuration from."""
        return None


class TykOasApiDefinitionKind(ResourceKind):
    """OAS API definitions whose document lives in a ConfigMap."""

    kind = "TykOasApiDefinition"
    plural = "tykoasapidefinitions"
    finalizer = Finalizer("finalizers.tyk.io/tykoas")
    collection = RemoteCollection.OAS_APIS
    required_section = TYK_OAS_EXTENSION
    id_paths = ((TYK_OAS_EXTENSION, "info", "id"),)
    observed_fields = (
        ObservedFieldPath("enabled", (TYK_OAS_EXTENSION, "info", "state", "active"), bool),
        ObservedFieldPath("domain", (TYK_OAS_EXTENSION, "server", "customDomain"), str),
        ObservedFieldPath(
            "listen_path", (TYK_OAS_EXTENSION, "server", "listenPath", "value"), str
        ),
        ObservedFieldPath("target_url", (TYK_OAS_EXTENSION, "upstream", "url"), str),
    )
    dependency_source = CONFIGMAP_SOURCE

    def configmap_key(self, resource: ManagedResource) -> tuple[ObjectKey, str]:
        """ConfigMap key and data entry name holding the OAS document."""
        spec: TykOasApiDefinitionSpec = _parse_spec(TykOasApiDefinitionSpec, resource)
        ref = spec.tyk_oas.configmap_ref
        namespace = ref.namespace or resource.metadata.namespace
        return ObjectKey(namespace=namespace, name=ref.name), ref.key_name

    def dependency_key(self, resource: ManagedResource) -> ObjectKey | None:
        try:
            key, _ = self.configmap_key(resource)
        except PayloadValidationError:
            return None
        return key

    async def load_payload(self, resource: ManagedResource, store: ResourceStore) -> dict[str, Any]:
        cm_key, entry = self.configmap_key(resource)

        try:
            data = await store.read_configmap(cm_key)
        except ResourceNotFoundError as e:
            raise DependencyReadError(f"ConfigMap {cm_key} not found") from e

        raw = data.get(entry)
        if raw is None:
            raise DependencyReadError(f"ConfigMap {cm_key} has no key '{entry}'")

        try:
            # YAML is a superset of JSON, so both document encodings load here
            document = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise PayloadValidationError(
                f"invalid Tyk OAS document in ConfigMap {cm_key}/{entry}: {e}"
            ) from e

        if not isinstance(document, dict):
            raise PayloadValidationError(
                f"Tyk OAS document in ConfigMap {cm_key}/{entry} must be a mapping"
            )
        return document


class SecurityPolicyKind(ResourceKind):
    """Security policies whose payload is the resource spec itself."""

    kind = "SecurityPolicy"
    plural = "securitypolicies"
    finalizer = Finalizer("finalizers.tyk.io/securitypolicy")
    collection = RemoteCollection.POLICIES
    required_section = "name"
    id_paths = (("_id",), ("id",))
    observed_fields = (ObservedFieldPath("enabled", ("active",), bool),)

    async def load_payload(self, resource: ManagedResource, store: ResourceStore) -> dict[str, Any]:
        spec: SecurityPolicySpec = _parse_spec(SecurityPolicySpec, resource)
        return spec.model_dump(mode="json", by_alias=True, exclude_none=True)


TYK_OAS_API_DEFINITION = TykOasApiDefinitionKind()
SECURITY_POLICY = SecurityPolicyKind()

KINDS: dict[str, ResourceKind] = {
    TYK_OAS_API_DEFINITION.kind: TYK_OAS_API_DEFINITION,
    SECURITY_POLICY.kind: SECURITY_POLICY,
}


def get_kind(name: str) -> ResourceKind:
    """Look up a resource kind by name.

    Raises:
        ValueError: If the kind is not managed by this operator.
    """
    kind = KINDS.get(name)
    if kind is None:
        raise ValueError(f"Unknown resource kind '{name}'. Valid kinds: {list(KINDS)}")
    return kind
