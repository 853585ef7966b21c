"""Pydantic models for managed resources and their status.

These models provide:
1. Type-safe parsing of objects handed over by the orchestration runtime
2. Validation at the boundary (fail fast, fail loudly)
3. Serialization back to the persisted status shape
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Identity
# =============================================================================


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Namespace and name of a cluster object. Unique and immutable."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ObjectKey:
        """Parse a ``namespace/name`` string."""
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Object key must have the form namespace/name: {value!r}")
        return cls(namespace=namespace, name=name)


@dataclass(frozen=True)
class Finalizer:
    """A named deletion lock.

    The persisted value is the exact sentinel string, so matching stays
    compatible with finalizers written by other controllers.
    """

    name: str

    def is_set_on(self, resource: ManagedResource) -> bool:
        return self.name in resource.metadata.finalizers

    def add_to(self, resource: ManagedResource) -> bool:
        """Add the finalizer. Returns True if the resource changed."""
        if self.is_set_on(resource):
            return False
        resource.metadata.finalizers.append(self.name)
        return True

    def remove_from(self, resource: ManagedResource) -> bool:
        """Remove the finalizer. Returns True if the resource changed."""
        if not self.is_set_on(resource):
            return False
        resource.metadata.finalizers = [f for f in resource.metadata.finalizers if f != self.name]
        return True


# =============================================================================
# Status
# =============================================================================


class TransactionStatus(str, Enum):
    """Outcome of the most recent sync attempt."""

    SUCCESSFUL = "Successful"
    FAILED = "Failed"


class TransactionInfo(BaseModel):
    """Outcome, time and error of the last sync attempt."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    status: TransactionStatus
    time: datetime
    error: str | None = None


class ObservedFields(BaseModel):
    """Small projection of remote-object fields for display.

    Every field is optional; a field missing from the payload stays None.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool | None = None
    domain: str | None = None
    listen_path: str | None = Field(None, alias="listenPath")
    target_url: str | None = Field(None, alias="targetURL")


class ResourceStatus(BaseModel):
    """Observed state written back onto a managed resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    external_id: str = Field("", alias="externalID")
    latest_transaction: TransactionInfo | None = Field(None, alias="latestTransaction")
    observed_fields: ObservedFields = Field(default_factory=ObservedFields, alias="observedFields")


# =============================================================================
# Resource envelope
# =============================================================================


class ResourceMetadata(BaseModel):
    """The subset of object metadata the engine relies on."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    namespace: Annotated[str, Field(min_length=1)] = "default"
    uid: str | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")
    generation: int | None = None
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")


class ManagedResource(BaseModel):
    """A declarative object under reconciliation."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: str
    metadata: ResourceMetadata
    spec: dict[str, Any] = Field(default_factory=dict)
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @field_validator("status", mode="before")
    @classmethod
    def empty_status(cls, v: Any) -> Any:
        # Freshly created objects carry no status at all
        return v if v is not None else {}

    @classmethod
    def from_object(cls, kind: str, obj: dict[str, Any]) -> ManagedResource:
        """Parse a raw object as returned by the runtime's API.

        Raises:
            pydantic.ValidationError: If the object lacks required metadata.
        """
        return cls.model_validate({**obj, "kind": kind})

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def deletion_requested(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def status_dict(self) -> dict[str, Any]:
        """Serialize the status in its persisted shape."""
        return self.status.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# TykOasApiDefinition
# =============================================================================


class ConfigMapReference(BaseModel):
    """Pointer to the ConfigMap entry holding an OAS document."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    namespace: str | None = None
    key_name: Annotated[str, Field(min_length=1, alias="keyName")]


class TykOasReference(BaseModel):
    """Where the OAS document of a TykOasApiDefinition lives."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    configmap_ref: ConfigMapReference = Field(alias="configmapRef")


class TykOasApiDefinitionSpec(BaseModel):
    """Spec of a TykOasApiDefinition resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    tyk_oas: TykOasReference = Field(alias="tykOAS")


# =============================================================================
# SecurityPolicy
# =============================================================================


class PolicyState(str, Enum):
    """Key issuing state of a security policy."""

    ACTIVE = "active"  # All keys active, new keys can be created
    DRAFT = "draft"  # All keys active, no new keys
    DENY = "deny"  # All keys deactivated


class AccessSpec(BaseModel):
    """URL and methods a key is allowed to call."""

    model_config = {"extra": "ignore"}

    url: str
    methods: list[str] = Field(default_factory=list)


class ApiLimit(BaseModel):
    """Per-API quota and rate limit."""

    model_config = {"extra": "ignore"}

    rate: int = 0
    per: int = 0
    throttle_interval: int = 0
    throttle_retry_limit: int = 0
    max_query_depth: int = 0
    quota_max: int = 0
    quota_renews: int = 0
    quota_remaining: int = 0
    quota_renewal_rate: int = 0


class AccessDefinition(BaseModel):
    """Which versions of an API a key has access to."""

    model_config = {"extra": "ignore"}

    name: str
    namespace: str | None = None
    api_name: str | None = None
    api_id: str | None = None
    versions: list[str] = Field(default_factory=list)
    limit: ApiLimit | None = None
    allowance_scope: str | None = None
    allowed_urls: list[AccessSpec] = Field(default_factory=list)


class PolicyPartitions(BaseModel):
    """Which limits the policy enforces."""

    model_config = {"extra": "ignore"}

    quota: bool = False
    rate_limit: bool = False
    complexity: bool = False
    acl: bool = False
    per_api: bool = False


class SecurityPolicySpec(BaseModel):
    """Spec of a SecurityPolicy resource, submitted to Tyk as-is."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    mid: str | None = Field(None, alias="_id")
    id: str | None = None
    name: Annotated[str, Field(min_length=1)]
    org_id: str | None = None
    state: PolicyState = PolicyState.ACTIVE
    active: bool = False
    is_inactive: bool = False
    access_rights_array: list[AccessDefinition] = Field(default_factory=list)
    rate: int = 0
    per: int = 0
    quota_max: int = 0
    quota_renewal_rate: int = 0
    throttle_interval: int = 0
    throttle_retry_limit: int = 0
    max_query_depth: int = 0
    hmac_enabled: bool = False
    enable_http_signature_validation: bool = False
    tags: list[str] = Field(default_factory=list)
    key_expires_in: int = 0
    partitions: PolicyPartitions | None = None

    @field_validator("quota_max")
    @classmethod
    def validate_quota(cls, v: int) -> int:
        # Tyk uses -1 for unlimited
        if v < -1:
            raise ValueError("quota_max must be -1 (unlimited) or non-negative")
        return v
