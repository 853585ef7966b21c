"""Tests for resource kind descriptors."""

import pytest

from tyk_operator.errors import DependencyReadError, PayloadValidationError
from tyk_operator.models import ObjectKey
from tyk_operator.resource_kinds import (
    KINDS,
    SECURITY_POLICY,
    TYK_OAS_API_DEFINITION,
    RemoteCollection,
    get_kind,
)
from tyk_mock import MockResourceStore, dump_document, oas_document, oas_resource, policy_resource


class TestRegistry:
    """Tests for kind lookup."""

    def test_known_kinds(self) -> None:
        assert set(KINDS) == {"TykOasApiDefinition", "SecurityPolicy"}
        assert get_kind("SecurityPolicy") is SECURITY_POLICY

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError, match="Unknown resource kind"):
            get_kind("ApiDefinition")

    def test_finalizer_sentinels(self) -> None:
        assert TYK_OAS_API_DEFINITION.finalizer.name == "finalizers.tyk.io/tykoas"
        assert SECURITY_POLICY.finalizer.name == "finalizers.tyk.io/securitypolicy"

    def test_collections(self) -> None:
        assert TYK_OAS_API_DEFINITION.collection == RemoteCollection.OAS_APIS
        assert SECURITY_POLICY.collection == RemoteCollection.POLICIES


class TestTykOasApiDefinition:
    """Tests for OAS definitions backed by a ConfigMap."""

    def test_dependency_defaults_to_own_namespace(self) -> None:
        resource = oas_resource(namespace="apis", configmap="petstore-oas")
        assert TYK_OAS_API_DEFINITION.dependency_key(resource) == ObjectKey("apis", "petstore-oas")

    def test_dependency_in_other_namespace(self) -> None:
        resource = oas_resource(namespace="apis", configmap_namespace="shared")
        assert TYK_OAS_API_DEFINITION.dependency_key(resource) == ObjectKey("shared", "petstore-oas")

    def test_dependency_of_malformed_spec(self) -> None:
        resource = policy_resource()
        resource.kind = "TykOasApiDefinition"
        assert TYK_OAS_API_DEFINITION.dependency_key(resource) is None

    @pytest.mark.asyncio
    async def test_load_yaml_document(self) -> None:
        store = MockResourceStore()
        document = oas_document(api_id="abc")
        store.add_configmap(ObjectKey("default", "petstore-oas"), {"oas.yaml": dump_document(document)})

        payload = await TYK_OAS_API_DEFINITION.load_payload(oas_resource(), store)

        assert payload == document

    @pytest.mark.asyncio
    async def test_load_json_document(self) -> None:
        store = MockResourceStore()
        store.add_configmap(
            ObjectKey("default", "petstore-oas"),
            {"oas.json": '{"x-tyk-api-gateway": {"info": {"id": "abc"}}}'},
        )

        payload = await TYK_OAS_API_DEFINITION.load_payload(oas_resource(key_name="oas.json"), store)

        assert payload["x-tyk-api-gateway"]["info"]["id"] == "abc"

    @pytest.mark.asyncio
    async def test_missing_configmap(self) -> None:
        with pytest.raises(DependencyReadError, match="not found"):
            await TYK_OAS_API_DEFINITION.load_payload(oas_resource(), MockResourceStore())

    @pytest.mark.asyncio
    async def test_missing_entry(self) -> None:
        store = MockResourceStore()
        store.add_configmap(ObjectKey("default", "petstore-oas"), {"other.yaml": "{}"})

        with pytest.raises(DependencyReadError, match="has no key 'oas.yaml'"):
            await TYK_OAS_API_DEFINITION.load_payload(oas_resource(), store)

    @pytest.mark.asyncio
    async def test_invalid_yaml(self) -> None:
        store = MockResourceStore()
        store.add_configmap(ObjectKey("default", "petstore-oas"), {"oas.yaml": "openapi: [3.0"})

        with pytest.raises(PayloadValidationError, match="invalid Tyk OAS document"):
            await TYK_OAS_API_DEFINITION.load_payload(oas_resource(), store)

    @pytest.mark.asyncio
    async def test_non_mapping_document(self) -> None:
        store = MockResourceStore()
        store.add_configmap(ObjectKey("default", "petstore-oas"), {"oas.yaml": "- a\n- b\n"})

        with pytest.raises(PayloadValidationError, match="must be a mapping"):
            await TYK_OAS_API_DEFINITION.load_payload(oas_resource(), store)

    @pytest.mark.asyncio
    async def test_spec_without_configmap_ref(self) -> None:
        resource = oas_resource()
        resource.spec = {"tykOAS": {}}

        with pytest.raises(PayloadValidationError, match="configmapRef"):
            await TYK_OAS_API_DEFINITION.load_payload(resource, MockResourceStore())


class TestSecurityPolicy:
    """Tests for policies whose payload is built from the resource `.spec` field."""

    @pytest.mark.asyncio
    async def test_payload_is_normalized_spec(self) -> None:
        resource = policy_resource(spec={"name": "Gold", "_id": "pol-1", "rate": 10, "per": 1})

        payload = await SECURITY_POLICY.load_payload(resource, MockResourceStore())

        assert payload["name"] == "Gold"
        assert payload["_id"] == "pol-1"
        assert payload["state"] == "active"
        assert "id" not in payload

    @pytest.mark.asyncio
    async def test_invalid_spec(self) -> None:
        resource = policy_resource(spec={"rate": 10})

        with pytest.raises(PayloadValidationError, match="name"):
            await SECURITY_POLICY.load_payload(resource, MockResourceStore())

    def test_no_dependency(self) -> None:
        assert SECURITY_POLICY.dependency_source is None
        assert SECURITY_POLICY.dependency_key(policy_resource()) is None
