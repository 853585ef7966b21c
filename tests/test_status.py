"""Tests for status and drift reporting."""

from datetime import UTC, datetime, timedelta

import pytest

from tyk_operator.errors import RemoteApiError
from tyk_operator.models import ObjectKey, TransactionStatus
from tyk_operator.resource_kinds import SECURITY_POLICY, TYK_OAS_API_DEFINITION
from tyk_operator.status import (
    ObservedFieldPath,
    StatusReporter,
    extract_observed_fields,
    try_extract,
)
from tyk_mock import MockResourceStore, dump_document, oas_document, oas_resource, policy_resource

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
CM_KEY = ObjectKey("default", "petstore-oas")


class FakeClock:
    """Clock returning a scripted sequence of times."""

    def __init__(self, *times: datetime) -> None:
        self._times = list(times)

    def __call__(self) -> datetime:
        return self._times.pop(0) if len(self._times) > 1 else self._times[0]


class TestTryExtract:
    """Tests for path lookups in nested documents."""

    def test_nested_value(self) -> None:
        assert try_extract({"a": {"b": {"c": 1}}}, ("a", "b", "c")) == 1

    def test_missing_segment(self) -> None:
        assert try_extract({"a": {}}, ("a", "b", "c")) is None

    def test_non_mapping_intermediate(self) -> None:
        assert try_extract({"a": ["b"]}, ("a", "b")) is None

    def test_falsy_values_survive(self) -> None:
        assert try_extract({"a": {"b": False}}, ("a", "b")) is False


class TestExtractObservedFields:
    """Tests for failure-isolated field projection."""

    def test_all_fields(self) -> None:
        document = oas_document(custom_domain="api.example.com")

        fields = extract_observed_fields(document, TYK_OAS_API_DEFINITION.observed_fields)

        assert fields.enabled is True
        assert fields.domain == "api.example.com"
        assert fields.listen_path == "/petstore/"
        assert fields.target_url == "http://petstore.svc:8080"

    def test_missing_field_leaves_others(self) -> None:
        document = oas_document(listen_path=None)

        fields = extract_observed_fields(document, TYK_OAS_API_DEFINITION.observed_fields)

        assert fields.listen_path is None
        assert fields.enabled is True
        assert fields.target_url == "http://petstore.svc:8080"

    def test_wrong_type_is_absent(self) -> None:
        """A string where a bool is expected is dropped, not coerced."""
        document = oas_document(active="yes")

        fields = extract_observed_fields(document, TYK_OAS_API_DEFINITION.observed_fields)

        assert fields.enabled is None
        assert fields.listen_path == "/petstore/"

    def test_int_is_not_bool(self) -> None:
        path = ObservedFieldPath("enabled", ("active",), bool)
        assert path.extract({"active": 1}) is None


class TestRecordTransaction:
    """Tests for the last-transaction stamp."""

    def test_success(self) -> None:
        reporter = StatusReporter(MockResourceStore(), clock=FakeClock(T0))
        resource = oas_resource()

        reporter.record_transaction(resource, None)

        assert resource.status.latest_transaction is not None
        assert resource.status.latest_transaction.status == TransactionStatus.SUCCESSFUL
        assert resource.status.latest_transaction.time == T0
        assert resource.status.latest_transaction.error is None

    def test_failure_records_error(self) -> None:
        reporter = StatusReporter(MockResourceStore(), clock=FakeClock(T0))
        resource = oas_resource()

        reporter.record_transaction(resource, RemoteApiError("bad request", status_code=400))

        assert resource.status.latest_transaction.status == TransactionStatus.FAILED
        assert resource.status.latest_transaction.error == "bad request"

    def test_time_never_moves_backwards(self) -> None:
        reporter = StatusReporter(MockResourceStore(), clock=FakeClock(T0, T0 - timedelta(minutes=5)))
        resource = oas_resource()

        reporter.record_transaction(resource, None)
        reporter.record_transaction(resource, None)

        assert resource.status.latest_transaction.time == T0


class TestReport:
    """Tests for the full status write."""

    @pytest.mark.asyncio
    async def test_success_sets_id_and_fields(self) -> None:
        store = MockResourceStore()
        store.add_configmap(CM_KEY, {"oas.yaml": dump_document(oas_document())})
        resource = store.add(oas_resource())
        reporter = StatusReporter(store, clock=FakeClock(T0))

        await reporter.report(resource, TYK_OAS_API_DEFINITION, "abc123", None)

        stored = store.stored("TykOasApiDefinition", resource.key)
        assert stored.status.external_id == "abc123"
        assert stored.status.latest_transaction.status == TransactionStatus.SUCCESSFUL
        assert stored.status.observed_fields.listen_path == "/petstore/"

    @pytest.mark.asyncio
    async def test_existing_id_never_overwritten(self) -> None:
        store = MockResourceStore()
        store.add_configmap(CM_KEY, {"oas.yaml": dump_document(oas_document())})
        resource = store.add(oas_resource(external_id="abc123"))
        reporter = StatusReporter(store, clock=FakeClock(T0))

        await reporter.report(resource, TYK_OAS_API_DEFINITION, "other", None)

        assert store.stored("TykOasApiDefinition", resource.key).status.external_id == "abc123"

    @pytest.mark.asyncio
    async def test_id_not_set_on_failure(self) -> None:
        store = MockResourceStore()
        store.add_configmap(CM_KEY, {"oas.yaml": dump_document(oas_document())})
        resource = store.add(oas_resource())
        reporter = StatusReporter(store, clock=FakeClock(T0))

        await reporter.report(resource, TYK_OAS_API_DEFINITION, "abc123", RemoteApiError("nope"))

        stored = store.stored("TykOasApiDefinition", resource.key)
        assert stored.status.external_id == ""
        assert stored.status.latest_transaction.status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_backing_read_error_records_failed(self) -> None:
        """A missing ConfigMap still produces a written, failed transaction."""
        store = MockResourceStore()
        resource = store.add(oas_resource(external_id="abc123"))
        reporter = StatusReporter(store, clock=FakeClock(T0))

        await reporter.report(resource, TYK_OAS_API_DEFINITION, "abc123", None)

        stored = store.stored("TykOasApiDefinition", resource.key)
        assert stored.status.latest_transaction.status == TransactionStatus.FAILED
        assert "not found" in stored.status.latest_transaction.error

    @pytest.mark.asyncio
    async def test_sync_error_wins_over_read_error(self) -> None:
        store = MockResourceStore()
        resource = store.add(oas_resource())
        reporter = StatusReporter(store, clock=FakeClock(T0))

        await reporter.report(resource, TYK_OAS_API_DEFINITION, "", RemoteApiError("rejected"))

        stored = store.stored("TykOasApiDefinition", resource.key)
        assert stored.status.latest_transaction.error == "rejected"

    @pytest.mark.asyncio
    async def test_policy_enabled_from_spec(self) -> None:
        store = MockResourceStore()
        resource = store.add(policy_resource())
        reporter = StatusReporter(store, clock=FakeClock(T0))

        await reporter.report(resource, SECURITY_POLICY, "pol-1", None)

        stored = store.stored("SecurityPolicy", resource.key)
        assert stored.status.observed_fields.enabled is True
        assert stored.status.observed_fields.listen_path is None
