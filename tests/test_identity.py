"""Tests for external identity resolution."""

import logging

import pytest

from tyk_operator.identity import decode_key, embedded_id, encode_key, resolve_external_id
from tyk_operator.models import ObjectKey
from tyk_operator.resource_kinds import SECURITY_POLICY, TYK_OAS_API_DEFINITION
from tyk_mock import oas_document

KEY = ObjectKey("default", "petstore")
OAS_PATHS = TYK_OAS_API_DEFINITION.id_paths


class TestEncodeKey:
    """Tests for the deterministic key encoding."""

    def test_known_value(self) -> None:
        # base64url("default/petstore") without padding
        assert encode_key(KEY) == "ZGVmYXVsdC9wZXRzdG9yZQ"

    def test_no_padding_and_url_safe(self) -> None:
        # Standard base64 of "a/b?>?" is "YS9iPz4/"
        encoded = encode_key(ObjectKey("a", "b?>?"))
        assert "=" not in encoded
        assert "+" not in encoded
        assert "/" not in encoded

    def test_decode_inverts_encode(self) -> None:
        key = ObjectKey("team-a", "orders-v2")
        assert decode_key(encode_key(key)) == key

    def test_distinct_keys_distinct_ids(self) -> None:
        assert encode_key(ObjectKey("a", "bc")) != encode_key(ObjectKey("ab", "c"))


class TestEmbeddedId:
    """Tests for IDs carried inside the payload."""

    def test_first_path_wins(self) -> None:
        payload = {"_id": "mongo-id", "id": "plain-id"}
        assert embedded_id(payload, SECURITY_POLICY.id_paths) == "mongo-id"

    def test_falls_through_empty_values(self) -> None:
        payload = {"_id": "", "id": "plain-id"}
        assert embedded_id(payload, SECURITY_POLICY.id_paths) == "plain-id"

    def test_ignores_non_strings(self) -> None:
        assert embedded_id({"id": 42}, SECURITY_POLICY.id_paths) == ""


class TestResolveExternalId:
    """Tests for identity precedence."""

    def test_status_id_wins(self) -> None:
        payload = oas_document(api_id="from-payload")
        assert resolve_external_id(KEY, "abc123", payload, OAS_PATHS) == "abc123"

    def test_embedded_id_before_encoding(self) -> None:
        payload = oas_document(api_id="from-payload")
        assert resolve_external_id(KEY, "", payload, OAS_PATHS) == "from-payload"

    def test_encoding_as_fallback(self) -> None:
        assert resolve_external_id(KEY, "", oas_document(), OAS_PATHS) == encode_key(KEY)

    def test_idempotent(self) -> None:
        """Resolving twice with unchanged inputs yields the same ID."""
        payload = oas_document()
        first = resolve_external_id(KEY, "", payload, OAS_PATHS)
        second = resolve_external_id(KEY, "", payload, OAS_PATHS)
        assert first == second

    def test_diverging_embedded_id_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        payload = oas_document(api_id="renamed")

        with caplog.at_level(logging.WARNING, logger="tyk_operator.identity"):
            result = resolve_external_id(KEY, "abc123", payload, OAS_PATHS)

        assert result == "abc123"
        assert "differs" in caplog.text

    def test_matching_embedded_id_is_silent(self, caplog: pytest.LogCaptureFixture) -> None:
        payload = oas_document(api_id="abc123")

        with caplog.at_level(logging.WARNING, logger="tyk_operator.identity"):
            resolve_external_id(KEY, "abc123", payload, OAS_PATHS)

        assert caplog.records == []
