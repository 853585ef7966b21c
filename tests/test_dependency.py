"""Tests for dependency tracking and change filtering."""

from __future__ import annotations

import threading

import pytest

from tyk_operator.dependency import ChangeEvent, ChangeFilter, ChangeType, DependencyIndex
from tyk_operator.models import ObjectKey

CM_A = ObjectKey("default", "cm-a")
CM_B = ObjectKey("default", "cm-b")
API_1 = ObjectKey("default", "api-1")
API_2 = ObjectKey("default", "api-2")


def event(change: ChangeType, key: ObjectKey = CM_A) -> ChangeEvent:
    return ChangeEvent(source="ConfigMap", key=key, change=change)


class TestChangeFilter:
    """Tests for ChangeFilter."""

    def test_defaults(self) -> None:
        """Creation is ignored, updates and deletions trigger work."""
        change_filter = ChangeFilter()
        assert change_filter.should_reconcile(event(ChangeType.CREATED)) is False
        assert change_filter.should_reconcile(event(ChangeType.UPDATED)) is True
        assert change_filter.should_reconcile(event(ChangeType.DELETED)) is True

    def test_configurable(self) -> None:
        change_filter = ChangeFilter(react_to_create=True, react_to_delete=False)
        assert change_filter.should_reconcile(event(ChangeType.CREATED)) is True
        assert change_filter.should_reconcile(event(ChangeType.DELETED)) is False


class TestChangeEvent:
    """Tests for ChangeEvent."""

    def test_object_not_compared(self) -> None:
        first = ChangeEvent("ConfigMap", CM_A, ChangeType.UPDATED, object={"data": {"a": "1"}})
        second = ChangeEvent("ConfigMap", CM_A, ChangeType.UPDATED, object={"data": {"a": "2"}})
        assert first == second


class TestDependencyIndex:
    """Tests for DependencyIndex."""

    def test_lookup_unknown(self) -> None:
        assert DependencyIndex().lookup_dependents(CM_A) == frozenset()

    def test_fan_out(self) -> None:
        index = DependencyIndex()
        index.upsert(API_1, CM_A)
        index.upsert(API_2, CM_A)

        assert index.lookup_dependents(CM_A) == {API_1, API_2}
        assert len(index) == 2

    def test_moving_reference(self) -> None:
        """Pointing a resource elsewhere drops the old edge."""
        index = DependencyIndex()
        index.upsert(API_1, CM_A)
        index.upsert(API_1, CM_B)

        assert index.lookup_dependents(CM_A) == frozenset()
        assert index.lookup_dependents(CM_B) == {API_1}
        assert index.dependency_of(API_1) == CM_B

    def test_upsert_none_clears(self) -> None:
        index = DependencyIndex()
        index.upsert(API_1, CM_A)
        index.upsert(API_1, None)

        assert index.lookup_dependents(CM_A) == frozenset()
        assert index.dependency_of(API_1) is None

    def test_remove(self) -> None:
        index = DependencyIndex()
        index.upsert(API_1, CM_A)
        index.upsert(API_2, CM_A)
        index.remove(API_1)

        assert index.lookup_dependents(CM_A) == {API_2}
        index.remove(API_1)  # unknown key is a no-op
        assert len(index) == 1

    def test_rebuild_replaces(self) -> None:
        index = DependencyIndex()
        index.upsert(API_1, CM_A)

        index.rebuild([(API_2, CM_B), (API_1, None)])

        assert index.lookup_dependents(CM_A) == frozenset()
        assert index.lookup_dependents(CM_B) == {API_2}
        assert len(index) == 1

    def test_lookup_returns_snapshot(self) -> None:
        index = DependencyIndex()
        index.upsert(API_1, CM_A)
        snapshot = index.lookup_dependents(CM_A)

        index.upsert(API_2, CM_A)

        assert snapshot == {API_1}

    def test_concurrent_mutation(self) -> None:
        index = DependencyIndex()
        keys = [ObjectKey("default", f"api-{i}") for i in range(200)]

        def writer(chunk: list[ObjectKey]) -> None:
            for key in chunk:
                index.upsert(key, CM_A)

        threads = [threading.Thread(target=writer, args=(keys[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert index.lookup_dependents(CM_A) == frozenset(keys)


@pytest.mark.parametrize("change", list(ChangeType))
def test_change_type_values_are_lowercase(change: ChangeType) -> None:
    assert change.value == change.name.lower()
