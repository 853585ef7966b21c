"""Tyk management API and cluster mocks for testing.

In-memory stand-ins for the operator's collaborators so the reconciliation
engine can be exercised end to end without a gateway or a cluster.

Key Features:
- Object collections keyed by external ID, with call recording
- Error injection per operation (create, delete, reload, update_status, ...)
- Optional per-call latency for concurrency tests
- Resource store with finalizer garbage collection
- Event source fed directly by the test

Usage:
    from tyk_mock import MockGateway, MockResourceStore, oas_resource

    gateway = MockGateway()
    store = MockResourceStore()
    store.add(oas_resource("petstore"))

    reconciler = Reconciler(config, store, gateway)
    await reconciler.reconcile(request)

    assert gateway.state.count("create") == 1
"""

from .factories import OAS_KEY_NAME, dump_document, oas_document, oas_resource, policy_resource
from .gateway import MockCollectionApi, MockGateway, MockGatewayState, RemoteCall
from .injection import ErrorInjector
from .store import MockEventSource, MockResourceStore

__all__ = [
    "OAS_KEY_NAME",
    "ErrorInjector",
    "MockCollectionApi",
    "MockEventSource",
    "MockGateway",
    "MockGatewayState",
    "MockResourceStore",
    "RemoteCall",
    "dump_document",
    "oas_document",
    "oas_resource",
    "policy_resource",
]
