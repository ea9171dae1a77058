"""Shared fixtures for the message wallet tests."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeGateway, FakeTransport, InMemoryStore, RecordingEventSink
from message_wallet.guard import PlanGuard
from message_wallet.outbox import MessageOutbox
from message_wallet.plan_resolver import EntitlementResolver
from message_wallet.reconciler import GatewayReconciler
from message_wallet.wallet_service import WalletService

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_tenant("t1", plan="starter", plan_status="active")
    return store


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def resolver(store):
    return EntitlementResolver(store)


@pytest.fixture
def wallet_service(store, resolver):
    return WalletService(store, resolver)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def guard(store, resolver, sink):
    return PlanGuard(store, resolver, sink)


@pytest.fixture
def outbox(wallet_service, sink, transport, guard):
    return MessageOutbox(wallet_service, sink, transport, guard)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def reconciler(store, wallet_service, sink):
    return GatewayReconciler(store, wallet_service, sink)
