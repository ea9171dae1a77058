"""
In-memory doubles for the message wallet tests.

InMemoryStore implements the same repository interfaces as MongoStore.
Transactions take one store-wide asyncio.Lock and restore a snapshot of
the data on error; every repository call yields to the event loop so
concurrent callers really interleave.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from message_wallet.events import EventSink
from message_wallet.gateway_client import MercadoPagoClient
from message_wallet.outbox import MessageTransport
from message_wallet.store import (
    CheckoutStore,
    Store,
    SubscriptionStore,
    TenantStore,
    TransactionLog,
    WalletStore,
)


class TransientConflict(Exception):
    """Stands in for a store write conflict."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Repo:
    def __init__(self, store: "InMemoryStore"):
        self.store = store

    @property
    def data(self) -> dict:
        return self.store.data

    async def _write(self, session, fn):
        await asyncio.sleep(0)
        if session is None:
            async with self.store.lock:
                return fn()
        return fn()


class InMemoryWalletStore(_Repo, WalletStore):

    async def get(self, tenant_id, session=None):
        await asyncio.sleep(0)
        return copy.deepcopy(self.data["wallets"].get(tenant_id))

    async def lock(self, tenant_id, session):
        assert session is not None, "lock() requires a transaction"
        await asyncio.sleep(0)
        wallet = self.data["wallets"].get(tenant_id)
        if wallet is None:
            return None
        wallet["lock_version"] = wallet.get("lock_version", 0) + 1
        return copy.deepcopy(wallet)

    async def create_if_absent(self, wallet, session=None):
        def apply():
            if wallet["tenant_id"] in self.data["wallets"]:
                return False
            self.data["wallets"][wallet["tenant_id"]] = copy.deepcopy(wallet)
            return True
        return await self._write(session, apply)

    async def update(self, tenant_id, fields, session=None):
        def apply():
            self.data["wallets"][tenant_id].update(copy.deepcopy(fields))
        await self._write(session, apply)

    async def decrement(self, tenant_id, bucket, session=None):
        def apply():
            wallet = self.data["wallets"][tenant_id]
            field = f"{bucket}_balance"
            if wallet[field] <= 0:
                return False
            wallet[field] -= 1
            return True
        return await self._write(session, apply)

    async def increment_extra(self, tenant_id, amount, session=None):
        def apply():
            self.data["wallets"][tenant_id]["extra_balance"] += amount
        await self._write(session, apply)

    async def list_due_for_reset(self, now_iso, limit=500):
        await asyncio.sleep(0)
        due = [w["tenant_id"] for w in self.data["wallets"].values() if w["cycle_end"] <= now_iso]
        return due[:limit]


class InMemoryTransactionLog(_Repo, TransactionLog):

    async def find_by_dedup_key(self, dedup_key, session=None):
        await asyncio.sleep(0)
        for entry in self.data["transactions"]:
            if entry.get("dedup_key") == dedup_key:
                return copy.deepcopy(entry)
        return None

    async def append(self, entry, session=None):
        def apply():
            key = entry.get("dedup_key")
            if key is not None and any(t.get("dedup_key") == key for t in self.data["transactions"]):
                return None
            self.data["counters"]["wallet_transactions"] += 1
            doc = {**copy.deepcopy(entry), "id": self.data["counters"]["wallet_transactions"]}
            doc.setdefault("created_at", _now_iso())
            self.data["transactions"].append(doc)
            return copy.deepcopy(doc)
        return await self._write(session, apply)

    async def count(self, tenant_id, kind, session=None, **match):
        await asyncio.sleep(0)
        return sum(
            1 for t in self.data["transactions"]
            if t["tenant_id"] == tenant_id and t["kind"] == kind
            and all(t.get(k) == v for k, v in match.items())
        )

    async def list(self, tenant_id, kind, limit):
        await asyncio.sleep(0)
        rows = [t for t in self.data["transactions"] if t["tenant_id"] == tenant_id and t["kind"] == kind]
        rows.sort(key=lambda t: t["id"], reverse=True)
        return copy.deepcopy(rows[:limit])


class InMemorySubscriptionStore(_Repo, SubscriptionStore):

    async def get(self, subscription_id):
        await asyncio.sleep(0)
        return copy.deepcopy(self.data["subscriptions"].get(subscription_id))

    async def find_latest(self, **match):
        await asyncio.sleep(0)
        rows = [
            s for s in self.data["subscriptions"].values()
            if all(s.get(k) == v for k, v in match.items())
        ]
        if not rows:
            return None
        return copy.deepcopy(max(rows, key=lambda s: s["id"]))

    async def list_for_tenant(self, tenant_id, statuses=None):
        await asyncio.sleep(0)
        rows = [
            s for s in self.data["subscriptions"].values()
            if s["tenant_id"] == tenant_id and (not statuses or s["status"] in statuses)
        ]
        rows.sort(key=lambda s: s["id"], reverse=True)
        return copy.deepcopy(rows)

    async def create(self, subscription):
        def apply():
            self.data["counters"]["subscriptions"] += 1
            doc = {**copy.deepcopy(subscription), "id": self.data["counters"]["subscriptions"]}
            doc.setdefault("created_at", _now_iso())
            self.data["subscriptions"][doc["id"]] = doc
            return copy.deepcopy(doc)
        return await self._write(None, apply)

    async def update(self, subscription_id, fields, only_from=None):
        def apply():
            doc = self.data["subscriptions"].get(subscription_id)
            if doc is None:
                return False
            if only_from is not None and doc.get("status") not in only_from:
                return False
            doc.update(copy.deepcopy(fields))
            return True
        return await self._write(None, apply)

    async def append_event(self, event):
        def apply():
            gateway_event_id = event.get("gateway_event_id")
            if gateway_event_id is not None:
                for existing in self.data["subscription_events"]:
                    if (existing["subscription_id"], existing["event_type"], existing.get("gateway_event_id")) == \
                            (event["subscription_id"], event["event_type"], gateway_event_id):
                        return False
            self.data["subscription_events"].append(copy.deepcopy(event))
            return True
        return await self._write(None, apply)


class InMemoryTenantStore(_Repo, TenantStore):

    async def get(self, tenant_id):
        await asyncio.sleep(0)
        return copy.deepcopy(self.data["tenants"].get(tenant_id))

    async def update_plan(self, tenant_id, fields):
        def apply():
            self.data["tenants"].setdefault(tenant_id, {"id": tenant_id}).update(copy.deepcopy(fields))
        await self._write(None, apply)

    async def count_active_professionals(self, tenant_id):
        await asyncio.sleep(0)
        return self.data["professionals"].get(tenant_id, 0)

    async def list_billed(self, limit=1000):
        await asyncio.sleep(0)
        rows = [
            t for t in self.data["tenants"].values()
            if t.get("plan_active_until") or t.get("plan_status") == "delinquent"
        ]
        return copy.deepcopy(rows[:limit])

    async def mark_reminder(self, tenant_id, due_at, kind):
        def apply():
            key = (tenant_id, due_at, kind)
            if key in self.data["billing_reminders"]:
                return False
            self.data["billing_reminders"].add(key)
            return True
        return await self._write(None, apply)


class InMemoryCheckoutStore(_Repo, CheckoutStore):

    async def create(self, checkout):
        def apply():
            self.data["checkouts"][checkout["payment_id"]] = copy.deepcopy(checkout)
        await self._write(None, apply)

    async def get_by_payment_id(self, payment_id):
        await asyncio.sleep(0)
        return copy.deepcopy(self.data["checkouts"].get(payment_id))

    async def mark(self, payment_id, status, unless_status=None):
        def apply():
            doc = self.data["checkouts"].get(payment_id)
            if doc is None or doc["status"] in (status, unless_status):
                return False
            doc["status"] = status
            if status == "consumed":
                doc["consumed_at"] = _now_iso()
            return True
        return await self._write(None, apply)


class InMemoryStore(Store):
    """
    Usage:
        store = InMemoryStore()
        store.add_tenant("t1", plan="starter", plan_status="active")
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self.data = {
            "wallets": {},
            "transactions": [],
            "subscriptions": {},
            "subscription_events": [],
            "checkouts": {},
            "tenants": {},
            "professionals": {},
            "billing_reminders": set(),
            "counters": {"wallet_transactions": 0, "subscriptions": 0},
        }
        self.conflicts_to_raise = 0
        self.transactions_started = 0
        self.wallets = InMemoryWalletStore(self)
        self.transactions = InMemoryTransactionLog(self)
        self.subscriptions = InMemorySubscriptionStore(self)
        self.tenants = InMemoryTenantStore(self)
        self.checkouts = InMemoryCheckoutStore(self)

    @asynccontextmanager
    async def transaction(self):
        async with self.lock:
            self.transactions_started += 1
            if self.conflicts_to_raise > 0:
                self.conflicts_to_raise -= 1
                raise TransientConflict("write conflict")
            snapshot = copy.deepcopy(self.data)
            try:
                yield object()
            except BaseException:
                self.data.clear()
                self.data.update(snapshot)
                raise

    def is_retryable(self, exc):
        return isinstance(exc, TransientConflict)

    # ==================== TEST HELPERS ====================

    def add_tenant(self, tenant_id: str, **fields) -> dict:
        tenant = {"id": tenant_id, "plan": "starter", "plan_status": "active", **fields}
        self.data["tenants"][tenant_id] = tenant
        return tenant

    def add_subscription(self, **fields) -> dict:
        self.data["counters"]["subscriptions"] += 1
        sub = {"id": self.data["counters"]["subscriptions"], "billing_cycle": "monthly", **fields}
        self.data["subscriptions"][sub["id"]] = sub
        return sub

    def set_professionals(self, tenant_id: str, count: int):
        self.data["professionals"][tenant_id] = count

    def wallet(self, tenant_id: str) -> Optional[dict]:
        return self.data["wallets"].get(tenant_id)

    def ledger(self, tenant_id: str, kind: Optional[str] = None) -> List[dict]:
        return [
            t for t in self.data["transactions"]
            if t["tenant_id"] == tenant_id and (kind is None or t["kind"] == kind)
        ]


class RecordingEventSink(EventSink):

    def __init__(self):
        self.events = []

    async def emit(self, event_type, payload):
        self.events.append((event_type, payload))

    def of_type(self, event_type):
        return [payload for name, payload in self.events if name == event_type]


class FakeTransport(MessageTransport):

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, tenant_id, to, body, message_id, metadata=None):
        if self.fail:
            raise ConnectionError("provider unavailable")
        self.sent.append({"tenant_id": tenant_id, "to": to, "body": body, "message_id": message_id})
        return {"message_id": message_id}


class FakeGateway(MercadoPagoClient):
    """Mercado Pago client with the network calls replaced."""

    def __init__(self, signature_valid: bool = True):
        super().__init__()
        self.signature_valid = signature_valid
        self.created = []
        self.payments = {}
        self._next_id = 1000

    async def create_pix_payment(self, amount_cents, description, external_reference, metadata,
                                 payer_email=None, idempotency_key=None):
        self._next_id += 1
        payment_id = str(self._next_id)
        self.created.append({
            "payment_id": payment_id,
            "amount_cents": amount_cents,
            "external_reference": external_reference,
            "metadata": metadata,
            "idempotency_key": idempotency_key
        })
        self.payments[payment_id] = {
            "id": int(payment_id),
            "status": "pending",
            "transaction_amount": amount_cents / 100.0,
            "currency_id": "BRL",
            "external_reference": external_reference,
            "metadata": metadata
        }
        return {
            "payment_id": payment_id,
            "status": "pending",
            "qr_code": f"pix-code-{payment_id}",
            "qr_code_base64": "aW1n",
            "ticket_url": f"https://pix.example/{payment_id}",
            "expires_at": None
        }

    async def get_payment(self, payment_id):
        return copy.deepcopy(self.payments[str(payment_id)])

    def approve(self, payment_id: str, status: str = "approved"):
        self.payments[str(payment_id)]["status"] = status

    def verify_webhook_signature(self, headers, data_id):
        return self.signature_valid
