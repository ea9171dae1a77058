"""
MongoDB implementation of the wallet store.

Uses motor sessions for multi-document transactions. The wallet row lock is
taken by writing to the wallet document (bumping lock_version) inside the
transaction; a concurrent transaction touching the same wallet fails with a
WriteConflict labelled TransientTransactionError and is retried by
Store.run_in_transaction.

Insert-ignore is a unique index plus DuplicateKeyError handling. Inside a
transaction a duplicate aborts the transaction, so callers holding the
wallet lock check find_by_dedup_key before appending.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .store import (
    CheckoutStore,
    Store,
    SubscriptionStore,
    TenantStore,
    TransactionLog,
    WalletStore,
)

logger = logging.getLogger(__name__)

RETRYABLE_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")
WRITE_CONFLICT_CODE = 112


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def next_sequence(db, name: str) -> int:
    """Monotonic id from the counters collection (outside any transaction)."""
    doc = await db.counters.find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER
    )
    return doc["seq"]


class MongoWalletStore(WalletStore):

    def __init__(self, db):
        self.db = db

    async def get(self, tenant_id: str, session=None) -> Optional[dict]:
        return await self.db.message_wallets.find_one(
            {"tenant_id": tenant_id}, {"_id": 0}, session=session
        )

    async def lock(self, tenant_id: str, session) -> Optional[dict]:
        return await self.db.message_wallets.find_one_and_update(
            {"tenant_id": tenant_id},
            {"$inc": {"lock_version": 1}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
            session=session
        )

    async def create_if_absent(self, wallet: dict, session=None) -> bool:
        try:
            result = await self.db.message_wallets.update_one(
                {"tenant_id": wallet["tenant_id"]},
                {"$setOnInsert": wallet},
                upsert=True,
                session=session
            )
        except DuplicateKeyError:
            # Concurrent upsert won the race
            return False
        return result.upserted_id is not None

    async def update(self, tenant_id: str, fields: dict, session=None) -> None:
        await self.db.message_wallets.update_one(
            {"tenant_id": tenant_id},
            {"$set": {**fields, "updated_at": _now_iso()}},
            session=session
        )

    async def decrement(self, tenant_id: str, bucket: str, session=None) -> bool:
        field = f"{bucket}_balance"
        result = await self.db.message_wallets.update_one(
            {"tenant_id": tenant_id, field: {"$gt": 0}},
            {"$inc": {field: -1}, "$set": {"updated_at": _now_iso()}},
            session=session
        )
        return result.modified_count == 1

    async def increment_extra(self, tenant_id: str, amount: int, session=None) -> None:
        await self.db.message_wallets.update_one(
            {"tenant_id": tenant_id},
            {"$inc": {"extra_balance": amount}, "$set": {"updated_at": _now_iso()}},
            session=session
        )

    async def list_due_for_reset(self, now_iso: str, limit: int = 500) -> List[str]:
        cursor = self.db.message_wallets.find(
            {"cycle_end": {"$lte": now_iso}}, {"_id": 0, "tenant_id": 1}
        ).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [doc["tenant_id"] for doc in docs]


class MongoTransactionLog(TransactionLog):

    def __init__(self, db):
        self.db = db

    async def find_by_dedup_key(self, dedup_key: str, session=None) -> Optional[dict]:
        return await self.db.wallet_transactions.find_one(
            {"dedup_key": dedup_key}, {"_id": 0}, session=session
        )

    async def append(self, entry: dict, session=None) -> Optional[dict]:
        doc = {**entry, "id": await next_sequence(self.db, "wallet_transactions")}
        doc.setdefault("created_at", _now_iso())
        if doc.get("dedup_key") is None:
            doc.pop("dedup_key", None)
        try:
            await self.db.wallet_transactions.insert_one(doc, session=session)
        except DuplicateKeyError:
            logger.info(f"Ledger entry already recorded: {doc.get('dedup_key')}")
            return None
        doc.pop("_id", None)
        return doc

    async def count(self, tenant_id: str, kind: str, session=None, **match) -> int:
        query = {"tenant_id": tenant_id, "kind": kind, **match}
        return await self.db.wallet_transactions.count_documents(query, session=session)

    async def list(self, tenant_id: str, kind: str, limit: int) -> List[dict]:
        cursor = self.db.wallet_transactions.find(
            {"tenant_id": tenant_id, "kind": kind}, {"_id": 0}
        ).sort("id", -1).limit(limit)
        return await cursor.to_list(length=limit)


class MongoSubscriptionStore(SubscriptionStore):

    def __init__(self, db):
        self.db = db

    async def get(self, subscription_id: int) -> Optional[dict]:
        return await self.db.subscriptions.find_one({"id": subscription_id}, {"_id": 0})

    async def find_latest(self, **match) -> Optional[dict]:
        cursor = self.db.subscriptions.find(match, {"_id": 0}).sort("id", -1).limit(1)
        docs = await cursor.to_list(length=1)
        return docs[0] if docs else None

    async def list_for_tenant(self, tenant_id: str, statuses: Optional[set] = None) -> List[dict]:
        query = {"tenant_id": tenant_id}
        if statuses:
            query["status"] = {"$in": sorted(statuses)}
        cursor = self.db.subscriptions.find(query, {"_id": 0}).sort("id", -1)
        return await cursor.to_list(length=200)

    async def create(self, subscription: dict) -> dict:
        now = _now_iso()
        doc = {
            **subscription,
            "id": await next_sequence(self.db, "subscriptions"),
            "created_at": subscription.get("created_at") or now,
            "updated_at": now
        }
        try:
            await self.db.subscriptions.insert_one(doc)
        except DuplicateKeyError:
            # Same external_reference inserted concurrently
            existing = await self.find_latest(external_reference=doc.get("external_reference"))
            if existing is None:
                raise
            return existing
        doc.pop("_id", None)
        return doc

    async def update(self, subscription_id: int, fields: dict, only_from: Optional[set] = None) -> bool:
        query = {"id": subscription_id}
        if only_from is not None:
            query["status"] = {"$in": sorted(only_from)}
        result = await self.db.subscriptions.update_one(
            query, {"$set": {**fields, "updated_at": _now_iso()}}
        )
        return result.modified_count == 1

    async def append_event(self, event: dict) -> bool:
        doc = dict(event)
        doc.setdefault("created_at", _now_iso())
        if doc.get("gateway_event_id") is None:
            doc.pop("gateway_event_id", None)
        try:
            await self.db.subscription_events.insert_one(doc)
        except DuplicateKeyError:
            return False
        return True


class MongoTenantStore(TenantStore):

    def __init__(self, db):
        self.db = db

    async def get(self, tenant_id: str) -> Optional[dict]:
        return await self.db.tenants.find_one({"id": tenant_id}, {"_id": 0})

    async def update_plan(self, tenant_id: str, fields: dict) -> None:
        await self.db.tenants.update_one(
            {"id": tenant_id},
            {"$set": {**fields, "updated_at": _now_iso()}}
        )

    async def count_active_professionals(self, tenant_id: str) -> int:
        return await self.db.professionals.count_documents(
            {"tenant_id": tenant_id, "active": True}
        )

    async def list_billed(self, limit: int = 1000) -> List[dict]:
        cursor = self.db.tenants.find(
            {"$or": [{"plan_active_until": {"$ne": None}}, {"plan_status": "delinquent"}]},
            {"_id": 0}
        ).limit(limit)
        return await cursor.to_list(length=limit)

    async def mark_reminder(self, tenant_id: str, due_at: str, kind: str) -> bool:
        try:
            await self.db.billing_reminders.insert_one({
                "tenant_id": tenant_id,
                "due_at": due_at,
                "kind": kind,
                "created_at": _now_iso()
            })
        except DuplicateKeyError:
            return False
        return True


class MongoCheckoutStore(CheckoutStore):

    def __init__(self, db):
        self.db = db

    async def create(self, checkout: dict) -> None:
        await self.db.topup_checkouts.insert_one(dict(checkout))

    async def get_by_payment_id(self, payment_id: str) -> Optional[dict]:
        return await self.db.topup_checkouts.find_one({"payment_id": payment_id}, {"_id": 0})

    async def mark(self, payment_id: str, status: str, unless_status: Optional[str] = None) -> bool:
        query = {"payment_id": payment_id, "status": {"$ne": status}}
        if unless_status is not None:
            query["status"] = {"$nin": [status, unless_status]}
        fields = {"status": status, "updated_at": _now_iso()}
        if status == "consumed":
            fields["consumed_at"] = fields["updated_at"]
        result = await self.db.topup_checkouts.update_one(query, {"$set": fields})
        return result.modified_count == 1


class MongoStore(Store):
    """
    Store backed by a motor database.

    Usage:
        from database import get_client, get_db
        store = MongoStore(get_client(), get_db())
    """

    def __init__(self, client, db):
        self.client = client
        self.db = db
        self.wallets = MongoWalletStore(db)
        self.transactions = MongoTransactionLog(db)
        self.subscriptions = MongoSubscriptionStore(db)
        self.tenants = MongoTenantStore(db)
        self.checkouts = MongoCheckoutStore(db)

    @asynccontextmanager
    async def transaction(self):
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    def is_retryable(self, exc: BaseException) -> bool:
        if not isinstance(exc, PyMongoError):
            return False
        if any(exc.has_error_label(label) for label in RETRYABLE_LABELS):
            return True
        return getattr(exc, "code", None) == WRITE_CONFLICT_CODE
