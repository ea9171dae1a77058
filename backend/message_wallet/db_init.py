"""
Message wallet schema setup.

Creates the collections, unique indexes and id counters the wallet, ledger,
subscription and checkout repositories rely on. Safe to re-run: existing
objects are reported and left alone, nothing is ever dropped. Wallet rows
themselves are created lazily on first use.

The unique indexes on wallet_transactions.dedup_key,
topup_checkouts.payment_id and subscription_events are what make ledger
writes and webhook replays idempotent; billing_reminders is unique per
(tenant, due date, kind) so each reminder goes out once.

Usage:
    python -m message_wallet.db_init [--dry-run]
    APP_ENV=production MESSAGE_WALLET_INIT_CONFIRM=YES message-wallet-db-init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

logger = logging.getLogger(__name__)

# Version tracking
INIT_VERSION = "v1.0.0"

# Monotonic id sequences stored in the counters collection
REQUIRED_COUNTERS = ["wallet_transactions", "subscriptions"]

# Must exist before any transaction writes to them
REQUIRED_COLLECTIONS = [
    "message_wallets",
    "wallet_transactions",
    "subscriptions",
    "subscription_events",
    "topup_checkouts",
    "tenants",
    "professionals",
    "billing_reminders",
    "counters",
    "message_wallet_meta"  # For version tracking
]

# Index definitions: (collection, keys, options)
REQUIRED_INDEXES = [
    # message_wallets indexes
    ("message_wallets", [("tenant_id", 1)], {"unique": True, "name": "idx_tenant_id_unique"}),

    # wallet_transactions indexes
    ("wallet_transactions", [("id", 1)], {"unique": True, "name": "idx_id_unique"}),
    ("wallet_transactions", [("dedup_key", 1)], {
        "unique": True,
        "partialFilterExpression": {"dedup_key": {"$type": "string"}},
        "name": "idx_dedup_key_unique"
    }),
    ("wallet_transactions", [("tenant_id", 1), ("kind", 1), ("id", -1)], {"name": "idx_tenant_kind_id"}),
    ("wallet_transactions", [("tenant_id", 1), ("kind", 1), ("appointment_id", 1)], {
        "sparse": True,
        "name": "idx_tenant_kind_appointment"
    }),

    # subscriptions indexes
    ("subscriptions", [("id", 1)], {"unique": True, "name": "idx_id_unique"}),
    ("subscriptions", [("tenant_id", 1), ("status", 1), ("id", -1)], {"name": "idx_tenant_status_id"}),
    ("subscriptions", [("gateway_preference_id", 1), ("id", -1)], {"sparse": True, "name": "idx_preference_id"}),
    ("subscriptions", [("external_reference", 1)], {
        "unique": True,
        "partialFilterExpression": {"external_reference": {"$type": "string"}},
        "name": "idx_external_reference_unique"
    }),

    # subscription_events indexes
    ("subscription_events", [("subscription_id", 1), ("event_type", 1), ("gateway_event_id", 1)], {
        "unique": True,
        "partialFilterExpression": {"gateway_event_id": {"$type": "string"}},
        "name": "idx_subscription_event_unique"
    }),

    # topup_checkouts indexes
    ("topup_checkouts", [("payment_id", 1)], {"unique": True, "name": "idx_payment_id_unique"}),
    ("topup_checkouts", [("tenant_id", 1), ("created_at", -1)], {"name": "idx_tenant_created"}),

    # tenants / professionals indexes
    ("tenants", [("id", 1)], {"unique": True, "name": "idx_id_unique"}),
    ("professionals", [("tenant_id", 1), ("active", 1)], {"name": "idx_tenant_active"}),

    # billing_reminders indexes
    ("billing_reminders", [("tenant_id", 1), ("due_at", 1), ("kind", 1)], {
        "unique": True,
        "name": "idx_tenant_due_kind_unique"
    }),
]


# Index build errors meaning an equivalent index is already there
INDEX_EXISTS_CODES = {68, 85, 86}

CREATED = "created"
EXISTS = "exists"
PLANNED = "planned"
UPDATED = "updated"


def check_environment(environ=None) -> Tuple[bool, str]:
    """
    Production runs need MESSAGE_WALLET_INIT_CONFIRM=YES.

    Returns:
        (allowed, message)
    """
    environ = os.environ if environ is None else environ
    app_env = environ.get("APP_ENV", "development")

    if app_env.lower() == "production" and environ.get("MESSAGE_WALLET_INIT_CONFIRM", "") != "YES":
        return False, (
            f"APP_ENV={app_env}: refusing to touch the database. "
            "Set MESSAGE_WALLET_INIT_CONFIRM=YES to run the init in production."
        )
    return True, f"APP_ENV={app_env}"


async def ensure_collection(db, name: str, existing: List[str], dry_run: bool = False) -> str:
    if name in existing:
        return EXISTS
    if dry_run:
        return PLANNED
    try:
        await db.create_collection(name)
    except CollectionInvalid:
        # created concurrently
        return EXISTS
    return CREATED


async def ensure_index(db, collection_name: str, keys: List[Tuple], options: dict,
                       dry_run: bool = False) -> str:
    collection = db[collection_name]
    if options["name"] in await collection.index_information():
        return EXISTS
    if dry_run:
        return PLANNED
    try:
        await collection.create_index(keys, **options)
    except OperationFailure as e:
        if e.code in INDEX_EXISTS_CODES:
            logger.warning(f"Index {collection_name}.{options['name']} exists under another definition: {e}")
            return EXISTS
        raise
    return CREATED


async def ensure_counter(db, name: str, dry_run: bool = False) -> str:
    if dry_run:
        return PLANNED
    result = await db.counters.update_one({"_id": name}, {"$setOnInsert": {"seq": 0}}, upsert=True)
    return CREATED if result.upserted_id is not None else EXISTS


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return PLANNED
    await db.message_wallet_meta.update_one(
        {"_id": "message_wallet_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    return UPDATED


def _report_line(status: str, kind: str, name: str) -> str:
    return f"  {status.upper():<8} {kind:<10} {name}"


async def apply_schema(db, dry_run: bool = False) -> List[str]:
    """Create every collection, index and counter. Returns the report lines."""
    report = []
    existing = await db.list_collection_names()
    for name in REQUIRED_COLLECTIONS:
        report.append(_report_line(await ensure_collection(db, name, existing, dry_run), "collection", name))

    for collection_name, keys, options in REQUIRED_INDEXES:
        status = await ensure_index(db, collection_name, keys, options, dry_run)
        report.append(_report_line(status, "index", f"{collection_name}.{options['name']}"))

    for name in REQUIRED_COUNTERS:
        report.append(_report_line(await ensure_counter(db, name, dry_run), "counter", name))

    report.append(_report_line(await update_version_stamp(db, dry_run), "version", INIT_VERSION))
    return report


async def run_init(dry_run: bool = False) -> int:
    """Apply the schema to DB_NAME. Returns the process exit code."""
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    if not allowed:
        logger.error(env_message)
        return 1
    logger.info(env_message)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("MONGO_URL and DB_NAME must be set")
        return 1

    logger.info(f"Applying message wallet schema {INIT_VERSION} to {db_name} (dry_run={dry_run})")

    client = AsyncIOMotorClient(mongo_url)
    try:
        try:
            await client.admin.command('ping')
        except Exception as e:
            logger.error(f"Cannot reach MongoDB: {e}")
            return 1

        report = await apply_schema(client[db_name], dry_run)
        for line in report:
            logger.info(line)
    finally:
        client.close()

    created = sum(1 for line in report if CREATED.upper() in line)
    logger.info(f"Message wallet schema ready ({created} objects created)")
    return 0


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        prog="message-wallet-db-init",
        description="Create the message wallet collections, indexes and counters."
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='report what is missing without writing'
    )

    args = parser.parse_args()
    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
