"""
Token Billing Database Initialization Script

Creates the billing collections and the unique indexes the MongoDB store
relies on for idempotency and compare-and-set. Safe to run repeatedly:
existing collections and indexes are skipped, nothing is dropped.

Production runs require BILLING_INIT_CONFIRM=YES.

Usage:
    CLI one-off: python -m token_billing.db_init
    With dry-run: python -m token_billing.db_init --dry-run
    In production: APP_ENV=production BILLING_INIT_CONFIRM=YES python -m token_billing.db_init
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure, PyMongoError

from .mongo_store import INVOICES, LEDGER, RESPONSES, SUBSCRIPTIONS

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"
META = "billing_meta"

REQUIRED_COLLECTIONS = [LEDGER, SUBSCRIPTIONS, INVOICES, RESPONSES, META]

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    # Ledger: one record per sequence slot, one per idempotency key
    (LEDGER, [("account_id", 1), ("sequence_no", 1)], {"unique": True, "name": "idx_account_sequence_unique"}),
    (LEDGER, [("account_id", 1), ("idempotency_key", 1)], {"unique": True, "name": "idx_account_key_unique"}),
    (LEDGER, [("account_id", 1), ("timestamp", -1)], {"name": "idx_account_timestamp"}),

    (SUBSCRIPTIONS, [("account_id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    (SUBSCRIPTIONS, [("status", 1), ("next_billing_date", 1)], {"name": "idx_status_next_billing"}),
    (SUBSCRIPTIONS, [("status", 1), ("renewal_started_at", 1)], {"name": "idx_status_renewal_started"}),

    (INVOICES, [("id", 1)], {"unique": True, "name": "idx_invoice_id_unique"}),
    (INVOICES, [("correlation_id", 1)], {"unique": True, "name": "idx_correlation_id_unique"}),
    (INVOICES, [("account_id", 1), ("date", -1)], {"name": "idx_account_date"}),

    (RESPONSES, [("account_id", 1), ("idempotency_key", 1)], {"unique": True, "name": "idx_response_key_unique"}),
]


def check_environment() -> Tuple[bool, str]:
    """Returns (allowed, message); production needs BILLING_INIT_CONFIRM=YES."""
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("BILLING_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run billing init in production, set: BILLING_INIT_CONFIRM=YES\n"
                f"Current value: BILLING_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def ensure_collection(db, collection_name: str, existing: List[str], dry_run: bool = False) -> str:
    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def ensure_index(db, collection_name: str, index_spec: List[Tuple], options: dict, dry_run: bool = False) -> str:
    collection = db[collection_name]
    index_name = options["name"]

    existing_indexes = await collection.index_information()
    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def stamp_version(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db[META].update_one(
        {"_id": "token_billing_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def initialize(db, dry_run: bool = False) -> List[str]:
    """Create collections, indexes and the version stamp. Returns the report lines."""
    report = ["=== Collections ==="]
    existing = await db.list_collection_names()
    for collection_name in REQUIRED_COLLECTIONS:
        report.append(await ensure_collection(db, collection_name, existing, dry_run))

    report.append("=== Indexes ===")
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        report.append(await ensure_index(db, collection_name, index_spec, options, dry_run))

    report.append("=== Version Stamp ===")
    report.append(await stamp_version(db, dry_run))
    return report


async def run_init(dry_run: bool = False) -> int:
    # Importing config loads backend/.env
    from . import config  # noqa: F401

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error("Init blocked due to environment guard")
        return 1

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        return 1

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")

    client = AsyncIOMotorClient(mongo_url, tz_aware=True)
    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")

        for line in await initialize(client[db_name], dry_run):
            logger.info(line)
    except PyMongoError as e:
        logger.error(f"Billing DB init failed: {e}")
        return 1
    finally:
        client.close()

    logger.info("SUCCESS: Token billing DB init completed")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Token Billing Database Initialization")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
