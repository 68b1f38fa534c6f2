#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Local Store Indices

Creates every declared secondary index of the local store:
1. Domain collections (companies, contracts, certifications, payments, distributions)
2. Sync bookkeeping (sync_queue, sync_conflicts, id_mappings)
3. settlement_journal

Safe to re-run: existing indices are left as they are.

Requires the package to be installed (pip install -e .).
Run: python backend/migrations/001_local_store_indexes.py
"""

import asyncio
import os

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from commission_core.local_store import COLLECTION_INDEXES, LocalStore
from commission_core.logging_config import configure_logging

load_dotenv()


async def run_migration():
    """Create the local store indices."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'commission_manager')

    print(f"Connecting to: {mongo_url}")
    print(f"Database: {db_name}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        existing = await db.list_collection_names()
        for collection in COLLECTION_INDEXES:
            if collection not in existing:
                await db.create_collection(collection)
                print(f"✓ Created {collection} collection")
            else:
                print(f"• {collection} collection already exists")

        await LocalStore(db).create_indexes()

        for collection, specs in COLLECTION_INDEXES.items():
            names = sorted((await db[collection].index_information()).keys())
            print(f"✓ {collection}: {len(specs)} declared, present: {names}")

        print("\n✓ Migration completed")
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(run_migration())
