#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Finance Engine Indexes

Creates:
1. Unique quote number per organization
2. Unique (quote_id, version_number) on quote_versions (gapless versions)
3. Unique (organization_id, prefix) on document_sequences
4. TTL index on idempotency_keys.expires_at (and an immediate sweep of expired keys)
5. Lookup indexes for invoices and payments

Run: python migrations/001_finance_engine_indexes.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient

import config
from finance_core.idempotency import MongoIdempotencyStore


async def run_migration():
    """Execute the finance engine index migration."""

    print(f"Connecting to: {config.MONGO_URL}")
    print(f"Database: {config.DB_NAME}")

    client = AsyncIOMotorClient(config.MONGO_URL)
    db = client[config.DB_NAME]

    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        existing = await db.list_collection_names()
        for name in ("quotes", "quote_versions", "invoices", "payments",
                     "document_sequences", "idempotency_keys", "audit_logs"):
            if name not in existing:
                # Collections cannot be created inside a transaction
                await db.create_collection(name)
                print(f"✓ Created {name} collection")
            else:
                print(f"• {name} collection already exists")

        # =====================================================
        # Quotes
        # =====================================================
        await db.quotes.create_index(
            [("organization_id", 1), ("quote_number", 1)],
            unique=True,
            partialFilterExpression={"quote_number": {"$type": "string"}},
            name="idx_quote_number_unique"
        )
        await db.quotes.create_index(
            [("organization_id", 1), ("status", 1)],
            name="idx_quote_org_status"
        )
        await db.quote_versions.create_index(
            [("quote_id", 1), ("version_number", 1)],
            unique=True,
            name="idx_quote_version_unique"
        )
        print("✓ Created quote indexes")

        # =====================================================
        # Sequences
        # =====================================================
        await db.document_sequences.create_index(
            [("organization_id", 1), ("prefix", 1)],
            unique=True,
            name="unique_sequence_key"
        )
        print("✓ Created document sequence index")

        # =====================================================
        # Invoices & payments
        # =====================================================
        await db.invoices.create_index(
            [("organization_id", 1), ("invoice_number", 1)],
            name="idx_invoice_org_number"
        )
        await db.payments.create_index(
            [("organization_id", 1), ("invoice_id", 1), ("created_at", 1)],
            name="idx_payment_invoice"
        )
        print("✓ Created invoice and payment indexes")

        # =====================================================
        # Idempotency (records expire on their own)
        # =====================================================
        await db.idempotency_keys.create_index(
            [("expires_at", 1)],
            expireAfterSeconds=0,
            name="idx_idempotency_ttl"
        )
        print("✓ Created idempotency TTL index")
        purged = await MongoIdempotencyStore(db).purge_expired()
        print(f"✓ Purged {purged} expired idempotency keys")

        await db.migrations.update_one(
            {"migration_id": "001_finance_engine_indexes"},
            {"$set": {
                "migration_id": "001_finance_engine_indexes",
                "applied_at": datetime.utcnow(),
                "status": "success"
            }},
            upsert=True
        )
        print("\n✓ Migration record saved")

        return {"status": "success", "indexes": 8}

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
