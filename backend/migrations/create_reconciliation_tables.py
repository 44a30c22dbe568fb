"""
Database Migration: Create Reconciliation Tables

Creates bank_statements, bank_transactions, receipts and company_expenses
from the ORM models, then adds the PostgreSQL status constraints.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from database import Base, get_engine


POSTGRES_STATEMENTS = [
    """
    DO $$ BEGIN
        ALTER TABLE public.bank_transactions
            ADD CONSTRAINT bank_transactions_match_status_check
            CHECK (match_status IN ('unmatched', 'matched', 'discrepancy'));
    EXCEPTION WHEN duplicate_object THEN NULL;
    END $$
    """,
    """
    DO $$ BEGIN
        ALTER TABLE public.bank_transactions
            ADD CONSTRAINT bank_transactions_matched_type_check
            CHECK (matched_type IS NULL OR matched_type IN ('receipt', 'expense'));
    EXCEPTION WHEN duplicate_object THEN NULL;
    END $$
    """,
    # One receipt per transaction
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_receipts_matched_transaction_unique
        ON public.receipts(matched_transaction_id)
        WHERE matched_transaction_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_expenses_company_active ON public.company_expenses(company_id, is_active)",
]


async def create_tables(engine: AsyncEngine = None):
    """Create the reconciliation tables."""
    engine = engine or get_engine()
    print("Creating reconciliation tables...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        print(f"  ✓ Tables: {', '.join(Base.metadata.tables)}")

        if engine.dialect.name != "postgresql":
            print("  - Skipping PostgreSQL constraints")
            return

        for i, sql in enumerate(POSTGRES_STATEMENTS):
            await conn.execute(text(sql))
            print(f"  ✓ Statement {i+1}/{len(POSTGRES_STATEMENTS)} executed")

    print("\n✅ Reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
