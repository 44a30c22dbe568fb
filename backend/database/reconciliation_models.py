"""
Reconciliation Database Models

Tables read and written by the reconciliation engine:
- bank_statements: uploaded statements (read-only here)
- bank_transactions: bank feed / statement lines, carry the match status
- receipts: captured purchases, carry the matched transaction reference
- company_expenses: recurring expense schedules (read-only here)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Numeric, Index
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BankStatementDB(Base):
    """Uploaded bank statement."""
    __tablename__ = "bank_statements"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    file_name = Column(String(255), nullable=True)
    account_name = Column(String(255), nullable=True)
    period_start = Column(Date, nullable=True)
    period_end = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), default=utc_now)


class BankTransactionDB(Base):
    """
    Bank transaction line.

    match_status moves from 'unmatched' to 'matched' or 'discrepancy'
    exactly once; the engine never moves it back.
    """
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    statement_id = Column(String(36), nullable=True, index=True)

    transaction_date = Column(Date, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    description = Column(Text, nullable=True)
    transaction_type = Column(String(30), nullable=True)
    check_number = Column(String(30), nullable=True)

    # Match state
    match_status = Column(String(20), nullable=False, default="unmatched")
    matched_counterpart_id = Column(String(36), nullable=True)
    matched_type = Column(String(20), nullable=True)
    match_notes = Column(Text, nullable=True)
    reconciled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index("ix_bank_transactions_company_status", "company_id", "match_status"),
    )


class ReceiptDB(Base):
    """Captured receipt (OCR or manual entry)."""
    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    vendor = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    receipt_date = Column(Date, nullable=True)
    matched_transaction_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class CompanyExpenseDB(Base):
    """Recurring or scheduled company expense."""
    __tablename__ = "company_expenses"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    vendor = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    start_date = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
