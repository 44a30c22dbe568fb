"""
Shared fixtures for the reconciliation test suite.

Environment is set before any application import so cached settings and
the API key cache pick up test values.
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key-0123456789")

import asyncio  # noqa: E402
from dataclasses import replace  # noqa: E402
from datetime import date  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Dict, List, Optional, Set  # noqa: E402

import pytest  # noqa: E402

from reconciliation.errors import ApplyError, FetchError, StaleMatchConflict  # noqa: E402
from reconciliation.mode_registry import (  # noqa: E402
    CounterpartType,
    MatchStatus,
    ReconciliationMode,
)
from reconciliation.models import (  # noqa: E402
    BankStatement,
    BankTransaction,
    CompanyExpense,
    MatchDecision,
    Receipt,
)

TEST_API_KEY = os.environ["INTERNAL_API_KEY"]
COMPANY_ID = "company-c"
OTHER_COMPANY_ID = "company-other"


def txn(
    id: str,
    amount,
    on: Optional[str],
    company_id: str = COMPANY_ID,
    statement_id: Optional[str] = None,
    description: Optional[str] = None,
    status: MatchStatus = MatchStatus.UNMATCHED,
) -> BankTransaction:
    return BankTransaction(
        id=id,
        company_id=company_id,
        statement_id=statement_id,
        transaction_date=date.fromisoformat(on) if on else None,
        amount=Decimal(str(amount)) if amount is not None else None,
        description=description,
        match_status=status,
    )


def receipt(
    id: str,
    amount,
    on: Optional[str],
    vendor: Optional[str] = None,
    company_id: str = COMPANY_ID,
    matched_transaction_id: Optional[str] = None,
) -> Receipt:
    return Receipt(
        id=id,
        company_id=company_id,
        vendor=vendor,
        amount=Decimal(str(amount)) if amount is not None else None,
        receipt_date=date.fromisoformat(on) if on else None,
        matched_transaction_id=matched_transaction_id,
    )


def expense(
    id: str,
    name: str,
    amount,
    start: Optional[str],
    company_id: str = COMPANY_ID,
    is_active: bool = True,
) -> CompanyExpense:
    return CompanyExpense(
        id=id,
        company_id=company_id,
        name=name,
        amount=Decimal(str(amount)) if amount is not None else None,
        start_date=date.fromisoformat(start) if start else None,
        is_active=is_active,
    )


class InMemoryCandidateRepository:
    """
    Candidate repository over plain dicts.

    Mirrors the conditional-write contract of the SQL repository. Failure
    hooks let tests force fetch errors, apply errors and slow writes.
    """

    def __init__(
        self,
        transactions: List[BankTransaction] = (),
        receipts: List[Receipt] = (),
        expenses: List[CompanyExpense] = (),
        statements: List[BankStatement] = (),
    ):
        self.transactions: Dict[str, BankTransaction] = {t.id: t for t in transactions}
        self.receipts: Dict[str, Receipt] = {r.id: r for r in receipts}
        self.expenses: Dict[str, CompanyExpense] = {e.id: e for e in expenses}
        self.statements: Dict[str, BankStatement] = {s.id: s for s in statements}

        self.fail_fetch = False
        self.fail_transaction_fetch = False
        self.candidate_fetch_delay = 0.0
        self.cancelled_fetches = 0
        self.fail_apply_for: Set[str] = set()
        self.crash_apply_for: Set[str] = set()
        self.apply_delay = 0.0
        self.fetch_calls = 0
        self.apply_calls: List[MatchDecision] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_unmatched_debit_transactions(self, company_id, statement_id=None):
        self.fetch_calls += 1
        if self.fail_fetch or self.fail_transaction_fetch:
            raise FetchError("Failed to fetch bank transactions")
        return [
            replace(t) for t in self.transactions.values()
            if t.company_id == company_id
            and t.match_status == MatchStatus.UNMATCHED
            and t.amount is not None and t.amount < 0
            and (statement_id is None or t.statement_id == statement_id)
        ]

    async def fetch_match_candidates(self, company_id, mode):
        self.fetch_calls += 1
        if self.candidate_fetch_delay:
            try:
                await asyncio.sleep(self.candidate_fetch_delay)
            except asyncio.CancelledError:
                self.cancelled_fetches += 1
                raise
        if self.fail_fetch:
            raise FetchError("Failed to fetch candidates")
        if ReconciliationMode(mode) == ReconciliationMode.RECEIPT:
            return [
                replace(r) for r in self.receipts.values()
                if r.company_id == company_id and r.matched_transaction_id is None
            ]
        return [
            replace(e) for e in self.expenses.values()
            if e.company_id == company_id and e.is_active
        ]

    async def apply_match(self, decision: MatchDecision, company_id: str) -> bool:
        self.apply_calls.append(decision)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.apply_delay:
                await asyncio.sleep(self.apply_delay)
            if decision.transaction_id in self.crash_apply_for:
                raise RuntimeError("connection reset")
            if decision.transaction_id in self.fail_apply_for:
                raise ApplyError(decision.transaction_id, decision.counterpart_id, "write rejected")
            return self._write(decision, company_id)
        finally:
            self.in_flight -= 1

    def _write(self, decision: MatchDecision, company_id: str) -> bool:
        transaction = self.transactions.get(decision.transaction_id)
        if transaction is None or transaction.company_id != company_id:
            raise ApplyError(decision.transaction_id, decision.counterpart_id, "transaction not found")

        is_receipt = decision.counterpart_type == CounterpartType.RECEIPT
        rec = self.receipts.get(decision.counterpart_id) if is_receipt else None

        txn_free = transaction.match_status == MatchStatus.UNMATCHED
        receipt_free = not is_receipt or (rec is not None and rec.matched_transaction_id is None)
        if txn_free and receipt_free:
            transaction.match_status = decision.match_status
            transaction.matched_counterpart_id = decision.counterpart_id
            transaction.matched_type = decision.counterpart_type
            transaction.match_notes = decision.explanation
            if rec is not None:
                rec.matched_transaction_id = decision.transaction_id
            return True

        same_pairing = (
            transaction.match_status == decision.match_status
            and transaction.matched_counterpart_id == decision.counterpart_id
            and (not is_receipt or (rec is not None and rec.matched_transaction_id == decision.transaction_id))
        )
        if same_pairing:
            return False
        raise StaleMatchConflict(decision.transaction_id, decision.counterpart_id)

    async def get_statement(self, company_id, statement_id):
        statement = self.statements.get(statement_id)
        if statement is None or statement.company_id != company_id:
            return None
        return statement

    async def get_transaction(self, company_id, transaction_id):
        transaction = self.transactions.get(transaction_id)
        if transaction is None or transaction.company_id != company_id:
            return None
        return replace(transaction)

    async def summarise_transactions(self, company_id, statement_id=None):
        rows = [
            t for t in self.transactions.values()
            if t.company_id == company_id and (statement_id is None or t.statement_id == statement_id)
        ]
        by_status = {status.value: 0 for status in MatchStatus}
        for t in rows:
            by_status[MatchStatus(t.match_status).value] += 1
        return {
            "by_status": by_status,
            "total_deposits": sum((t.amount for t in rows if t.amount and t.amount > 0), Decimal("0")),
            "total_withdrawals": sum((-t.amount for t in rows if t.amount and t.amount < 0), Decimal("0")),
        }


@pytest.fixture
def receipt_repository():
    """The receipt scenario: one exact receipt, one unmatched debit, one credit."""
    return InMemoryCandidateRepository(
        transactions=[
            txn("t-45", "-45.00", "2024-01-05", description="OFFICEWORKS 045"),
            txn("t-200", "-200.00", "2024-01-10", description="BUNNINGS"),
            txn("t-credit", "45.00", "2024-01-05", description="REFUND"),
        ],
        receipts=[receipt("r-45", "45.00", "2024-01-05", vendor="Officeworks")],
    )


@pytest.fixture
def statement_repository():
    """The rent scenario: one statement, one debit, one active expense."""
    return InMemoryCandidateRepository(
        transactions=[
            txn("t-rent", "-500.00", "2024-02-01", statement_id="stmt-feb", description="RENT FEB"),
            txn("t-dep", "1200.00", "2024-02-02", statement_id="stmt-feb", description="DEPOSIT"),
        ],
        expenses=[expense("e-rent", "Rent", "500.00", "2024-02-01")],
        statements=[BankStatement(id="stmt-feb", company_id=COMPANY_ID, account_name="Operating")],
    )
