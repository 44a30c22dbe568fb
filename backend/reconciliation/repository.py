"""
Candidate Repository

Read side: unmatched debit transactions, unmatched receipts, active expenses.
Write side: conditional, idempotent application of one match decision.

The SQL implementation opens one session per operation so the two fetches of
a run can be awaited concurrently.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional, Protocol, Union

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.reconciliation_models import (
    BankStatementDB,
    BankTransactionDB,
    CompanyExpenseDB,
    ReceiptDB,
)
from reconciliation.errors import ApplyError, FetchError, StaleMatchConflict
from reconciliation.mode_registry import (
    CounterpartType,
    MatchStatus,
    ReconciliationMode,
)
from reconciliation.models import (
    BankStatement,
    BankTransaction,
    CompanyExpense,
    MatchDecision,
    Receipt,
)

logger = logging.getLogger(__name__)

Candidates = Union[List[Receipt], List[CompanyExpense]]


class CandidateRepository(Protocol):
    """Storage boundary consumed by the reconciliation service."""

    async def fetch_unmatched_debit_transactions(
        self, company_id: str, statement_id: Optional[str] = None
    ) -> List[BankTransaction]:
        ...

    async def fetch_match_candidates(self, company_id: str, mode: ReconciliationMode) -> Candidates:
        ...

    async def apply_match(self, decision: MatchDecision, company_id: str) -> bool:
        ...

    async def get_statement(self, company_id: str, statement_id: str) -> Optional[BankStatement]:
        ...

    async def get_transaction(self, company_id: str, transaction_id: str) -> Optional[BankTransaction]:
        ...

    async def summarise_transactions(self, company_id: str, statement_id: Optional[str] = None) -> Dict[str, Any]:
        ...


class _NotApplied(Exception):
    """A conditional update touched no row."""


class SqlCandidateRepository:
    """
    SQLAlchemy implementation of the candidate repository.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ==================== Fetch ====================

    async def fetch_unmatched_debit_transactions(
        self,
        company_id: str,
        statement_id: Optional[str] = None
    ) -> List[BankTransaction]:
        """Negative-amount, unmatched transactions, optionally for one statement."""
        conditions = [
            BankTransactionDB.company_id == company_id,
            BankTransactionDB.match_status == MatchStatus.UNMATCHED.value,
            BankTransactionDB.amount < 0,
        ]
        if statement_id:
            conditions.append(BankTransactionDB.statement_id == statement_id)

        query = (
            select(BankTransactionDB)
            .where(*conditions)
            .order_by(BankTransactionDB.transaction_date, BankTransactionDB.id)
        )

        rows = await self._fetch_all(query, "bank transactions")
        return [self._convert(self._to_transaction, row) for row in rows]

    async def fetch_match_candidates(
        self,
        company_id: str,
        mode: ReconciliationMode
    ) -> Candidates:
        """Unmatched receipts (receipt mode) or active expenses (statement mode)."""
        mode = ReconciliationMode(mode)

        if mode == ReconciliationMode.RECEIPT:
            query = (
                select(ReceiptDB)
                .where(
                    ReceiptDB.company_id == company_id,
                    ReceiptDB.matched_transaction_id.is_(None),
                )
                .order_by(ReceiptDB.receipt_date, ReceiptDB.id)
            )
            rows = await self._fetch_all(query, "receipts")
            return [self._convert(self._to_receipt, row) for row in rows]

        query = (
            select(CompanyExpenseDB)
            .where(
                CompanyExpenseDB.company_id == company_id,
                CompanyExpenseDB.is_active.is_(True),
            )
            .order_by(CompanyExpenseDB.start_date, CompanyExpenseDB.id)
        )
        rows = await self._fetch_all(query, "company expenses")
        return [self._convert(self._to_expense, row) for row in rows]

    async def get_statement(self, company_id: str, statement_id: str) -> Optional[BankStatement]:
        query = select(BankStatementDB).where(BankStatementDB.id == statement_id)
        rows = await self._fetch_all(query, "bank statement")
        if not rows:
            return None
        row = rows[0]
        if row.company_id != company_id:
            return None
        return BankStatement(
            id=row.id,
            company_id=row.company_id,
            account_name=row.account_name,
            period_start=row.period_start,
            period_end=row.period_end,
            status=row.status,
        )

    async def get_transaction(self, company_id: str, transaction_id: str) -> Optional[BankTransaction]:
        query = select(BankTransactionDB).where(
            BankTransactionDB.id == transaction_id,
            BankTransactionDB.company_id == company_id,
        )
        rows = await self._fetch_all(query, "bank transaction")
        return self._convert(self._to_transaction, rows[0]) if rows else None

    async def summarise_transactions(
        self,
        company_id: str,
        statement_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Counts by match status plus deposit and withdrawal totals."""
        conditions = [BankTransactionDB.company_id == company_id]
        if statement_id:
            conditions.append(BankTransactionDB.statement_id == statement_id)

        status_query = (
            select(BankTransactionDB.match_status, func.count(BankTransactionDB.id))
            .where(*conditions)
            .group_by(BankTransactionDB.match_status)
        )
        totals_query = select(
            func.coalesce(func.sum(case((BankTransactionDB.amount > 0, BankTransactionDB.amount), else_=0)), 0),
            func.coalesce(func.sum(case((BankTransactionDB.amount < 0, -BankTransactionDB.amount), else_=0)), 0),
        ).where(*conditions)

        try:
            async with self.session_factory() as session:
                status_rows = (await session.execute(status_query)).all()
                totals_row = (await session.execute(totals_query)).one()
        except SQLAlchemyError as e:
            raise FetchError(f"Failed to summarise transactions: {e}") from e

        by_status = {status.value: 0 for status in MatchStatus}
        for status, count in status_rows:
            by_status[status] = count

        return {
            "by_status": by_status,
            "total_deposits": Decimal(str(totals_row[0])),
            "total_withdrawals": Decimal(str(totals_row[1])),
        }

    # ==================== Apply ====================

    async def apply_match(self, decision: MatchDecision, company_id: str) -> bool:
        """
        Conditionally write one decision.

        Returns True when the records changed, False when the same pairing is
        already stored. Raises StaleMatchConflict when either record was
        claimed by another pairing, ApplyError on storage failure.
        """
        try:
            async with self.session_factory() as session:
                try:
                    async with session.begin():
                        await self._write_decision(session, decision, company_id)
                    return True
                except _NotApplied:
                    pass

                if await self._already_applied(session, decision, company_id):
                    return False
        except SQLAlchemyError as e:
            raise ApplyError(
                decision.transaction_id,
                decision.counterpart_id,
                f"Failed to apply match: {e}"
            ) from e

        raise StaleMatchConflict(decision.transaction_id, decision.counterpart_id)

    async def _write_decision(self, session, decision: MatchDecision, company_id: str):
        txn_result = await session.execute(
            update(BankTransactionDB)
            .where(
                BankTransactionDB.id == decision.transaction_id,
                BankTransactionDB.company_id == company_id,
                BankTransactionDB.match_status == MatchStatus.UNMATCHED.value,
            )
            .values(
                match_status=decision.match_status.value,
                matched_counterpart_id=decision.counterpart_id,
                matched_type=decision.counterpart_type.value,
                match_notes=decision.explanation,
                reconciled_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if txn_result.rowcount == 0:
            raise _NotApplied()

        if decision.counterpart_type != CounterpartType.RECEIPT:
            return

        receipt_result = await session.execute(
            update(ReceiptDB)
            .where(
                ReceiptDB.id == decision.counterpart_id,
                ReceiptDB.company_id == company_id,
                ReceiptDB.matched_transaction_id.is_(None),
            )
            .values(matched_transaction_id=decision.transaction_id)
            .execution_options(synchronize_session=False)
        )
        if receipt_result.rowcount == 0:
            raise _NotApplied()

    async def _already_applied(self, session, decision: MatchDecision, company_id: str) -> bool:
        txn = (await session.execute(
            select(BankTransactionDB).where(
                BankTransactionDB.id == decision.transaction_id,
                BankTransactionDB.company_id == company_id,
            )
        )).scalar_one_or_none()

        if txn is None:
            raise ApplyError(
                decision.transaction_id,
                decision.counterpart_id,
                f"Transaction {decision.transaction_id} not found for company {company_id}"
            )

        if (
            txn.match_status != decision.match_status.value
            or txn.matched_counterpart_id != decision.counterpart_id
        ):
            return False

        if decision.counterpart_type != CounterpartType.RECEIPT:
            return True

        receipt = (await session.execute(
            select(ReceiptDB).where(
                ReceiptDB.id == decision.counterpart_id,
                ReceiptDB.company_id == company_id,
            )
        )).scalar_one_or_none()
        return receipt is not None and receipt.matched_transaction_id == decision.transaction_id

    # ==================== Helpers ====================

    async def _fetch_all(self, query, what: str) -> list:
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch {what}: {e}")
            raise FetchError(f"Failed to fetch {what}") from e

    @staticmethod
    def _convert(converter, row):
        try:
            return converter(row)
        except (ValueError, TypeError, ArithmeticError) as e:
            raise FetchError(f"Malformed {row.__tablename__} row {getattr(row, 'id', '?')}: {e}") from e

    @staticmethod
    def _to_transaction(row: BankTransactionDB) -> BankTransaction:
        return BankTransaction(
            id=str(row.id),
            company_id=str(row.company_id),
            statement_id=str(row.statement_id) if row.statement_id else None,
            transaction_date=row.transaction_date,
            amount=Decimal(str(row.amount)) if row.amount is not None else None,
            description=row.description,
            transaction_type=row.transaction_type,
            check_number=row.check_number,
            match_status=MatchStatus(row.match_status),
            matched_counterpart_id=row.matched_counterpart_id,
            matched_type=CounterpartType(row.matched_type) if row.matched_type else None,
            match_notes=row.match_notes,
        )

    @staticmethod
    def _to_receipt(row: ReceiptDB) -> Receipt:
        return Receipt(
            id=str(row.id),
            company_id=str(row.company_id),
            vendor=row.vendor,
            amount=Decimal(str(row.amount)) if row.amount is not None else None,
            receipt_date=row.receipt_date,
            matched_transaction_id=row.matched_transaction_id,
        )

    @staticmethod
    def _to_expense(row: CompanyExpenseDB) -> CompanyExpense:
        return CompanyExpense(
            id=str(row.id),
            company_id=str(row.company_id),
            name=row.name,
            vendor=row.vendor,
            amount=Decimal(str(row.amount)) if row.amount is not None else None,
            start_date=row.start_date,
            is_active=bool(row.is_active),
        )
