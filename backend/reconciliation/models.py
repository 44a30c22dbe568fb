"""
Reconciliation domain records.

Plain dataclasses handed between the repository, the matching rules and the
orchestrator. Amounts are Decimal, dates are calendar dates.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict

from reconciliation.mode_registry import (
    CounterpartType,
    MatchConfidence,
    MatchStatus,
    ReconciliationMode,
)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce an amount to a finite Decimal, or None."""
    if value is None:
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def to_date(value: Any) -> Optional[date]:
    """Coerce a date, datetime or ISO string to a calendar date, or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def _absolute(value: Any) -> Optional[Decimal]:
    amount = to_decimal(value)
    return abs(amount) if amount is not None else None


@dataclass
class BankTransaction:
    """One row from a bank feed or parsed statement line."""
    id: str
    company_id: str
    transaction_date: Optional[date]
    amount: Optional[Decimal]
    statement_id: Optional[str] = None
    description: Optional[str] = None
    transaction_type: Optional[str] = None
    check_number: Optional[str] = None
    match_status: MatchStatus = MatchStatus.UNMATCHED
    matched_counterpart_id: Optional[str] = None
    matched_type: Optional[CounterpartType] = None
    match_notes: Optional[str] = None


@dataclass
class Receipt:
    """A captured purchase record."""
    id: str
    company_id: str
    vendor: Optional[str] = None
    amount: Optional[Decimal] = None
    receipt_date: Optional[date] = None
    matched_transaction_id: Optional[str] = None


@dataclass
class CompanyExpense:
    """A recurring or scheduled expense definition."""
    id: str
    company_id: str
    name: str
    amount: Optional[Decimal] = None
    start_date: Optional[date] = None
    vendor: Optional[str] = None
    is_active: bool = True


@dataclass
class BankStatement:
    """An uploaded statement; only used to scope statement runs."""
    id: str
    company_id: str
    account_name: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    status: str = "parsed"


@dataclass(frozen=True)
class MatchCandidate:
    """
    Normalised view over a Receipt or CompanyExpense.

    `amount` is the absolute expected amount, `date` the receipt date or the
    expense's scheduled start date.
    """
    id: str
    counterpart_type: CounterpartType
    amount: Optional[Decimal]
    date: Optional[date]
    label: str
    description: Optional[str] = None

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "MatchCandidate":
        return cls(
            id=receipt.id,
            counterpart_type=CounterpartType.RECEIPT,
            amount=_absolute(receipt.amount),
            date=to_date(receipt.receipt_date),
            label="Receipt",
            description=receipt.vendor,
        )

    @classmethod
    def from_expense(cls, expense: CompanyExpense) -> "MatchCandidate":
        return cls(
            id=expense.id,
            counterpart_type=CounterpartType.EXPENSE,
            amount=_absolute(expense.amount),
            date=to_date(expense.start_date),
            label="Expense",
            description=expense.vendor or expense.name,
        )


@dataclass(frozen=True)
class MatchDecision:
    """A pairing produced by the matching rules. Never persisted as-is."""
    transaction_id: str
    counterpart_id: str
    counterpart_type: CounterpartType
    confidence: MatchConfidence
    explanation: str

    @property
    def match_status(self) -> MatchStatus:
        return self.confidence.match_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "counterpart_id": self.counterpart_id,
            "counterpart_type": self.counterpart_type.value,
            "confidence": self.confidence.value,
            "match_status": self.match_status.value,
            "explanation": self.explanation,
        }


@dataclass
class ApplyFailure:
    """A decision whose write failed."""
    transaction_id: str
    counterpart_id: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationRunResult:
    """Result of a reconciliation run."""
    run_id: str
    company_id: str
    mode: ReconciliationMode
    statement_id: Optional[str] = None
    total_candidates: int = 0
    counterpart_count: int = 0
    matched_count: int = 0
    discrepancy_count: int = 0
    unmatched_count: int = 0
    stale_conflicts: int = 0
    timed_out: bool = False
    dry_run: bool = False
    decisions: List[MatchDecision] = field(default_factory=list)
    partial_failures: List[ApplyFailure] = field(default_factory=list)
    skipped_transaction_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "company_id": self.company_id,
            "statement_id": self.statement_id,
            "mode": self.mode.value,
            "total_candidates": self.total_candidates,
            "counterpart_count": self.counterpart_count,
            "matched_count": self.matched_count,
            "discrepancy_count": self.discrepancy_count,
            "unmatched_count": self.unmatched_count,
            "stale_conflicts": self.stale_conflicts,
            "timed_out": self.timed_out,
            "dry_run": self.dry_run,
            "decisions": [d.to_dict() for d in self.decisions],
            "partial_failures": [f.to_dict() for f in self.partial_failures],
            "skipped_transaction_ids": list(self.skipped_transaction_ids),
        }
