"""
Tiered Matching Rules

Pairs bank debit transactions with receipts or company expenses.

Tiers (evaluated per transaction/candidate pair, most specific first):
- High: same calendar day, amount within 1% of the candidate amount
- Medium (receipt mode): within 3 days, amount within 5%
- Discrepancy (statement mode): within 1 day, amount outside the 1% tolerance

Matching is first-match-wins, not best-match. Transactions are processed in
(date, id) order; candidates are scanned in the order supplied. A discrepancy
pairing is only used when no candidate qualifies at a matched tier.

Every transaction and every candidate is claimed at most once per run. The
rules never raise on bad records: anything unmatchable is skipped.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, Set, Union

from reconciliation.mode_registry import (
    MatchConfidence,
    MatchStatus,
    ModeConfig,
    ReconciliationMode,
    mode_registry,
)
from reconciliation.models import (
    BankTransaction,
    CompanyExpense,
    MatchCandidate,
    MatchDecision,
    Receipt,
    to_date,
    to_decimal,
)

CandidateLike = Union[Receipt, CompanyExpense, MatchCandidate]


def relative_difference(transaction_amount: Any, candidate_amount: Any) -> Optional[Decimal]:
    """
    Relative amount difference against the candidate's amount.

    Returns None when either side is missing or the candidate amount is zero.
    """
    txn = to_decimal(transaction_amount)
    cand = to_decimal(candidate_amount)
    if txn is None or cand is None:
        return None
    cand = abs(cand)
    if cand == 0:
        return None
    return abs(abs(txn) - cand) / cand


def day_difference(first: date, second: date) -> int:
    return abs((first - second).days)


def format_money(amount: Decimal) -> str:
    return f"${abs(amount):,.2f}"


def to_match_candidate(record: CandidateLike) -> Optional[MatchCandidate]:
    """Normalise a receipt or expense; drops records that can no longer match."""
    if isinstance(record, MatchCandidate):
        return record
    if isinstance(record, Receipt):
        if record.matched_transaction_id:
            return None
        return MatchCandidate.from_receipt(record)
    if isinstance(record, CompanyExpense):
        if not record.is_active:
            return None
        return MatchCandidate.from_expense(record)
    return None


def order_transactions(transactions: Iterable[BankTransaction]) -> List[BankTransaction]:
    """Stable processing order: by date ascending (undated last), then id."""
    def sort_key(txn: BankTransaction):
        txn_date = to_date(txn.transaction_date)
        return (txn_date is None, txn_date or date.min, str(txn.id))

    return sorted(transactions, key=sort_key)


def _is_eligible(txn: BankTransaction) -> bool:
    if txn.match_status and txn.match_status != MatchStatus.UNMATCHED:
        return False
    amount = to_decimal(txn.amount)
    return (
        to_date(txn.transaction_date) is not None
        and amount is not None
        and amount < 0
    )


def _high(txn: BankTransaction, txn_amount: Decimal, txn_date: date, cand: MatchCandidate) -> MatchDecision:
    return MatchDecision(
        transaction_id=txn.id,
        counterpart_id=cand.id,
        counterpart_type=cand.counterpart_type,
        confidence=MatchConfidence.HIGH,
        explanation=f"Exact match: amount {format_money(txn_amount)} on {txn_date.isoformat()}",
    )


def _medium(
    txn: BankTransaction,
    txn_amount: Decimal,
    txn_date: date,
    cand: MatchCandidate,
    cand_amount: Decimal,
    cand_date: date,
    diff: Decimal,
) -> MatchDecision:
    days = day_difference(txn_date, cand_date)
    return MatchDecision(
        transaction_id=txn.id,
        counterpart_id=cand.id,
        counterpart_type=cand.counterpart_type,
        confidence=MatchConfidence.MEDIUM,
        explanation=(
            f"Close match: bank {format_money(txn_amount)} on {txn_date.isoformat()} "
            f"vs {cand.label.lower()} {format_money(cand_amount)} on {cand_date.isoformat()} "
            f"({days} day{'s' if days != 1 else ''}, {diff * 100:.2f}% apart)"
        ),
    )


def _discrepancy(
    txn: BankTransaction,
    txn_amount: Decimal,
    cand: MatchCandidate,
    cand_amount: Decimal,
) -> MatchDecision:
    suffix = f" ({cand.description})" if cand.description else ""
    return MatchDecision(
        transaction_id=txn.id,
        counterpart_id=cand.id,
        counterpart_type=cand.counterpart_type,
        confidence=MatchConfidence.DISCREPANCY,
        explanation=(
            f"Date match but amount differs: Bank {format_money(txn_amount)} "
            f"vs {cand.label} {format_money(cand_amount)}{suffix}"
        ),
    )


def _match_transaction(
    txn: BankTransaction,
    pool: Sequence[MatchCandidate],
    claimed_candidates: Set[str],
    config: ModeConfig,
) -> Optional[MatchDecision]:
    txn_amount = to_decimal(txn.amount)
    txn_date = to_date(txn.transaction_date)
    fallback: Optional[MatchDecision] = None

    for cand in pool:
        if cand.id in claimed_candidates:
            continue

        cand_date = to_date(cand.date)
        cand_amount = to_decimal(cand.amount)
        diff = relative_difference(txn_amount, cand_amount)
        if cand_date is None or diff is None:
            continue

        days = day_difference(txn_date, cand_date)

        if days == 0 and diff <= config.exact_amount_tolerance:
            return _high(txn, txn_amount, txn_date, cand)

        if (
            config.close_tier_enabled
            and days <= config.close_date_window_days
            and diff <= config.close_amount_tolerance
        ):
            return _medium(txn, txn_amount, txn_date, cand, abs(cand_amount), cand_date, diff)

        if (
            fallback is None
            and config.discrepancy_tier_enabled
            and days <= config.discrepancy_date_window_days
            and diff > config.exact_amount_tolerance
        ):
            fallback = _discrepancy(txn, txn_amount, cand, abs(cand_amount))

    return fallback


def match(
    transactions: Iterable[BankTransaction],
    candidates: Iterable[CandidateLike],
    mode: ReconciliationMode,
    config: Optional[ModeConfig] = None,
) -> List[MatchDecision]:
    """
    Compute match decisions for one run.

    Args:
        transactions: Unmatched bank transactions (credits are ignored)
        candidates: Unmatched receipts or active expenses, in scan order
        mode: Reconciliation mode, selects the enabled tiers
        config: Optional tolerance override (defaults to the registry)

    Returns:
        Decisions in transaction processing order. Inputs are not mutated.
    """
    config = config or mode_registry.get_config(ReconciliationMode(mode))

    pool: List[MatchCandidate] = []
    for record in candidates:
        cand = to_match_candidate(record)
        if cand is not None:
            pool.append(cand)

    claimed_transactions: Set[str] = set()
    claimed_candidates: Set[str] = set()
    decisions: List[MatchDecision] = []

    for txn in order_transactions(transactions):
        if txn.id in claimed_transactions or not _is_eligible(txn):
            continue

        decision = _match_transaction(txn, pool, claimed_candidates, config)
        if decision is None:
            continue

        claimed_transactions.add(decision.transaction_id)
        claimed_candidates.add(decision.counterpart_id)
        decisions.append(decision)

    return decisions
