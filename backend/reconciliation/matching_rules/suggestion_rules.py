"""
Suggestion Rules

Read-only scoring of possible counterparts for a single bank transaction,
shown to a reviewer who wants to pair a transaction by hand. The tiered
matcher never consults these scores.

Scoring (0-100):
- amount: exact (within $0.50) 50, within 5% 30, within 15% 15
- date: same/next day 30, within 3 days 20, within a week 10
- text: vendor named in the bank description 20, description overlap 10
"""

from decimal import Decimal
from difflib import SequenceMatcher
from typing import Dict, Any, Iterable, List, Optional, Tuple
from dataclasses import dataclass

from reconciliation.mode_registry import CounterpartType
from reconciliation.models import BankTransaction, MatchCandidate
from reconciliation.matching_rules.tiered_rules import (
    CandidateLike,
    day_difference,
    to_date,
    to_decimal,
    to_match_candidate,
)


@dataclass
class SuggestedMatch:
    """A scored counterpart for review."""
    counterpart_id: str
    counterpart_type: CounterpartType
    description: Optional[str]
    amount: Optional[Decimal]
    date: Optional[str]
    score: int
    reasons: List[str]
    scoring_breakdown: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counterpart_id": self.counterpart_id,
            "counterpart_type": self.counterpart_type.value,
            "description": self.description,
            "amount": float(self.amount) if self.amount is not None else None,
            "date": self.date,
            "score": self.score,
            "reason": ", ".join(self.reasons),
            "scoring_breakdown": self.scoring_breakdown,
        }


class SuggestionRules:
    """
    Weighted scoring for manual review suggestions.
    """

    EXACT_AMOUNT_DELTA = Decimal("0.50")
    MIN_SCORE = 30
    MAX_SCORE = 100
    SIMILARITY_THRESHOLD = 0.6

    def suggest(
        self,
        transaction: BankTransaction,
        candidates: Iterable[CandidateLike],
        limit: int = 5,
    ) -> List[SuggestedMatch]:
        """
        Score candidates for one transaction.

        Returns at most `limit` suggestions above MIN_SCORE, highest score
        first; equal scores keep input order.
        """
        txn_amount = to_decimal(transaction.amount)
        if txn_amount is None or txn_amount == 0:
            return []

        scored: List[Tuple[int, int, SuggestedMatch]] = []
        for position, record in enumerate(candidates):
            cand = to_match_candidate(record)
            if cand is None:
                continue
            suggestion = self._score(transaction, txn_amount, cand)
            if suggestion is not None:
                scored.append((-suggestion.score, position, suggestion))

        scored.sort(key=lambda item: (item[0], item[1]))
        return [s for _, _, s in scored[:max(limit, 0)]]

    def _score(
        self,
        transaction: BankTransaction,
        txn_amount: Decimal,
        cand: MatchCandidate,
    ) -> Optional[SuggestedMatch]:
        reasons: List[str] = []
        breakdown: Dict[str, int] = {}

        breakdown["amount"] = self._score_amount(abs(txn_amount), to_decimal(cand.amount), reasons)
        breakdown["date"] = self._score_date(transaction, cand, reasons)
        breakdown["text"] = self._score_text(transaction.description, cand.description, reasons)

        score = min(self.MAX_SCORE, sum(breakdown.values()))
        if score < self.MIN_SCORE:
            return None

        cand_date = to_date(cand.date)
        return SuggestedMatch(
            counterpart_id=cand.id,
            counterpart_type=cand.counterpart_type,
            description=cand.description,
            amount=cand.amount,
            date=cand_date.isoformat() if cand_date else None,
            score=score,
            reasons=reasons,
            scoring_breakdown=breakdown,
        )

    def _score_amount(self, txn_amount: Decimal, cand_amount: Optional[Decimal], reasons: List[str]) -> int:
        if cand_amount is None:
            return 0

        delta = abs(txn_amount - abs(cand_amount))
        if delta <= self.EXACT_AMOUNT_DELTA:
            reasons.append("Exact amount match")
            return 50

        percent = delta / txn_amount * 100
        if percent <= 5:
            reasons.append("Amount within 5%")
            return 30
        elif percent <= 15:
            reasons.append("Amount within 15%")
            return 15

        return 0

    def _score_date(self, transaction: BankTransaction, cand: MatchCandidate, reasons: List[str]) -> int:
        txn_date = to_date(transaction.transaction_date)
        cand_date = to_date(cand.date)
        if txn_date is None or cand_date is None:
            return 0

        days = day_difference(txn_date, cand_date)
        if days <= 1:
            reasons.append("Same day/next day")
            return 30
        elif days <= 3:
            reasons.append("Within 3 days")
            return 20
        elif days <= 7:
            reasons.append("Within 1 week")
            return 10

        return 0

    def _score_text(self, txn_description: Optional[str], cand_description: Optional[str], reasons: List[str]) -> int:
        txn_desc = (txn_description or "").lower().strip()
        cand_desc = (cand_description or "").lower().strip()

        if not txn_desc or not cand_desc:
            return 0

        if cand_desc in txn_desc:
            reasons.append("Vendor name match")
            return 20

        similarity = SequenceMatcher(None, txn_desc, cand_desc).ratio()
        if similarity >= self.SIMILARITY_THRESHOLD or txn_desc[:8] in cand_desc or cand_desc[:8] in txn_desc:
            reasons.append("Description similarity")
            return 10

        return 0


# Instantiate rules engine
suggestion_rules = SuggestionRules()
