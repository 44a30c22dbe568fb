"""
Decision Applier

Writes match decisions back through the candidate repository.

- Each decision is applied independently on a bounded worker pool
- A lost race (StaleMatchConflict, or a pairing already stored) has no effect
  and is not counted
- A failed write is collected, never raised, so the rest of the batch goes on
- The deadline only gates starting a write; a write already in flight runs
  to completion and is reported by its real result. Skipped decisions are
  picked up again on the next run
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from reconciliation.errors import ApplyError, StaleMatchConflict
from reconciliation.models import ApplyFailure, MatchDecision
from reconciliation.repository import CandidateRepository
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


@dataclass
class ApplyOutcome:
    """Aggregated result of applying one run's decisions."""
    applied: List[MatchDecision] = field(default_factory=list)
    failures: List[ApplyFailure] = field(default_factory=list)
    stale_conflicts: int = 0
    skipped_transaction_ids: List[str] = field(default_factory=list)
    timed_out: bool = False


class DecisionApplier:
    """
    Applies match decisions with bounded concurrency.
    """

    def __init__(self, repository: CandidateRepository, max_concurrency: int = 5):
        self.repository = repository
        self.max_concurrency = max(1, max_concurrency)

    async def apply(
        self,
        decisions: List[MatchDecision],
        company_id: str,
        deadline: Optional[float] = None
    ) -> ApplyOutcome:
        """
        Apply decisions for one company.

        Args:
            decisions: Decisions from the matching rules (disjoint pairs)
            company_id: Scope every write is restricted to
            deadline: Absolute event-loop time after which no write starts

        Returns:
            ApplyOutcome; results keep the input order of decisions
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        loop = asyncio.get_running_loop()

        async def run_one(decision: MatchDecision) -> str:
            async with semaphore:
                if deadline is not None and loop.time() >= deadline:
                    return "skipped"
                return await self._apply_one(decision, company_id)

        results = await asyncio.gather(*(run_one(d) for d in decisions), return_exceptions=True)

        outcome = ApplyOutcome()
        for decision, result in zip(decisions, results):
            if isinstance(result, BaseException):
                self._record_failure(outcome, decision, result)
            elif result == "applied":
                outcome.applied.append(decision)
            elif result == "stale":
                outcome.stale_conflicts += 1
            elif result == "skipped":
                outcome.skipped_transaction_ids.append(decision.transaction_id)
                outcome.timed_out = True

        if outcome.timed_out:
            logger.warning(
                f"Run deadline passed: {len(outcome.skipped_transaction_ids)} of {len(decisions)} writes not started"
            )
        return outcome

    async def _apply_one(self, decision: MatchDecision, company_id: str) -> str:
        try:
            changed = await self.repository.apply_match(decision, company_id)
        except StaleMatchConflict:
            logger.info(
                f"Stale match ignored: transaction {decision.transaction_id} "
                f"/ {decision.counterpart_type.value} {decision.counterpart_id}"
            )
            return "stale"

        return "applied" if changed else "stale"

    def _record_failure(self, outcome: ApplyOutcome, decision: MatchDecision, error: BaseException):
        if isinstance(error, asyncio.CancelledError):
            raise error

        logger.error(
            f"Failed to apply match for transaction {decision.transaction_id}: {error}",
            extra={
                "transaction_id": decision.transaction_id,
                "counterpart_id": decision.counterpart_id,
                "error_type": type(error).__name__,
            }
        )
        if not isinstance(error, ApplyError):
            capture_exception(error, {"transaction_id": decision.transaction_id})

        outcome.failures.append(ApplyFailure(
            transaction_id=decision.transaction_id,
            counterpart_id=decision.counterpart_id,
            error=str(error),
        ))
