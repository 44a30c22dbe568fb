"""
Reconciliation Service

Orchestrates one reconciliation run:
- Validating the scope (company, optional statement)
- Fetching transactions and candidates concurrently
- Running the tiered matching rules
- Applying decisions through the decision applier
- Summarising counts and audit logging

Also serves the read-only review helpers: statement summaries and
suggested counterparts for a single transaction.
"""

import asyncio
import uuid
import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from reconciliation.errors import FetchError, ValidationError
from reconciliation.matching_rules.suggestion_rules import SuggestionRules, suggestion_rules
from reconciliation.matching_rules.tiered_rules import match
from reconciliation.mode_registry import (
    MatchConfidence,
    MatchStatus,
    ReconciliationMode,
    mode_registry,
)
from reconciliation.models import ReconciliationRunResult
from reconciliation.repository import CandidateRepository
from reconciliation.services.decision_applier import DecisionApplier
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    RUN_ABORTED = "reconciliation.run_aborted"
    MATCH_APPLIED = "reconciliation.match_applied"
    APPLY_FAILED = "reconciliation.apply_failed"


def log_reconciliation_event(
    event_type: str,
    company_id: str,
    details: Dict[str, Any],
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "company_id": company_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


class ReconciliationService:
    """
    Service for reconciling bank debits against receipts or expenses.

    The repository is injected so runs can be exercised against in-memory
    fakes as well as the SQL store.
    """

    def __init__(
        self,
        repository: CandidateRepository,
        apply_concurrency: int = 5,
        deadline_seconds: Optional[float] = None,
        rules: SuggestionRules = suggestion_rules
    ):
        self.repository = repository
        self.applier = DecisionApplier(repository, max_concurrency=apply_concurrency)
        self.deadline_seconds = deadline_seconds
        self.suggestion_rules = rules

    async def reconcile(
        self,
        company_id: str,
        statement_id: Optional[str] = None,
        mode: ReconciliationMode = ReconciliationMode.RECEIPT,
        dry_run: bool = False,
        deadline_seconds: Optional[float] = None,
        actor: str = "system"
    ) -> ReconciliationRunResult:
        """
        Run reconciliation for one company.

        Args:
            company_id: Owning company
            statement_id: Restrict transactions to one statement
            mode: RECEIPT or STATEMENT
            dry_run: Compute decisions without writing them
            deadline_seconds: Overrides the service deadline for this run
            actor: Who triggered the run, for the audit trail

        Returns:
            ReconciliationRunResult with counts, applied decisions and
            partial failures

        Raises:
            ValidationError: Scope is invalid, nothing fetched
            FetchError: Candidates could not be loaded, nothing written
        """
        mode = self._validate_mode(mode)
        company_id = self._validate_company_id(company_id)
        statement_id = (statement_id or "").strip() or None

        if mode == ReconciliationMode.STATEMENT and not statement_id:
            raise ValidationError("statement_id", "statement_id is required for statement reconciliation")

        deadline_seconds = self.deadline_seconds if deadline_seconds is None else deadline_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + deadline_seconds if deadline_seconds else None

        run_id = str(uuid.uuid4())
        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            company_id,
            {
                "run_id": run_id,
                "mode": mode.value,
                "statement_id": statement_id,
                "dry_run": dry_run
            },
            actor=actor
        )

        try:
            if statement_id:
                statement = await self.repository.get_statement(company_id, statement_id)
                if statement is None:
                    raise ValidationError(
                        "statement_id",
                        f"Statement {statement_id} not found for company {company_id}",
                        statement_id
                    )

            transactions, candidates = await self._fetch_inputs(company_id, statement_id, mode)
        except FetchError as e:
            logger.error(f"Reconciliation run {run_id} aborted: {e}")
            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_ABORTED,
                company_id,
                {"run_id": run_id, "error": str(e)},
                actor=actor
            )
            capture_exception(e, {"run_id": run_id, "company_id": company_id})
            raise

        decisions = match(transactions, candidates, mode, mode_registry.get_config(mode))
        logger.info(
            f"Run {run_id}: {len(decisions)} decisions from "
            f"{len(transactions)} transactions and {len(candidates)} candidates"
        )

        result = ReconciliationRunResult(
            run_id=run_id,
            company_id=company_id,
            statement_id=statement_id,
            mode=mode,
            total_candidates=len(transactions),
            counterpart_count=len(candidates),
            dry_run=dry_run,
        )

        if dry_run:
            result.decisions = decisions
        else:
            outcome = await self.applier.apply(decisions, company_id, deadline=deadline)
            result.decisions = outcome.applied
            result.partial_failures = outcome.failures
            result.stale_conflicts = outcome.stale_conflicts
            result.skipped_transaction_ids = outcome.skipped_transaction_ids
            result.timed_out = outcome.timed_out

            for decision in outcome.applied:
                log_reconciliation_event(
                    ReconciliationAuditEvent.MATCH_APPLIED,
                    company_id,
                    {"run_id": run_id, **decision.to_dict()},
                    actor=actor
                )
            for failure in outcome.failures:
                log_reconciliation_event(
                    ReconciliationAuditEvent.APPLY_FAILED,
                    company_id,
                    {"run_id": run_id, **failure.to_dict()},
                    actor=actor
                )

        result.matched_count = sum(
            1 for d in result.decisions if d.confidence != MatchConfidence.DISCREPANCY
        )
        result.discrepancy_count = sum(
            1 for d in result.decisions if d.confidence == MatchConfidence.DISCREPANCY
        )
        result.unmatched_count = result.total_candidates - result.matched_count - result.discrepancy_count

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_COMPLETED,
            company_id,
            {
                "run_id": run_id,
                "total": result.total_candidates,
                "matched": result.matched_count,
                "discrepancy": result.discrepancy_count,
                "unmatched": result.unmatched_count,
                "stale_conflicts": result.stale_conflicts,
                "failures": len(result.partial_failures),
                "timed_out": result.timed_out
            },
            actor=actor
        )

        return result

    async def auto_match_receipts(self, company_id: str, **kwargs) -> ReconciliationRunResult:
        """Receipt Matcher: company-wide debits against unmatched receipts."""
        return await self.reconcile(company_id, mode=ReconciliationMode.RECEIPT, **kwargs)

    async def reconcile_statement(
        self,
        company_id: str,
        statement_id: str,
        **kwargs
    ) -> ReconciliationRunResult:
        """Statement Reconciler: one statement's debits against active expenses."""
        return await self.reconcile(
            company_id,
            statement_id=statement_id,
            mode=ReconciliationMode.STATEMENT,
            **kwargs
        )

    async def get_statement_summary(self, company_id: str, statement_id: str) -> Dict[str, Any]:
        """Counts by match status and deposit/withdrawal totals for one statement."""
        company_id = self._validate_company_id(company_id)
        if not (statement_id or "").strip():
            raise ValidationError("statement_id", "statement_id is required")

        statement = await self.repository.get_statement(company_id, statement_id)
        if statement is None:
            raise ValidationError(
                "statement_id",
                f"Statement {statement_id} not found for company {company_id}",
                statement_id
            )

        totals = await self.repository.summarise_transactions(company_id, statement_id)
        by_status = totals["by_status"]
        total = sum(by_status.values())
        reconciled = by_status.get(MatchStatus.MATCHED.value, 0)

        return {
            "company_id": company_id,
            "statement_id": statement_id,
            "total_transactions": total,
            "by_status": by_status,
            "total_deposits": float(totals["total_deposits"]),
            "total_withdrawals": float(totals["total_withdrawals"]),
            "reconciliation_rate": round(reconciled / total * 100, 2) if total > 0 else 0
        }

    async def suggest_matches(
        self,
        company_id: str,
        transaction_id: str,
        mode: ReconciliationMode = ReconciliationMode.RECEIPT,
        limit: int = 5
    ) -> Dict[str, Any]:
        """Scored counterparts for one transaction. Never writes."""
        mode = self._validate_mode(mode)
        company_id = self._validate_company_id(company_id)

        transaction = await self.repository.get_transaction(company_id, transaction_id)
        if transaction is None:
            raise ValidationError(
                "transaction_id",
                f"Transaction {transaction_id} not found for company {company_id}",
                transaction_id
            )

        candidates = await self.repository.fetch_match_candidates(company_id, mode)
        suggestions = self.suggestion_rules.suggest(transaction, candidates, limit=limit)

        return {
            "company_id": company_id,
            "transaction_id": transaction_id,
            "mode": mode.value,
            "match_status": MatchStatus(transaction.match_status).value,
            "suggestions": [s.to_dict() for s in suggestions],
            "count": len(suggestions)
        }

    # ==================== Private Methods ====================

    async def _fetch_inputs(self, company_id: str, statement_id: Optional[str], mode: ReconciliationMode):
        """Fetch transactions and candidates concurrently. A failed fetch cancels the other."""
        tasks = [
            asyncio.ensure_future(self.repository.fetch_unmatched_debit_transactions(company_id, statement_id)),
            asyncio.ensure_future(self.repository.fetch_match_candidates(company_id, mode)),
        ]
        try:
            transactions, candidates = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return transactions, candidates

    @staticmethod
    def _validate_company_id(company_id: Optional[str]) -> str:
        if company_id is None or not str(company_id).strip():
            raise ValidationError("company_id", "company_id is required")
        return str(company_id).strip()

    @staticmethod
    def _validate_mode(mode) -> ReconciliationMode:
        try:
            mode = ReconciliationMode(mode)
        except ValueError:
            raise ValidationError(
                "mode",
                f"Invalid mode. Valid values: {[m.value for m in ReconciliationMode]}",
                str(mode)
            )
        if not mode_registry.is_mode_enabled(mode):
            raise ValidationError("mode", f"Mode {mode.value} is disabled", mode.value)
        return mode
