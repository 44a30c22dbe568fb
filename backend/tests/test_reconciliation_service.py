"""
Unit Tests for the Reconciliation Service

Exercises the orchestrator and decision applier against the in-memory
candidate repository:
- Receipt and statement scenarios, counts and stored state
- Idempotent re-runs and concurrent runs
- Partial failures, stale conflicts, deadlines, dry runs
- Validation and fetch failures

Run with: pytest tests/test_reconciliation_service.py -v
"""

import asyncio
import logging
from decimal import Decimal

import pytest

from conftest import COMPANY_ID, OTHER_COMPANY_ID, InMemoryCandidateRepository, receipt, txn
from reconciliation.errors import FetchError, ValidationError
from reconciliation.mode_registry import (
    CounterpartType,
    MatchConfidence,
    MatchStatus,
    ReconciliationMode,
)
from reconciliation.models import BankStatement, MatchDecision
from reconciliation.services.decision_applier import DecisionApplier
from reconciliation.services.reconciliation_service import ReconciliationService


def many_exact_pairs(count: int) -> InMemoryCandidateRepository:
    return InMemoryCandidateRepository(
        transactions=[txn(f"t{i:02d}", f"-{10 + i}.00", "2024-06-01") for i in range(count)],
        receipts=[receipt(f"r{i:02d}", f"{10 + i}.00", "2024-06-01") for i in range(count)],
    )


class TestReceiptMatching:
    """Receipt Matcher runs."""

    async def test_receipt_scenario(self, receipt_repository):
        service = ReconciliationService(receipt_repository)

        result = await service.auto_match_receipts(COMPANY_ID)

        assert result.mode == ReconciliationMode.RECEIPT
        assert result.total_candidates == 2
        assert result.counterpart_count == 1
        assert result.matched_count == 1
        assert result.discrepancy_count == 0
        assert result.unmatched_count == 1
        assert result.partial_failures == []
        assert [(d.transaction_id, d.counterpart_id, d.confidence) for d in result.decisions] == [
            ("t-45", "r-45", MatchConfidence.HIGH)
        ]

        stored = receipt_repository.transactions["t-45"]
        assert stored.match_status == MatchStatus.MATCHED
        assert stored.matched_counterpart_id == "r-45"
        assert stored.matched_type == CounterpartType.RECEIPT
        assert stored.match_notes == "Exact match: amount $45.00 on 2024-01-05"
        assert receipt_repository.receipts["r-45"].matched_transaction_id == "t-45"
        assert receipt_repository.transactions["t-200"].match_status == MatchStatus.UNMATCHED
        assert receipt_repository.transactions["t-credit"].match_status == MatchStatus.UNMATCHED

    async def test_rerun_produces_no_new_matches(self, receipt_repository):
        service = ReconciliationService(receipt_repository)

        first = await service.auto_match_receipts(COMPANY_ID)
        second = await service.auto_match_receipts(COMPANY_ID)

        assert first.matched_count == 1
        assert second.matched_count == 0
        assert second.decisions == []
        assert second.total_candidates == 1
        assert second.unmatched_count == 1
        assert len(receipt_repository.apply_calls) == 1

    async def test_other_company_records_are_untouched(self, receipt_repository):
        receipt_repository.transactions["t-other"] = txn(
            "t-other", "-45.00", "2024-01-05", company_id=OTHER_COMPANY_ID
        )
        service = ReconciliationService(receipt_repository)

        await service.auto_match_receipts(OTHER_COMPANY_ID)

        assert receipt_repository.transactions["t-other"].match_status == MatchStatus.UNMATCHED
        assert receipt_repository.receipts["r-45"].matched_transaction_id is None

    async def test_run_accepts_mode_value(self, receipt_repository):
        result = await ReconciliationService(receipt_repository).reconcile(COMPANY_ID, mode="receipt")
        assert result.matched_count == 1


class TestStatementReconciliation:
    """Statement Reconciler runs."""

    async def test_rent_scenario(self, statement_repository):
        service = ReconciliationService(statement_repository)

        result = await service.reconcile_statement(COMPANY_ID, "stmt-feb")

        assert result.statement_id == "stmt-feb"
        assert result.total_candidates == 1
        assert result.matched_count == 1
        assert result.unmatched_count == 0
        assert result.decisions[0].confidence == MatchConfidence.HIGH

        stored = statement_repository.transactions["t-rent"]
        assert stored.match_status == MatchStatus.MATCHED
        assert stored.matched_counterpart_id == "e-rent"
        assert stored.matched_type == CounterpartType.EXPENSE
        assert statement_repository.expenses["e-rent"].is_active is True

    async def test_discrepancy_is_recorded(self, statement_repository):
        statement_repository.transactions["t-rent"].amount = Decimal("-550.00")
        service = ReconciliationService(statement_repository)

        result = await service.reconcile_statement(COMPANY_ID, "stmt-feb")

        assert result.matched_count == 0
        assert result.discrepancy_count == 1
        assert result.unmatched_count == 0
        stored = statement_repository.transactions["t-rent"]
        assert stored.match_status == MatchStatus.DISCREPANCY
        assert "$550.00" in stored.match_notes
        assert "$500.00" in stored.match_notes

    async def test_expense_can_match_across_statements(self, statement_repository):
        statement_repository.statements["stmt-mar"] = BankStatement(id="stmt-mar", company_id=COMPANY_ID)
        statement_repository.transactions["t-rent-mar"] = txn(
            "t-rent-mar", "-500.00", "2024-02-01", statement_id="stmt-mar"
        )
        service = ReconciliationService(statement_repository)

        feb = await service.reconcile_statement(COMPANY_ID, "stmt-feb")
        mar = await service.reconcile_statement(COMPANY_ID, "stmt-mar")

        assert feb.matched_count == 1
        assert mar.matched_count == 1
        assert [t.id for t in (await statement_repository.fetch_unmatched_debit_transactions(COMPANY_ID))] == []

    async def test_scope_is_limited_to_statement(self, statement_repository):
        statement_repository.transactions["t-elsewhere"] = txn(
            "t-elsewhere", "-500.00", "2024-02-01", statement_id="stmt-jan"
        )
        service = ReconciliationService(statement_repository)

        result = await service.reconcile_statement(COMPANY_ID, "stmt-feb")

        assert result.total_candidates == 1
        assert statement_repository.transactions["t-elsewhere"].match_status == MatchStatus.UNMATCHED


class TestValidation:
    """Scope errors are raised before any fetch."""

    @pytest.mark.parametrize("company_id", [None, "", "   "])
    async def test_missing_company_id(self, receipt_repository, company_id):
        service = ReconciliationService(receipt_repository)

        with pytest.raises(ValidationError) as exc_info:
            await service.reconcile(company_id)

        assert exc_info.value.parameter == "company_id"
        assert exc_info.value.value is None
        assert receipt_repository.fetch_calls == 0

    async def test_statement_mode_requires_statement_id(self, statement_repository):
        with pytest.raises(ValidationError) as exc_info:
            await ReconciliationService(statement_repository).reconcile(COMPANY_ID, mode=ReconciliationMode.STATEMENT)

        assert exc_info.value.parameter == "statement_id"
        assert statement_repository.fetch_calls == 0

    async def test_unknown_statement(self, statement_repository):
        with pytest.raises(ValidationError) as exc_info:
            await ReconciliationService(statement_repository).reconcile_statement(COMPANY_ID, "stmt-missing")

        assert exc_info.value.parameter == "statement_id"
        assert exc_info.value.value == "stmt-missing"
        assert statement_repository.fetch_calls == 0

    async def test_statement_of_another_company(self, statement_repository):
        with pytest.raises(ValidationError):
            await ReconciliationService(statement_repository).reconcile_statement(OTHER_COMPANY_ID, "stmt-feb")

        assert statement_repository.transactions["t-rent"].match_status == MatchStatus.UNMATCHED

    async def test_unknown_mode(self, receipt_repository):
        with pytest.raises(ValidationError) as exc_info:
            await ReconciliationService(receipt_repository).reconcile(COMPANY_ID, mode="invoices")

        assert exc_info.value.parameter == "mode"
        assert exc_info.value.value == "invoices"


class TestFailures:
    """Fetch aborts, apply failures and stale writes."""

    async def test_fetch_failure_aborts_without_writes(self, receipt_repository):
        receipt_repository.fail_fetch = True

        with pytest.raises(FetchError):
            await ReconciliationService(receipt_repository).auto_match_receipts(COMPANY_ID)

        assert receipt_repository.apply_calls == []
        assert receipt_repository.receipts["r-45"].matched_transaction_id is None

    async def test_fetch_failure_cancels_the_other_fetch(self, receipt_repository):
        receipt_repository.fail_transaction_fetch = True
        receipt_repository.candidate_fetch_delay = 5
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(FetchError):
            await ReconciliationService(receipt_repository).auto_match_receipts(COMPANY_ID)

        assert receipt_repository.cancelled_fetches == 1
        assert loop.time() - started < 1
        assert receipt_repository.apply_calls == []

    async def test_partial_failures_are_collected(self):
        repository = many_exact_pairs(4)
        repository.fail_apply_for = {"t01"}
        repository.crash_apply_for = {"t02"}

        result = await ReconciliationService(repository).auto_match_receipts(COMPANY_ID)

        assert result.matched_count == 2
        assert result.unmatched_count == 2
        assert sorted(f.transaction_id for f in result.partial_failures) == ["t01", "t02"]
        failure = next(f for f in result.partial_failures if f.transaction_id == "t01")
        assert failure.counterpart_id == "r01"
        assert failure.error == "write rejected"
        assert repository.transactions["t00"].match_status == MatchStatus.MATCHED
        assert repository.transactions["t03"].match_status == MatchStatus.MATCHED
        assert repository.transactions["t01"].match_status == MatchStatus.UNMATCHED

    async def test_failed_decisions_are_retried_on_next_run(self):
        repository = many_exact_pairs(2)
        repository.fail_apply_for = {"t01"}
        service = ReconciliationService(repository)

        await service.auto_match_receipts(COMPANY_ID)
        repository.fail_apply_for = set()
        retry = await service.auto_match_receipts(COMPANY_ID)

        assert [(d.transaction_id, d.counterpart_id) for d in retry.decisions] == [("t01", "r01")]

    async def test_stale_conflict_is_not_counted(self):
        repository = many_exact_pairs(1)
        repository.transactions["t00"].match_status = MatchStatus.MATCHED
        repository.transactions["t00"].matched_counterpart_id = "r-someone-else"
        decision = MatchDecision(
            transaction_id="t00",
            counterpart_id="r00",
            counterpart_type=CounterpartType.RECEIPT,
            confidence=MatchConfidence.HIGH,
            explanation="Exact match: amount $10.00 on 2024-06-01",
        )

        outcome = await DecisionApplier(repository).apply([decision], COMPANY_ID)

        assert outcome.applied == []
        assert outcome.failures == []
        assert outcome.stale_conflicts == 1
        assert repository.receipts["r00"].matched_transaction_id is None

    async def test_reapplying_same_decision_is_a_no_op(self, receipt_repository):
        result = await ReconciliationService(receipt_repository).auto_match_receipts(COMPANY_ID)

        outcome = await DecisionApplier(receipt_repository).apply(result.decisions, COMPANY_ID)

        assert outcome.applied == []
        assert outcome.failures == []
        assert outcome.stale_conflicts == 1
        assert receipt_repository.receipts["r-45"].matched_transaction_id == "t-45"

    async def test_concurrent_runs_match_once(self, receipt_repository):
        receipt_repository.apply_delay = 0.01
        service = ReconciliationService(receipt_repository)

        first, second = await asyncio.gather(
            service.auto_match_receipts(COMPANY_ID),
            service.auto_match_receipts(COMPANY_ID),
        )

        assert first.matched_count + second.matched_count == 1
        assert first.stale_conflicts + second.stale_conflicts == 1
        assert receipt_repository.receipts["r-45"].matched_transaction_id == "t-45"


class TestApplyScheduling:
    """Bounded concurrency and deadlines."""

    async def test_concurrency_is_bounded(self):
        repository = many_exact_pairs(10)
        repository.apply_delay = 0.01

        result = await ReconciliationService(repository, apply_concurrency=3).auto_match_receipts(COMPANY_ID)

        assert result.matched_count == 10
        assert 1 <= repository.max_in_flight <= 3

    async def test_expired_deadline_skips_all_writes(self):
        repository = many_exact_pairs(3)
        service = ReconciliationService(repository)
        decisions = (await service.auto_match_receipts(COMPANY_ID, dry_run=True)).decisions
        loop = asyncio.get_running_loop()

        outcome = await DecisionApplier(repository).apply(decisions, COMPANY_ID, deadline=loop.time() - 1)

        assert outcome.timed_out is True
        assert outcome.skipped_transaction_ids == ["t00", "t01", "t02"]
        assert repository.apply_calls == []

    async def test_deadline_keeps_completed_writes(self):
        repository = many_exact_pairs(10)
        repository.apply_delay = 0.05
        service = ReconciliationService(repository, apply_concurrency=1)

        result = await service.auto_match_receipts(COMPANY_ID, deadline_seconds=0.225)

        assert result.timed_out is True
        assert 0 < result.matched_count < 10
        assert result.matched_count + len(result.skipped_transaction_ids) == 10
        assert result.unmatched_count == 10 - result.matched_count
        for decision in result.decisions:
            assert repository.transactions[decision.transaction_id].match_status == MatchStatus.MATCHED
        for transaction_id in result.skipped_transaction_ids:
            assert repository.transactions[transaction_id].match_status == MatchStatus.UNMATCHED

        resumed = await ReconciliationService(repository, apply_concurrency=10).auto_match_receipts(COMPANY_ID)
        assert resumed.matched_count == len(result.skipped_transaction_ids)

    async def test_write_in_flight_at_deadline_is_reported_applied(self):
        repository = many_exact_pairs(2)
        repository.apply_delay = 0.1
        service = ReconciliationService(repository, apply_concurrency=1)
        decisions = (await service.auto_match_receipts(COMPANY_ID, dry_run=True)).decisions
        loop = asyncio.get_running_loop()

        outcome = await DecisionApplier(repository, max_concurrency=1).apply(
            decisions, COMPANY_ID, deadline=loop.time() + 0.03
        )

        assert [d.transaction_id for d in outcome.applied] == ["t00"]
        assert outcome.skipped_transaction_ids == ["t01"]
        assert outcome.timed_out is True
        assert repository.transactions["t00"].match_status == MatchStatus.MATCHED
        assert repository.receipts["r00"].matched_transaction_id == "t00"
        assert [d.transaction_id for d in repository.apply_calls] == ["t00"]


class TestDryRun:
    """Dry runs never write."""

    async def test_dry_run_reports_without_writing(self, receipt_repository):
        result = await ReconciliationService(receipt_repository).auto_match_receipts(COMPANY_ID, dry_run=True)

        assert result.dry_run is True
        assert result.matched_count == 1
        assert len(result.decisions) == 1
        assert receipt_repository.apply_calls == []
        assert receipt_repository.transactions["t-45"].match_status == MatchStatus.UNMATCHED


class TestReviewHelpers:
    """Statement summaries and suggestions."""

    async def test_statement_summary(self, statement_repository):
        service = ReconciliationService(statement_repository)
        await service.reconcile_statement(COMPANY_ID, "stmt-feb")

        summary = await service.get_statement_summary(COMPANY_ID, "stmt-feb")

        assert summary["total_transactions"] == 2
        assert summary["by_status"] == {"unmatched": 1, "matched": 1, "discrepancy": 0}
        assert summary["total_deposits"] == 1200.0
        assert summary["total_withdrawals"] == 500.0
        assert summary["reconciliation_rate"] == 50.0

    async def test_statement_summary_unknown_statement(self, statement_repository):
        with pytest.raises(ValidationError):
            await ReconciliationService(statement_repository).get_statement_summary(COMPANY_ID, "nope")

    async def test_suggestions(self, receipt_repository):
        service = ReconciliationService(receipt_repository)

        data = await service.suggest_matches(COMPANY_ID, "t-45", mode=ReconciliationMode.RECEIPT)

        assert data["transaction_id"] == "t-45"
        assert data["count"] == 1
        assert data["suggestions"][0]["counterpart_id"] == "r-45"
        assert data["suggestions"][0]["score"] == 100
        assert receipt_repository.apply_calls == []

    async def test_suggestions_unknown_transaction(self, receipt_repository):
        with pytest.raises(ValidationError) as exc_info:
            await ReconciliationService(receipt_repository).suggest_matches(OTHER_COMPANY_ID, "t-45")

        assert exc_info.value.parameter == "transaction_id"


class TestAuditLogging:
    """Audit events go through the module logger."""

    async def test_run_events_are_logged(self, receipt_repository, caplog):
        caplog.set_level(logging.INFO, logger="reconciliation.services.reconciliation_service")

        await ReconciliationService(receipt_repository).auto_match_receipts(COMPANY_ID, actor="tests")

        events = [r.event for r in caplog.records if hasattr(r, "event")]
        assert events == [
            "reconciliation.run_started",
            "reconciliation.match_applied",
            "reconciliation.run_completed",
        ]
        completed = next(r for r in caplog.records if getattr(r, "event", None) == "reconciliation.run_completed")
        assert completed.actor == "tests"
        assert completed.details["matched"] == 1

    async def test_abort_is_logged(self, receipt_repository, caplog):
        caplog.set_level(logging.INFO, logger="reconciliation.services.reconciliation_service")
        receipt_repository.fail_fetch = True

        with pytest.raises(FetchError):
            await ReconciliationService(receipt_repository).auto_match_receipts(COMPANY_ID)

        assert any(getattr(r, "event", None) == "reconciliation.run_aborted" for r in caplog.records)
