"""
Reconciliation Engine Module

Pairs bank debit transactions with receipts and company expenses:
- Receipt Matcher: debits against unmatched receipts
- Statement Reconciler: one statement's debits against active expenses
- Confidence tiers (high, medium, discrepancy) with at-most-once pairing
- Conditional writes so concurrent runs never double-match
- Read-only suggestions and statement summaries for review
"""

from reconciliation.mode_registry import (
    ReconciliationMode,
    CounterpartType,
    MatchStatus,
    MatchConfidence,
    ModeConfig,
    ModeRegistry,
    mode_registry
)
from reconciliation.models import (
    BankTransaction,
    Receipt,
    CompanyExpense,
    BankStatement,
    MatchCandidate,
    MatchDecision,
    ApplyFailure,
    ReconciliationRunResult
)
from reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    FetchError,
    ApplyError,
    StaleMatchConflict
)
from reconciliation.matching_rules import match, SuggestionRules, suggestion_rules
from reconciliation.repository import CandidateRepository, SqlCandidateRepository
from reconciliation.services.decision_applier import DecisionApplier, ApplyOutcome
from reconciliation.services.reconciliation_service import ReconciliationService

__all__ = [
    # Mode Registry
    'ReconciliationMode',
    'CounterpartType',
    'MatchStatus',
    'MatchConfidence',
    'ModeConfig',
    'ModeRegistry',
    'mode_registry',
    # Records
    'BankTransaction',
    'Receipt',
    'CompanyExpense',
    'BankStatement',
    'MatchCandidate',
    'MatchDecision',
    'ApplyFailure',
    'ReconciliationRunResult',
    # Errors
    'ReconciliationError',
    'ValidationError',
    'FetchError',
    'ApplyError',
    'StaleMatchConflict',
    # Matching Rules
    'match',
    'SuggestionRules',
    'suggestion_rules',
    # Storage and services
    'CandidateRepository',
    'SqlCandidateRepository',
    'DecisionApplier',
    'ApplyOutcome',
    'ReconciliationService',
]
