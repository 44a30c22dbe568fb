"""
Reconciliation API Endpoints

REST API for the reconciliation engine:
- POST /api/reconciliation/receipts/auto-match - Match debits to receipts
- POST /api/reconciliation/statements/reconcile - Match a statement to expenses
- POST /api/reconciliation/run - Run either mode
- GET /api/reconciliation/statements/{statement_id}/summary - Statement counts
- GET /api/reconciliation/transactions/{transaction_id}/suggestions - Review candidates
- GET /api/reconciliation/modes - List modes and tolerances
- GET /api/reconciliation/status - Module status
"""

import logging
from typing import Optional, List
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import get_settings
from database.connection import get_session_factory
from logging_config import set_request_context
from middleware.internal_auth import InternalService, require_internal_service
from reconciliation.errors import FetchError, ValidationError
from reconciliation.mode_registry import ReconciliationMode, mode_registry
from reconciliation.models import ReconciliationRunResult
from reconciliation.repository import SqlCandidateRepository
from reconciliation.services.reconciliation_service import ReconciliationService
from utils.validation_errors import raise_for_validation_error, require_parameter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request/Response Models ====================

class AutoMatchReceiptsRequest(BaseModel):
    """Request to match bank debits against unmatched receipts."""
    company_id: Optional[str] = Field(default=None, description="Owning company ID")
    dry_run: bool = Field(default=False, description="Compute decisions without writing them")


class ReconcileStatementRequest(BaseModel):
    """Request to reconcile one statement against active expenses."""
    company_id: Optional[str] = Field(default=None, description="Owning company ID")
    statement_id: Optional[str] = Field(default=None, description="Statement to reconcile")
    dry_run: bool = Field(default=False, description="Compute decisions without writing them")


class RunReconciliationRequest(BaseModel):
    """Request to run reconciliation in either mode."""
    company_id: Optional[str] = Field(default=None, description="Owning company ID")
    statement_id: Optional[str] = Field(default=None, description="Restrict to one statement")
    mode: Optional[str] = Field(
        default=None,
        description="receipt or statement (defaults to statement when statement_id is set)"
    )
    dry_run: bool = Field(default=False, description="Compute decisions without writing them")


class MatchDecisionResponse(BaseModel):
    transaction_id: str
    counterpart_id: str
    counterpart_type: str
    confidence: str
    match_status: str
    explanation: str


class ApplyFailureResponse(BaseModel):
    transaction_id: str
    counterpart_id: str
    error: str


class ReconciliationRunResponse(BaseModel):
    """Response for a reconciliation run."""
    run_id: str
    company_id: str
    statement_id: Optional[str]
    mode: str
    total_candidates: int
    counterpart_count: int
    matched_count: int
    discrepancy_count: int
    unmatched_count: int
    stale_conflicts: int
    timed_out: bool
    dry_run: bool
    decisions: List[MatchDecisionResponse]
    partial_failures: List[ApplyFailureResponse]
    skipped_transaction_ids: List[str]


class StatementSummaryResponse(BaseModel):
    """Response for a statement summary."""
    company_id: str
    statement_id: str
    total_transactions: int
    by_status: dict
    total_deposits: float
    total_withdrawals: float
    reconciliation_rate: float


# ==================== Dependencies ====================

def get_reconciliation_service() -> ReconciliationService:
    """Build the service on the shared session factory."""
    return ReconciliationService(
        SqlCandidateRepository(get_session_factory()),
        **get_settings().run_defaults()
    )


def _fetch_failed(error: FetchError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={
            "error": "fetch_failed",
            "message": str(error),
            "retryable": True
        }
    )


async def _run(
    service: ReconciliationService,
    caller: InternalService,
    company_id: Optional[str],
    statement_id: Optional[str],
    mode: ReconciliationMode,
    dry_run: bool
) -> ReconciliationRunResponse:
    company_id = require_parameter(company_id, "company_id")
    set_request_context(company_id=company_id)

    try:
        result: ReconciliationRunResult = await service.reconcile(
            company_id,
            statement_id=statement_id,
            mode=mode,
            dry_run=dry_run,
            actor=caller.name
        )
    except ValidationError as e:
        raise_for_validation_error(e)
    except FetchError as e:
        raise _fetch_failed(e)

    return ReconciliationRunResponse(**result.to_dict())


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.
    """
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": get_settings().API_VERSION,
        "features": {
            "receipt_matching": mode_registry.is_mode_enabled(ReconciliationMode.RECEIPT),
            "statement_reconciliation": mode_registry.is_mode_enabled(ReconciliationMode.STATEMENT),
            "suggestions": True,
            "dry_run": True
        },
        "modes_enabled": [m.value for m in mode_registry.get_enabled_modes()],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/modes", summary="List reconciliation modes")
async def list_modes():
    """
    List reconciliation modes with their tolerance windows.
    """
    return {
        "modes": [cfg.to_dict() for cfg in mode_registry.get_all_configs()],
        "enabled_count": len(mode_registry.get_enabled_modes())
    }


@router.post(
    "/receipts/auto-match",
    response_model=ReconciliationRunResponse,
    summary="Match bank debits to receipts"
)
async def auto_match_receipts(
    request: AutoMatchReceiptsRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Pair the company's unmatched bank debits with unmatched receipts.

    Receipts are linked to their transaction; transactions are marked matched.
    """
    return await _run(service, caller, request.company_id, None, ReconciliationMode.RECEIPT, request.dry_run)


@router.post(
    "/statements/reconcile",
    response_model=ReconciliationRunResponse,
    summary="Reconcile a statement against expenses"
)
async def reconcile_statement(
    request: ReconcileStatementRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Pair one statement's unmatched debits with the company's active expenses.

    Amount mismatches within one day are recorded as discrepancies.
    """
    return await _run(
        service,
        caller,
        request.company_id,
        require_parameter(request.statement_id, "statement_id"),
        ReconciliationMode.STATEMENT,
        request.dry_run
    )


@router.post("/run", response_model=ReconciliationRunResponse, summary="Run reconciliation")
async def run_reconciliation(
    request: RunReconciliationRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Run reconciliation in the requested mode.
    """
    mode_value = request.mode or (
        ReconciliationMode.STATEMENT.value if request.statement_id else ReconciliationMode.RECEIPT.value
    )
    try:
        mode = ReconciliationMode(mode_value)
    except ValueError:
        raise_for_validation_error(ValidationError(
            "mode",
            f"Invalid mode. Valid values: {[m.value for m in ReconciliationMode]}",
            mode_value
        ))

    return await _run(service, caller, request.company_id, request.statement_id, mode, request.dry_run)


@router.get(
    "/statements/{statement_id}/summary",
    response_model=StatementSummaryResponse,
    summary="Statement summary"
)
async def get_statement_summary(
    statement_id: str,
    company_id: Optional[str] = Query(default=None, description="Owning company ID"),
    service: ReconciliationService = Depends(get_reconciliation_service),
    _caller: InternalService = Depends(require_internal_service)
):
    """
    Counts by match status plus deposit and withdrawal totals for a statement.
    """
    company_id = require_parameter(company_id, "company_id")

    try:
        summary = await service.get_statement_summary(company_id, statement_id)
    except ValidationError as e:
        raise_for_validation_error(e)
    except FetchError as e:
        raise _fetch_failed(e)

    return StatementSummaryResponse(**summary)


@router.get("/transactions/{transaction_id}/suggestions", summary="Suggested counterparts")
async def get_suggestions(
    transaction_id: str,
    company_id: Optional[str] = Query(default=None, description="Owning company ID"),
    mode: str = Query(default=ReconciliationMode.RECEIPT.value, description="receipt or statement"),
    limit: Optional[int] = Query(default=None, ge=1, le=50),
    service: ReconciliationService = Depends(get_reconciliation_service),
    _caller: InternalService = Depends(require_internal_service)
):
    """
    Scored receipts or expenses a reviewer may pair with a transaction.

    Read-only; nothing is matched.
    """
    company_id = require_parameter(company_id, "company_id")

    try:
        return await service.suggest_matches(
            company_id,
            transaction_id,
            mode=mode,
            limit=limit or get_settings().SUGGESTION_LIMIT
        )
    except ValidationError as e:
        raise_for_validation_error(e)
    except FetchError as e:
        raise _fetch_failed(e)
