"""
Structured 422 responses for bad reconciliation scope.

Callers branch on `error` to tell a request they must fix (422) from a
storage outage they may retry (503):

    {"error": "missing_parameter", "parameter": "company_id",
     "message": "company_id is required"}

    {"error": "invalid_parameter", "parameter": "statement_id",
     "message": "...", "received_value": "stmt-9"}
"""

from typing import Any, NoReturn, Optional

from fastapi import HTTPException, status

from reconciliation.errors import ValidationError

# Longest received_value echoed back
MAX_ECHO_LENGTH = 100


def missing_parameter_detail(parameter: str, message: Optional[str] = None) -> dict:
    return {
        "error": "missing_parameter",
        "parameter": parameter,
        "message": message or f"{parameter} is required",
    }


def invalid_parameter_detail(parameter: str, message: str, value: Optional[Any] = None) -> dict:
    detail = {"error": "invalid_parameter", "parameter": parameter, "message": message}
    if value is not None:
        detail["received_value"] = str(value)[:MAX_ECHO_LENGTH]
    return detail


def raise_missing_parameter(parameter: str, message: Optional[str] = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=missing_parameter_detail(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=invalid_parameter_detail(parameter, message, value)
    )


def raise_for_validation_error(error: ValidationError) -> NoReturn:
    """Map a ValidationError to a 422; one without a received value counts as missing."""
    if error.value is None:
        raise_missing_parameter(error.parameter, error.message)
    raise_invalid_parameter(error.parameter, error.message, error.value)


def require_parameter(value: Optional[str], parameter: str) -> str:
    """Return the stripped value, or raise a missing_parameter 422 if it is blank."""
    if value is None or not str(value).strip():
        raise_missing_parameter(parameter)
    return str(value).strip()
