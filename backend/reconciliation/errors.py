"""
Reconciliation error kinds.

- ValidationError: bad or missing scope identifiers, raised before any fetch
- FetchError: candidate repository unreachable or returned malformed rows
- ApplyError: one decision's write failed
- StaleMatchConflict: a conditional write lost a race to another run
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation errors"""
    pass


class ValidationError(ReconciliationError):
    """Raised when a run's scope is invalid"""

    def __init__(self, parameter: str, message: str, value: Optional[str] = None):
        super().__init__(message)
        self.parameter = parameter
        self.message = message
        self.value = value


class FetchError(ReconciliationError):
    """Raised when candidates cannot be loaded"""
    pass


class ApplyError(ReconciliationError):
    """Raised when a single match decision cannot be written"""

    def __init__(self, transaction_id: str, counterpart_id: str, message: str):
        super().__init__(message)
        self.transaction_id = transaction_id
        self.counterpart_id = counterpart_id


class StaleMatchConflict(ReconciliationError):
    """Raised when the target record was already claimed by another pairing"""

    def __init__(self, transaction_id: str, counterpart_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Transaction {transaction_id} or counterpart {counterpart_id} is no longer unmatched"
        )
        self.transaction_id = transaction_id
        self.counterpart_id = counterpart_id
