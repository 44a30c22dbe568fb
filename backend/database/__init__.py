from .connection import (
    get_engine, get_session_factory, create_engine_for_url,
    create_session_factory, init_db, dispose_db, missing_tables, Base
)

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    BankStatementDB, BankTransactionDB, ReceiptDB, CompanyExpenseDB
)

__all__ = [
    'get_engine', 'get_session_factory', 'create_engine_for_url',
    'create_session_factory', 'init_db', 'dispose_db', 'missing_tables', 'Base',
    # Reconciliation models
    'BankStatementDB', 'BankTransactionDB', 'ReceiptDB', 'CompanyExpenseDB',
]
