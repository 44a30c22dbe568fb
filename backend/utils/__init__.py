"""
Utils Package

- validation_errors: structured 422 bodies for missing or invalid parameters
"""

from .validation_errors import (
    missing_parameter_detail,
    invalid_parameter_detail,
    raise_missing_parameter,
    raise_invalid_parameter,
    raise_for_validation_error,
    require_parameter,
)

__all__ = [
    'missing_parameter_detail',
    'invalid_parameter_detail',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'raise_for_validation_error',
    'require_parameter',
]
