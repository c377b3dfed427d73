"""
Utils Package

- validation_errors: structured 422 bodies for the admin API
"""

from .validation_errors import (
    raise_invalid_parameter,
    raise_missing_parameter,
    validate_optional_choice,
    validate_required_uuid,
)

__all__ = [
    'raise_invalid_parameter',
    'raise_missing_parameter',
    'validate_optional_choice',
    'validate_required_uuid',
]
