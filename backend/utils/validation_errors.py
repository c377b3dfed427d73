"""
Structured Validation Error Utilities

Standardized 422 bodies for bad path and query parameters on the
reconciliation admin API, so the admin UI can tell a bad request from
a missing run.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter",
    "parameter": "run_id",
    "message": "run_id must be a valid UUID format"
}
"""

import uuid
from enum import Enum
from typing import Any, Optional, Type, TypeVar

from fastapi import HTTPException, status

E = TypeVar("E", bound=Enum)


def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
    return {
        "error": "missing_parameter",
        "parameter": parameter,
        "message": message or f"{parameter} is required"
    }


def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
    response = {
        "error": "invalid_parameter",
        "parameter": parameter,
        "message": message
    }
    if value is not None:
        response["received_value"] = str(value)[:100]  # Truncate for safety
    return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=invalid_parameter(parameter, message, value)
    )


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """
    Validate that a required UUID parameter is present and valid.

    Raises:
        HTTPException with structured error if validation fails
    """
    if not value:
        raise_missing_parameter(parameter)

    try:
        uuid.UUID(value)
    except ValueError:
        raise_invalid_parameter(parameter, f"{parameter} must be a valid UUID format", value)
    return value


def validate_optional_choice(value: Optional[str], enum_cls: Type[E], parameter: str) -> Optional[E]:
    """Parse an optional enum-valued parameter."""
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise_invalid_parameter(
            parameter,
            f"Invalid {parameter}. Valid values: {[e.value for e in enum_cls]}",
            value
        )
