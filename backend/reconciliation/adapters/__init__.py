"""
Supplier file adapters.

Importing this package registers every built-in adapter in ADAPTERS.
"""

from reconciliation.adapters.registry import (
    ADAPTERS,
    register_adapter,
    get_adapter,
    parse_file,
)
from reconciliation.adapters import mobilemart, flash, easypay  # noqa: F401

__all__ = ["ADAPTERS", "register_adapter", "get_adapter", "parse_file"]
