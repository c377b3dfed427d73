"""
Reconciliation Engine Module

Matches supplier settlement files against the platform's own VAS ledger:
- Per-supplier configuration and file adapters
- Tiered matching (primary key, tolerance, fuzzy)
- Discrepancy classification and auto-resolution
- Hash-chained audit trail for all operations
"""

from reconciliation.exceptions import (
    ReconciliationError,
    ConfigurationMissing,
    SchemaMismatch,
    MatchingError,
    ResolutionConflict,
    InvalidTransition,
    AuditChainBroken,
)
from reconciliation.models import (
    RunStatus,
    MatchStatus,
    ResolutionStatus,
    ResolutionMethod,
    DiscrepancyType,
    Severity,
    SupplierRecord,
    PlatformRecord,
    TransactionMatch,
    ParseReport,
    RunSummary,
)
from reconciliation.supplier_registry import (
    SupplierConfig,
    SupplierConfigRegistry,
    supplier_registry
)

__all__ = [
    # Errors
    'ReconciliationError',
    'ConfigurationMissing',
    'SchemaMismatch',
    'MatchingError',
    'ResolutionConflict',
    'InvalidTransition',
    'AuditChainBroken',
    # Domain types
    'RunStatus',
    'MatchStatus',
    'ResolutionStatus',
    'ResolutionMethod',
    'DiscrepancyType',
    'Severity',
    'SupplierRecord',
    'PlatformRecord',
    'TransactionMatch',
    'ParseReport',
    'RunSummary',
    # Supplier registry
    'SupplierConfig',
    'SupplierConfigRegistry',
    'supplier_registry',
]
