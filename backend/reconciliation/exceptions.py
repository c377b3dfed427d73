"""
Reconciliation error taxonomy.

Only schema-level and infrastructure-level failures abort a run.
Per-record anomalies are reported in ParseReport / discrepancy details.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation errors"""
    pass


class ConfigurationMissing(ReconciliationError):
    """Raised when no active SupplierConfig exists; the run is never created."""

    def __init__(self, supplier_code: str, detail: Optional[str] = None):
        self.supplier_code = supplier_code
        self.detail = detail or f"No active supplier configuration for '{supplier_code}'"
        super().__init__(self.detail)


class SchemaMismatch(ReconciliationError):
    """Raised when a file cannot be trusted as a whole (rejection ceiling, unreadable layout)."""

    def __init__(self, message: str, report: Optional[Dict[str, Any]] = None):
        self.report = report or {}
        super().__init__(message)


class MatchingError(ReconciliationError):
    """Unexpected internal failure mid-pipeline."""

    def __init__(self, message: str, run_id: Optional[str] = None):
        self.run_id = run_id
        super().__init__(message)


class ResolutionConflict(ReconciliationError):
    """Concurrent resolution attempt lost the optimistic concurrency check."""

    def __init__(self, match_id: str, expected_status: str, current_state: Dict[str, Any]):
        self.match_id = match_id
        self.expected_status = expected_status
        self.current_state = current_state
        super().__init__(
            f"Match {match_id} is no longer '{expected_status}' "
            f"(now '{current_state.get('resolution_status')}')"
        )


class InvalidTransition(ReconciliationError):
    """Illegal state machine move."""

    def __init__(self, machine: str, current: str, target: str):
        self.machine = machine
        self.current = current
        self.target = target
        super().__init__(f"Illegal {machine} transition: {current} -> {target}")


class AuditChainBroken(ReconciliationError):
    """Audit hash chain verification failed."""

    def __init__(self, seq: int, expected: str, actual: str, reason: str = "hash_mismatch"):
        self.seq = seq
        self.expected = expected
        self.actual = actual
        self.reason = reason
        super().__init__(
            f"Audit chain broken at seq {seq} ({reason}): expected {expected}, found {actual}"
        )
