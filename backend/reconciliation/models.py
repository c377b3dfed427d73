"""
Reconciliation Domain Types

Closed enumerations for run, match and resolution state, the transition
tables that guard them, and the record types that flow through the
pipeline (SupplierRecord, PlatformRecord, TransactionMatch, ParseReport).

Amounts are integers in the smallest currency unit (cents).
Timestamps are timezone-aware datetimes.
"""

from enum import Enum
from datetime import datetime
from typing import Dict, Any, List, Optional, FrozenSet
from dataclasses import dataclass, field

from reconciliation.exceptions import InvalidTransition


# ==================== ENUMS ====================

class RunStatus(str, Enum):
    """Lifecycle of a ReconciliationRun."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MatchStatus(str, Enum):
    """Outcome of the matching pass for one row."""
    EXACT_MATCH = "exact_match"
    FUZZY_MATCH = "fuzzy_match"
    UNMATCHED_PLATFORM = "unmatched_platform"
    UNMATCHED_SUPPLIER = "unmatched_supplier"

    @property
    def is_paired(self) -> bool:
        return self in (MatchStatus.EXACT_MATCH, MatchStatus.FUZZY_MATCH)


class ResolutionStatus(str, Enum):
    """Resolution workflow state of a match."""
    PENDING = "pending"
    AUTO_RESOLVED = "auto_resolved"
    MANUAL_REVIEW = "manual_review"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class DiscrepancyType(str, Enum):
    """Typed discrepancy entries attached to a match."""
    AMOUNT_MISMATCH = "amount_mismatch"
    COMMISSION_MISMATCH = "commission_mismatch"
    STATUS_MISMATCH = "status_mismatch"
    TIMESTAMP_DIFF = "timestamp_diff"
    PRODUCT_MISMATCH = "product_mismatch"
    MISSING_COUNTERPART = "missing_counterpart"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ResolutionMethod(str, Enum):
    """How a discrepancy was closed."""
    AUTO_TIMING = "auto_timing"
    AUTO_ROUNDING = "auto_rounding"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    SUPPLIER_CORRECTION = "supplier_correction"
    ACCEPTED_VARIANCE = "accepted_variance"
    WRITE_OFF = "write_off"
    ESCALATION = "escalation"

    @property
    def is_automatic(self) -> bool:
        return self in (ResolutionMethod.AUTO_TIMING, ResolutionMethod.AUTO_ROUNDING)


# ==================== TRANSITIONS ====================

ALLOWED_RUN_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.PROCESSING, RunStatus.FAILED}),
    RunStatus.PROCESSING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}

ALLOWED_RESOLUTION_TRANSITIONS: Dict[ResolutionStatus, FrozenSet[ResolutionStatus]] = {
    ResolutionStatus.PENDING: frozenset({ResolutionStatus.AUTO_RESOLVED, ResolutionStatus.MANUAL_REVIEW}),
    ResolutionStatus.MANUAL_REVIEW: frozenset({ResolutionStatus.RESOLVED, ResolutionStatus.ESCALATED}),
    # Supplier-side correction eventually closes an escalated match
    ResolutionStatus.ESCALATED: frozenset({ResolutionStatus.RESOLVED}),
    ResolutionStatus.AUTO_RESOLVED: frozenset(),
    ResolutionStatus.RESOLVED: frozenset(),
}


def transition_run(current: RunStatus, target: RunStatus) -> RunStatus:
    """Return target if the run may move there, else raise InvalidTransition."""
    current = RunStatus(current)
    target = RunStatus(target)
    if target not in ALLOWED_RUN_TRANSITIONS[current]:
        raise InvalidTransition("run", current.value, target.value)
    return target


def transition_resolution(current: ResolutionStatus, target: ResolutionStatus) -> ResolutionStatus:
    """Return target if the match may move there, else raise InvalidTransition."""
    current = ResolutionStatus(current)
    target = ResolutionStatus(target)
    if target not in ALLOWED_RESOLUTION_TRANSITIONS[current]:
        raise InvalidTransition("resolution", current.value, target.value)
    return target


def max_severity(severities: List[Severity]) -> Optional[Severity]:
    if not severities:
        return None
    return max(severities, key=lambda s: s.rank)


# ==================== RECORDS ====================

@dataclass(frozen=True)
class SupplierRecord:
    """
    One normalised line of a supplier settlement file.

    ordinal is the 0-based position among accepted body records and is
    the final tie-breaker of the matching engine.
    """
    ordinal: int
    transaction_id: str
    amount_cents: int
    timestamp: datetime
    reference: Optional[str] = None
    commission_cents: Optional[int] = None
    status: Optional[str] = None
    product_code: Optional[str] = None
    product_name: Optional[str] = None
    line_number: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class PlatformRecord:
    """One transaction from the platform's own ledger."""
    ordinal: int
    transaction_id: str
    amount_cents: int
    timestamp: datetime
    reference: Optional[str] = None
    commission_cents: Optional[int] = None
    status: Optional[str] = None
    product_code: Optional[str] = None
    product_name: Optional[str] = None


@dataclass
class RejectedRecord:
    line_number: int
    field: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"line_number": self.line_number, "field": self.field, "reason": self.reason}


@dataclass
class FileDiscrepancy:
    """A declared header/footer total that disagrees with the parsed body."""
    section: str
    field: str
    declared: Any
    calculated: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "section": self.section,
            "field": self.field,
            "declared": self.declared,
            "calculated": self.calculated,
        }


@dataclass
class ParseReport:
    """Outcome of parsing one file besides the accepted records."""
    adapter: str
    total_lines: int = 0
    accepted: int = 0
    rejected: List[RejectedRecord] = field(default_factory=list)
    file_discrepancies: List[FileDiscrepancy] = field(default_factory=list)
    header: Dict[str, Any] = field(default_factory=dict)
    footer: Dict[str, Any] = field(default_factory=dict)

    @property
    def rejection_ratio(self) -> float:
        considered = self.accepted + len(self.rejected)
        return len(self.rejected) / considered if considered else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adapter": self.adapter,
            "total_lines": self.total_lines,
            "accepted": self.accepted,
            "rejected_count": len(self.rejected),
            "rejection_ratio": round(self.rejection_ratio, 4),
            "rejected": [r.to_dict() for r in self.rejected],
            "file_discrepancies": [d.to_dict() for d in self.file_discrepancies],
            "header": self.header,
            "footer": self.footer,
        }


@dataclass
class TransactionMatch:
    """
    One row of the matching result, scoped to a run.

    Either side may be missing for unmatched rows; both snapshots are kept
    as-is so the row is self-describing.
    """
    match_index: int
    match_status: MatchStatus
    confidence_score: float
    match_method: str
    platform: Optional[PlatformRecord] = None
    supplier: Optional[SupplierRecord] = None
    has_discrepancy: bool = False
    discrepancy_type: Optional[DiscrepancyType] = None
    discrepancy_details: List[Dict[str, Any]] = field(default_factory=list)
    severity: Optional[Severity] = None
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    resolution_method: Optional[ResolutionMethod] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def timestamp_delta_seconds(self) -> Optional[float]:
        if not (self.platform and self.supplier):
            return None
        return abs((self.supplier.timestamp - self.platform.timestamp).total_seconds())

    @property
    def amount_delta_cents(self) -> Optional[int]:
        if not (self.platform and self.supplier):
            return None
        return abs(self.supplier.amount_cents - self.platform.amount_cents)

    def to_dict(self) -> Dict[str, Any]:
        p = self.platform
        s = self.supplier
        return {
            "match_index": self.match_index,
            "match_status": self.match_status.value,
            "confidence_score": self.confidence_score,
            "match_method": self.match_method,
            "platform_transaction_id": p.transaction_id if p else None,
            "platform_reference": p.reference if p else None,
            "platform_amount_cents": p.amount_cents if p else None,
            "platform_commission_cents": p.commission_cents if p else None,
            "platform_status": p.status if p else None,
            "platform_timestamp": p.timestamp.isoformat() if p else None,
            "platform_product_code": p.product_code if p else None,
            "platform_product_name": p.product_name if p else None,
            "supplier_transaction_id": s.transaction_id if s else None,
            "supplier_reference": s.reference if s else None,
            "supplier_amount_cents": s.amount_cents if s else None,
            "supplier_commission_cents": s.commission_cents if s else None,
            "supplier_status": s.status if s else None,
            "supplier_timestamp": s.timestamp.isoformat() if s else None,
            "supplier_product_code": s.product_code if s else None,
            "supplier_product_name": s.product_name if s else None,
            "supplier_line_number": s.line_number if s else None,
            "has_discrepancy": self.has_discrepancy,
            "discrepancy_type": self.discrepancy_type.value if self.discrepancy_type else None,
            "discrepancy_details": self.discrepancy_details,
            "severity": self.severity.value if self.severity else None,
            "resolution_status": self.resolution_status.value,
            "resolution_method": self.resolution_method.value if self.resolution_method else None,
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class RunSummary:
    """
    Aggregated counts and totals of one run.

    Built once from the full match list when the run is finalised; the
    alerting gate and reports read it.
    """
    run_id: str
    supplier_code: str
    status: RunStatus
    file_received_at: datetime
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    total_supplier_records: int = 0
    total_platform_records: int = 0
    matched_exact: int = 0
    matched_fuzzy: int = 0
    unmatched_platform: int = 0
    unmatched_supplier: int = 0
    auto_resolved: int = 0
    manual_review_required: int = 0
    platform_total_amount_cents: int = 0
    supplier_total_amount_cents: int = 0
    platform_total_commission_cents: int = 0
    supplier_total_commission_cents: int = 0

    @property
    def amount_variance_cents(self) -> int:
        return self.supplier_total_amount_cents - self.platform_total_amount_cents

    @property
    def commission_variance_cents(self) -> int:
        return self.supplier_total_commission_cents - self.platform_total_commission_cents

    @property
    def total_transactions(self) -> int:
        return max(self.total_supplier_records, self.total_platform_records)

    @property
    def match_rate(self) -> float:
        """Paired records as a percentage of the larger side."""
        if self.total_transactions == 0:
            return 100.0
        return (self.matched_exact + self.matched_fuzzy) / self.total_transactions * 100

    def passed(self, critical_variance_threshold_cents: int) -> bool:
        return self.match_rate >= 99 and abs(self.amount_variance_cents) <= critical_variance_threshold_cents

    @classmethod
    def from_matches(
        cls,
        run_id: str,
        supplier_code: str,
        file_received_at: datetime,
        matches: List[TransactionMatch],
        status: RunStatus = RunStatus.COMPLETED,
        completed_at: Optional[datetime] = None
    ) -> "RunSummary":
        summary = cls(
            run_id=run_id,
            supplier_code=supplier_code,
            status=status,
            file_received_at=file_received_at,
            completed_at=completed_at,
        )
        for match in matches:
            if match.match_status == MatchStatus.EXACT_MATCH:
                summary.matched_exact += 1
            elif match.match_status == MatchStatus.FUZZY_MATCH:
                summary.matched_fuzzy += 1
            elif match.match_status == MatchStatus.UNMATCHED_PLATFORM:
                summary.unmatched_platform += 1
            else:
                summary.unmatched_supplier += 1

            if match.resolution_status == ResolutionStatus.AUTO_RESOLVED:
                summary.auto_resolved += 1
            elif match.resolution_status == ResolutionStatus.MANUAL_REVIEW:
                summary.manual_review_required += 1

            if match.platform:
                summary.total_platform_records += 1
                summary.platform_total_amount_cents += match.platform.amount_cents
                summary.platform_total_commission_cents += match.platform.commission_cents or 0
            if match.supplier:
                summary.total_supplier_records += 1
                summary.supplier_total_amount_cents += match.supplier.amount_cents
                summary.supplier_total_commission_cents += match.supplier.commission_cents or 0
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "supplier_code": self.supplier_code,
            "status": self.status.value,
            "file_received_at": self.file_received_at.isoformat() if self.file_received_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failure_reason": self.failure_reason,
            "total_supplier_records": self.total_supplier_records,
            "total_platform_records": self.total_platform_records,
            "matched_exact": self.matched_exact,
            "matched_fuzzy": self.matched_fuzzy,
            "unmatched_platform": self.unmatched_platform,
            "unmatched_supplier": self.unmatched_supplier,
            "auto_resolved": self.auto_resolved,
            "manual_review_required": self.manual_review_required,
            "platform_total_amount_cents": self.platform_total_amount_cents,
            "supplier_total_amount_cents": self.supplier_total_amount_cents,
            "amount_variance_cents": self.amount_variance_cents,
            "platform_total_commission_cents": self.platform_total_commission_cents,
            "supplier_total_commission_cents": self.supplier_total_commission_cents,
            "commission_variance_cents": self.commission_variance_cents,
            "match_rate": round(self.match_rate, 2),
        }
