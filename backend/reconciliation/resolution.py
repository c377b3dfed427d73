"""
Resolution Workflow rules

Decides, for a freshly classified match, whether a discrepancy closes
automatically or goes to manual review.

Rules (below the critical threshold only):
- auto_timing:   every entry is a timestamp_diff within tolerance + grace window
- auto_rounding: every entry is an amount_mismatch whose excess over the
                 amount tolerance is smaller than one rounding step

Critical severity always goes to manual review, whatever the type.
Human decisions (ApplyResolution / Escalate) live in ResolutionService.
"""

import logging
from typing import Optional

from reconciliation.models import (
    DiscrepancyType,
    ResolutionMethod,
    ResolutionStatus,
    Severity,
    TransactionMatch,
    transition_resolution,
)
from reconciliation.supplier_registry import SupplierConfig

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class ResolutionWorkflow:
    """Applies automatic resolution rules to classified matches."""

    def __init__(self, config: SupplierConfig):
        self.config = config
        self.rules = config.resolution_rules

    def resolve(self, match: TransactionMatch, now=None) -> TransactionMatch:
        """
        Populate resolution fields for a classified match.

        Matches without a discrepancy stay pending; there is nothing to resolve.
        """
        if not match.has_discrepancy:
            return match

        method = self.auto_method(match)
        if method is None:
            match.resolution_status = transition_resolution(match.resolution_status, ResolutionStatus.MANUAL_REVIEW)
            return match

        match.resolution_status = transition_resolution(match.resolution_status, ResolutionStatus.AUTO_RESOLVED)
        match.resolution_method = method
        match.resolved_by = SYSTEM_ACTOR
        match.resolved_at = now
        match.resolution_notes = _AUTO_NOTES[method]
        return match

    def auto_method(self, match: TransactionMatch) -> Optional[ResolutionMethod]:
        """The automatic method that applies to this match, if any."""
        if match.severity == Severity.CRITICAL:
            return None

        entries = match.discrepancy_details
        if not entries:
            return None
        if any(Severity(e["severity"]) == Severity.CRITICAL for e in entries):
            return None

        if all(self._within_timing_grace(e) for e in entries):
            return ResolutionMethod.AUTO_TIMING
        if all(self._within_rounding_step(e) for e in entries):
            return ResolutionMethod.AUTO_ROUNDING
        return None

    def _within_timing_grace(self, entry) -> bool:
        if entry["type"] != DiscrepancyType.TIMESTAMP_DIFF.value:
            return False
        limit = self.config.timestamp_tolerance_seconds + self.rules.timing_grace_seconds
        return abs(entry["difference"]) <= limit

    def _within_rounding_step(self, entry) -> bool:
        if entry["type"] != DiscrepancyType.AMOUNT_MISMATCH.value:
            return False
        excess = abs(entry["difference"]) - self.config.amount_tolerance_cents
        return excess < self.rules.rounding_step_cents


_AUTO_NOTES = {
    ResolutionMethod.AUTO_TIMING: "Timestamp difference within settlement grace window",
    ResolutionMethod.AUTO_ROUNDING: "Amount difference within rounding step",
}
