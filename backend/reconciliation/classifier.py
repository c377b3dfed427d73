"""
Discrepancy Classifier

Compares matched pairs field by field and annotates each TransactionMatch
with typed discrepancy entries and a severity.

Entry shape:
    {type, field, platform, supplier, difference, severity}

Severity comes from the monetary size of the variance relative to the
supplier's critical_variance_threshold_cents:
    variance >= threshold       -> critical
    variance >= threshold / 2   -> high
    variance >= threshold / 10  -> medium
    otherwise                   -> low
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from reconciliation.models import (
    DiscrepancyType,
    MatchStatus,
    Severity,
    TransactionMatch,
    max_severity,
)
from reconciliation.supplier_registry import SupplierConfig

logger = logging.getLogger(__name__)


def severity_for_variance(variance_cents: int, threshold_cents: int) -> Severity:
    """Grade a monetary variance against the critical threshold."""
    variance = abs(variance_cents)
    if threshold_cents <= 0:
        return Severity.CRITICAL if variance > 0 else Severity.LOW
    if variance >= threshold_cents:
        return Severity.CRITICAL
    if variance * 2 >= threshold_cents:
        return Severity.HIGH
    if variance * 10 >= threshold_cents:
        return Severity.MEDIUM
    return Severity.LOW


class DiscrepancyClassifier:
    """
    Field-level comparison of matched pairs.
    """

    def __init__(self, config: SupplierConfig):
        self.config = config
        self.threshold = config.critical_variance_threshold_cents

    def classify(self, match: TransactionMatch) -> TransactionMatch:
        """Populate has_discrepancy, discrepancy_type, discrepancy_details and severity."""
        if match.match_status.is_paired:
            entries = self._compare_pair(match)
        else:
            entries = [self._missing_counterpart(match)]

        match.discrepancy_details = entries
        match.has_discrepancy = bool(entries)
        if entries:
            match.discrepancy_type = DiscrepancyType(entries[0]["type"])
            match.severity = max_severity([Severity(e["severity"]) for e in entries])
        else:
            match.discrepancy_type = None
            match.severity = None
        return match

    async def classify_many(self, matches: List[TransactionMatch]) -> List[TransactionMatch]:
        """
        Classify a batch. Paired records are independent of each other,
        so each one is handed to the default executor.
        """
        loop = asyncio.get_running_loop()
        await asyncio.gather(*(
            loop.run_in_executor(None, self.classify, match) for match in matches
        ))
        return matches

    # ==================== COMPARISONS ====================

    def _compare_pair(self, match: TransactionMatch) -> List[Dict[str, Any]]:
        platform = match.platform
        supplier = match.supplier
        entries: List[Dict[str, Any]] = []

        amount_diff = supplier.amount_cents - platform.amount_cents
        if abs(amount_diff) > self.config.amount_tolerance_cents:
            entries.append(self._entry(
                DiscrepancyType.AMOUNT_MISMATCH, "amount_cents",
                platform.amount_cents, supplier.amount_cents, amount_diff,
                severity_for_variance(amount_diff, self.threshold)
            ))

        if supplier.commission_cents is not None and platform.commission_cents is not None:
            commission_diff = supplier.commission_cents - platform.commission_cents
            if abs(commission_diff) > self.config.amount_tolerance_cents:
                entries.append(self._entry(
                    DiscrepancyType.COMMISSION_MISMATCH, "commission_cents",
                    platform.commission_cents, supplier.commission_cents, commission_diff,
                    severity_for_variance(commission_diff, self.threshold)
                ))

        if _norm(supplier.status) and _norm(platform.status) and _norm(supplier.status) != _norm(platform.status):
            entries.append(self._entry(
                DiscrepancyType.STATUS_MISMATCH, "status",
                platform.status, supplier.status, None,
                # A status disagreement puts the whole amount in question
                severity_for_variance(max(platform.amount_cents, supplier.amount_cents), self.threshold)
            ))

        ts_diff = (supplier.timestamp - platform.timestamp).total_seconds()
        if abs(ts_diff) > self.config.timestamp_tolerance_seconds:
            entries.append(self._entry(
                DiscrepancyType.TIMESTAMP_DIFF, "timestamp",
                platform.timestamp.isoformat(), supplier.timestamp.isoformat(), ts_diff,
                Severity.LOW
            ))

        if _norm(supplier.product_code) and _norm(platform.product_code) \
                and _norm(supplier.product_code) != _norm(platform.product_code):
            entries.append(self._entry(
                DiscrepancyType.PRODUCT_MISMATCH, "product_code",
                platform.product_code, supplier.product_code, None,
                Severity.LOW
            ))

        return entries

    def _missing_counterpart(self, match: TransactionMatch) -> Dict[str, Any]:
        if match.match_status == MatchStatus.UNMATCHED_SUPPLIER:
            present = match.supplier
            return self._entry(
                DiscrepancyType.MISSING_COUNTERPART, "platform",
                None, _snapshot(present), present.amount_cents,
                severity_for_variance(present.amount_cents, self.threshold)
            )
        present = match.platform
        return self._entry(
            DiscrepancyType.MISSING_COUNTERPART, "supplier",
            _snapshot(present), None, present.amount_cents,
            severity_for_variance(present.amount_cents, self.threshold)
        )

    @staticmethod
    def _entry(
        discrepancy_type: DiscrepancyType,
        field_name: str,
        platform_value: Any,
        supplier_value: Any,
        difference: Any,
        severity: Severity
    ) -> Dict[str, Any]:
        return {
            "type": discrepancy_type.value,
            "field": field_name,
            "platform": platform_value,
            "supplier": supplier_value,
            "difference": difference,
            "severity": severity.value,
        }


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _snapshot(record) -> Dict[str, Any]:
    return {
        "transaction_id": record.transaction_id,
        "reference": record.reference,
        "amount_cents": record.amount_cents,
        "timestamp": record.timestamp.isoformat(),
    }
