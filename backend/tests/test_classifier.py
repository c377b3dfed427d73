"""
Unit Tests for Discrepancy Classification

Tests:
- Field-level discrepancy entries for matched pairs
- Severity grading against the critical variance threshold
- Missing-counterpart entries for unmatched rows

Run with: pytest tests/test_classifier.py -v
"""

import pytest

from reconciliation.models import DiscrepancyType, MatchStatus, Severity, TransactionMatch
from reconciliation.classifier import DiscrepancyClassifier, severity_for_variance


def _pair(supplier, platform, status=MatchStatus.EXACT_MATCH):
    return TransactionMatch(
        match_index=0,
        match_status=status,
        confidence_score=1.0,
        match_method="primary:transaction_id",
        supplier=supplier,
        platform=platform,
    )


class TestSeverityForVariance:
    """Test monetary severity bands (threshold 100000 cents)."""

    @pytest.mark.parametrize("variance,expected", [
        (100000, Severity.CRITICAL),
        (-150000, Severity.CRITICAL),
        (99999, Severity.HIGH),
        (50000, Severity.HIGH),
        (49999, Severity.MEDIUM),
        (10000, Severity.MEDIUM),
        (9999, Severity.LOW),
        (0, Severity.LOW),
    ])
    def test_bands(self, variance, expected):
        assert severity_for_variance(variance, 100000) == expected

    def test_zero_threshold_treats_any_variance_as_critical(self):
        assert severity_for_variance(1, 0) == Severity.CRITICAL
        assert severity_for_variance(0, 0) == Severity.LOW


class TestDiscrepancyClassifier:
    """Test classification of matched and unmatched rows."""

    @pytest.fixture
    def classifier(self, make_config):
        return DiscrepancyClassifier(make_config("MMART"))

    def test_clean_pair_has_no_discrepancy(self, classifier, supplier_record, platform_record):
        match = classifier.classify(_pair(
            supplier_record(0, "T-1", 10000, commission_cents=500),
            platform_record(0, "T-1", 10000, commission_cents=500),
        ))

        assert match.has_discrepancy is False
        assert match.discrepancy_details == []
        assert match.discrepancy_type is None
        assert match.severity is None

    def test_amount_mismatch(self, classifier, supplier_record, platform_record):
        match = classifier.classify(_pair(
            supplier_record(0, "T-1", 70000),
            platform_record(0, "T-1", 10000),
        ))

        assert match.has_discrepancy is True
        assert match.discrepancy_type == DiscrepancyType.AMOUNT_MISMATCH
        entry = match.discrepancy_details[0]
        assert entry == {
            "type": "amount_mismatch",
            "field": "amount_cents",
            "platform": 10000,
            "supplier": 70000,
            "difference": 60000,
            "severity": "high",
        }
        assert match.severity == Severity.HIGH

    def test_amount_within_tolerance_is_not_a_discrepancy(self, make_config, supplier_record, platform_record):
        classifier = DiscrepancyClassifier(make_config("EASYPAY"))

        match = classifier.classify(_pair(
            supplier_record(0, "T-1", 10001),
            platform_record(0, "T-1", 10000),
        ))

        assert match.has_discrepancy is False

    def test_commission_compared_only_when_both_sides_report_it(self, classifier, supplier_record, platform_record):
        missing = classifier.classify(_pair(
            supplier_record(0, "T-1", 10000, commission_cents=500),
            platform_record(0, "T-1", 10000),
        ))
        differing = classifier.classify(_pair(
            supplier_record(0, "T-1", 10000, commission_cents=500),
            platform_record(0, "T-1", 10000, commission_cents=450),
        ))

        assert missing.has_discrepancy is False
        assert differing.discrepancy_type == DiscrepancyType.COMMISSION_MISMATCH
        assert differing.discrepancy_details[0]["difference"] == 50
        assert differing.severity == Severity.LOW

    def test_status_mismatch_graded_by_amount(self, classifier, supplier_record, platform_record):
        match = classifier.classify(_pair(
            supplier_record(0, "T-1", 20000, status="failed"),
            platform_record(0, "T-1", 20000, status="completed"),
        ))

        assert match.discrepancy_type == DiscrepancyType.STATUS_MISMATCH
        assert match.severity == Severity.MEDIUM

    def test_timestamp_and_product_differences_are_low(self, classifier, supplier_record, platform_record):
        match = classifier.classify(_pair(
            supplier_record(0, "T-1", 10000, seconds=400, product_code="DATA"),
            platform_record(0, "T-1", 10000, product_code="AIRTIME"),
        ))

        types = [e["type"] for e in match.discrepancy_details]
        assert types == ["timestamp_diff", "product_mismatch"]
        assert match.discrepancy_details[0]["difference"] == 400.0
        assert match.discrepancy_type == DiscrepancyType.TIMESTAMP_DIFF
        assert match.severity == Severity.LOW

    def test_severity_is_worst_entry(self, classifier, supplier_record, platform_record):
        match = classifier.classify(_pair(
            supplier_record(0, "T-1", 210000, seconds=400),
            platform_record(0, "T-1", 10000),
        ))

        assert len(match.discrepancy_details) == 2
        assert match.severity == Severity.CRITICAL

    def test_unmatched_supplier_is_missing_counterpart(self, classifier, supplier_record):
        match = classifier.classify(TransactionMatch(
            match_index=3,
            match_status=MatchStatus.UNMATCHED_SUPPLIER,
            confidence_score=0.0,
            match_method="none",
            supplier=supplier_record(0, "S-1", 20000),
        ))

        entry = match.discrepancy_details[0]
        assert match.discrepancy_type == DiscrepancyType.MISSING_COUNTERPART
        assert entry["field"] == "platform"
        assert entry["platform"] is None
        assert entry["supplier"]["transaction_id"] == "S-1"
        assert entry["difference"] == 20000
        assert match.severity == Severity.MEDIUM

    def test_unmatched_platform_is_missing_counterpart(self, classifier, platform_record):
        match = classifier.classify(TransactionMatch(
            match_index=4,
            match_status=MatchStatus.UNMATCHED_PLATFORM,
            confidence_score=0.0,
            match_method="none",
            platform=platform_record(0, "P-1", 500),
        ))

        entry = match.discrepancy_details[0]
        assert entry["field"] == "supplier"
        assert entry["supplier"] is None
        assert entry["platform"]["amount_cents"] == 500
        assert match.severity == Severity.LOW

    @pytest.mark.asyncio
    async def test_classify_many(self, classifier, supplier_record, platform_record):
        matches = [
            _pair(supplier_record(0, "T-1", 10000), platform_record(0, "T-1", 10000)),
            _pair(supplier_record(1, "T-2", 10010), platform_record(1, "T-2", 10000)),
        ]

        result = await classifier.classify_many(matches)

        assert result is matches
        assert [m.has_discrepancy for m in matches] == [False, True]
