"""
Fuzzy match scoring

Weighted similarity between a supplier record and a platform record, used
by the third matching tier once the exact tiers have consumed what they can.

Components (each scored 0..1):
- amount closeness (relative difference)
- timestamp closeness (linear decay over a window)
- product-name similarity (difflib SequenceMatcher)
- reference similarity (difflib SequenceMatcher)

A pairing is only accepted when it also clears the next-best candidate by
at least one TIER_WIDTH, so near-ties never flip between runs.
"""

from difflib import SequenceMatcher
from typing import Dict, Optional, Tuple

from reconciliation.models import SupplierRecord, PlatformRecord


class FuzzyScorer:
    """
    Scores candidate pairs for the fuzzy tier.
    """

    # Scoring weights
    WEIGHT_AMOUNT = 0.40
    WEIGHT_TIMESTAMP = 0.25
    WEIGHT_PRODUCT = 0.20
    WEIGHT_REFERENCE = 0.15

    # Score width of one confidence tier
    TIER_WIDTH = 0.05

    # Relative amount difference at which amount closeness reaches 0
    AMOUNT_ZERO_AT = 0.10
    # Timestamp closeness reaches 0 at this many tolerance windows
    TIMESTAMP_ZERO_AT_WINDOWS = 12

    NEUTRAL = 0.5

    def __init__(self, timestamp_tolerance_seconds: int = 300):
        self.timestamp_window = max(timestamp_tolerance_seconds, 1) * self.TIMESTAMP_ZERO_AT_WINDOWS

    def score(self, supplier: SupplierRecord, platform: PlatformRecord) -> Tuple[float, Dict[str, float]]:
        """
        Score the pair.

        Returns:
            Tuple of (total_score, scoring_breakdown)
        """
        breakdown = {
            "amount": self._score_amount(supplier, platform),
            "timestamp": self._score_timestamp(supplier, platform),
            "product": self._score_product(supplier, platform),
            "reference": self._score_reference(supplier, platform),
        }

        total = (
            breakdown["amount"] * self.WEIGHT_AMOUNT +
            breakdown["timestamp"] * self.WEIGHT_TIMESTAMP +
            breakdown["product"] * self.WEIGHT_PRODUCT +
            breakdown["reference"] * self.WEIGHT_REFERENCE
        )
        # Fixed precision keeps comparisons reproducible
        total = round(total, 6)
        breakdown["total"] = total
        return total, breakdown

    def clears_tier(self, best: float, runner_up: Optional[float]) -> bool:
        """True when best is at least one full tier ahead of the runner-up."""
        if runner_up is None:
            return True
        return round(best - runner_up, 6) >= self.TIER_WIDTH

    def _score_amount(self, supplier: SupplierRecord, platform: PlatformRecord) -> float:
        # Signed: a reversal never scores close to the original sale
        s = supplier.amount_cents
        p = platform.amount_cents
        if s == p:
            return 1.0
        largest = max(abs(s), abs(p))
        if largest == 0:
            return 1.0
        relative = abs(s - p) / largest
        return max(0.0, 1.0 - relative / self.AMOUNT_ZERO_AT)

    def _score_timestamp(self, supplier: SupplierRecord, platform: PlatformRecord) -> float:
        delta = abs((supplier.timestamp - platform.timestamp).total_seconds())
        return max(0.0, 1.0 - delta / self.timestamp_window)

    def _score_product(self, supplier: SupplierRecord, platform: PlatformRecord) -> float:
        source = _clean(supplier.product_name or supplier.product_code)
        target = _clean(platform.product_name or platform.product_code)
        if not source or not target:
            return self.NEUTRAL
        return SequenceMatcher(None, source, target).ratio()

    def _score_reference(self, supplier: SupplierRecord, platform: PlatformRecord) -> float:
        source = _clean(supplier.reference or supplier.transaction_id)
        candidates = [_clean(platform.reference), _clean(platform.transaction_id)]
        candidates = [c for c in candidates if c]
        if not source or not candidates:
            return self.NEUTRAL
        return max(SequenceMatcher(None, source, c).ratio() for c in candidates)


def _clean(value: Optional[str]) -> str:
    return (value or "").strip().lower()
