"""
Tiered Matching Engine

Pairs normalised supplier records against platform records for the same
settlement window.

Tiers, in order of precedence:
1. Primary exact match   - configured key fields, byte-equal
2. Secondary exact match - amount/timestamp/product within tolerance
3. Fuzzy match           - weighted similarity, only when enabled
4. Leftovers             - unmatched_supplier / unmatched_platform

A record consumed by an accepted pairing leaves the candidate pool, so no
record is matched twice. Within a tier, candidates are ordered by smallest
timestamp delta, then smallest amount delta, then lowest supplier ordinal,
then lowest platform ordinal; the same inputs always give the same output.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from reconciliation.models import (
    MatchStatus,
    PlatformRecord,
    SupplierRecord,
    TransactionMatch,
)
from reconciliation.supplier_registry import SupplierConfig
from reconciliation.matching.fuzzy_scoring import FuzzyScorer

logger = logging.getLogger(__name__)

TIER_PRIMARY = "primary"
TIER_SECONDARY = "secondary"
TIER_FUZZY = "fuzzy"
TIER_UNMATCHED = "unmatched"

# Confidence lost when a secondary match uses its whole tolerance
SECONDARY_CONFIDENCE_SPAN = 0.2


@dataclass
class TierResult:
    """Matches produced by one tier."""
    tier: str
    matches: List[TransactionMatch] = field(default_factory=list)


Pair = Tuple[SupplierRecord, PlatformRecord]


def _ts_delta(supplier: SupplierRecord, platform: PlatformRecord) -> float:
    return abs((supplier.timestamp - platform.timestamp).total_seconds())


def _amount_delta(supplier: SupplierRecord, platform: PlatformRecord) -> int:
    return abs(supplier.amount_cents - platform.amount_cents)


def tie_break_key(pair: Pair) -> Tuple[float, int, int, int]:
    supplier, platform = pair
    return (_ts_delta(supplier, platform), _amount_delta(supplier, platform), supplier.ordinal, platform.ordinal)


def _key(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class MatchingEngine:
    """
    Matches one run's supplier records against platform records.

    The engine holds no state between calls; configure it with the
    supplier's config and call match() or iter_tiers().
    """

    def __init__(self, config: SupplierConfig):
        self.config = config
        self.rules = config.matching_rules
        self.scorer = FuzzyScorer(config.timestamp_tolerance_seconds)

    # ==================== PUBLIC API ====================

    def match(
        self,
        supplier_records: List[SupplierRecord],
        platform_records: List[PlatformRecord]
    ) -> List[TransactionMatch]:
        """Run every tier and return all matches in output order."""
        matches: List[TransactionMatch] = []
        for tier in self.iter_tiers(supplier_records, platform_records):
            matches.extend(tier.matches)
        return matches

    def iter_tiers(
        self,
        supplier_records: List[SupplierRecord],
        platform_records: List[PlatformRecord]
    ) -> Iterator[TierResult]:
        """
        Yield one TierResult per tier, in order.

        match_index is assigned sequentially across tiers, so concatenating
        the yielded matches gives exactly the output of match().
        """
        suppliers: Dict[int, SupplierRecord] = {s.ordinal: s for s in supplier_records}
        platforms: Dict[int, PlatformRecord] = {p.ordinal: p for p in platform_records}
        if len(suppliers) != len(supplier_records) or len(platforms) != len(platform_records):
            raise ValueError("Record ordinals must be unique within each side")

        next_index = 0

        # Tier 1
        primary = TierResult(TIER_PRIMARY)
        for field_name in self.rules.primary:
            pairs = self._greedy(self._primary_candidates(field_name, suppliers, platforms))
            for supplier, platform in pairs:
                primary.matches.append(self._paired(
                    next_index, supplier, platform,
                    MatchStatus.EXACT_MATCH, 1.0, f"primary:{field_name}"
                ))
                next_index += 1
                del suppliers[supplier.ordinal]
                del platforms[platform.ordinal]
        yield primary

        # Tier 2
        secondary = TierResult(TIER_SECONDARY)
        if self.rules.secondary:
            candidates = [
                (s, p) for s in suppliers.values() for p in platforms.values()
                if self._secondary_admissible(s, p)
            ]
            for supplier, platform in self._greedy(candidates):
                secondary.matches.append(self._paired(
                    next_index, supplier, platform,
                    MatchStatus.EXACT_MATCH, self.secondary_confidence(supplier, platform), "secondary"
                ))
                next_index += 1
                del suppliers[supplier.ordinal]
                del platforms[platform.ordinal]
        yield secondary

        # Tier 3
        fuzzy = TierResult(TIER_FUZZY)
        if self.rules.fuzzy_match.enabled and suppliers and platforms:
            for supplier, platform, score in self._fuzzy_pairs(suppliers, platforms):
                fuzzy.matches.append(self._paired(
                    next_index, supplier, platform,
                    MatchStatus.FUZZY_MATCH, round(score, 2), "fuzzy"
                ))
                next_index += 1
                del suppliers[supplier.ordinal]
                del platforms[platform.ordinal]
        yield fuzzy

        # Tier 4
        leftovers = TierResult(TIER_UNMATCHED)
        for ordinal in sorted(suppliers):
            leftovers.matches.append(TransactionMatch(
                match_index=next_index,
                match_status=MatchStatus.UNMATCHED_SUPPLIER,
                confidence_score=0.0,
                match_method="none",
                supplier=suppliers[ordinal],
            ))
            next_index += 1
        for ordinal in sorted(platforms):
            leftovers.matches.append(TransactionMatch(
                match_index=next_index,
                match_status=MatchStatus.UNMATCHED_PLATFORM,
                confidence_score=0.0,
                match_method="none",
                platform=platforms[ordinal],
            ))
            next_index += 1
        yield leftovers

        logger.debug(
            f"Matching complete for {self.config.supplier_code}: "
            f"primary={len(primary.matches)} secondary={len(secondary.matches)} "
            f"fuzzy={len(fuzzy.matches)} unmatched={len(leftovers.matches)}"
        )

    def secondary_confidence(self, supplier: SupplierRecord, platform: PlatformRecord) -> float:
        """1.0 when every secondary field aligns exactly, scaled down by tolerance consumed."""
        consumed = 0.0
        if "amount" in self.rules.secondary and self.config.amount_tolerance_cents > 0:
            consumed = max(consumed, _amount_delta(supplier, platform) / self.config.amount_tolerance_cents)
        if "timestamp" in self.rules.secondary and self.config.timestamp_tolerance_seconds > 0:
            consumed = max(consumed, _ts_delta(supplier, platform) / self.config.timestamp_tolerance_seconds)
        consumed = min(consumed, 1.0)
        return round(1.0 - SECONDARY_CONFIDENCE_SPAN * consumed, 2)

    # ==================== TIERS ====================

    def _primary_candidates(
        self,
        field_name: str,
        suppliers: Dict[int, SupplierRecord],
        platforms: Dict[int, PlatformRecord]
    ) -> List[Pair]:
        index: Dict[str, List[PlatformRecord]] = {}
        for platform in platforms.values():
            if field_name == "transaction_id":
                keys = {_key(platform.transaction_id), _key(platform.reference)}
            else:
                keys = {_key(platform.reference)}
            for key in keys:
                if key:
                    index.setdefault(key, []).append(platform)

        candidates = []
        for supplier in suppliers.values():
            key = _key(getattr(supplier, field_name))
            if not key:
                continue
            for platform in index.get(key, []):
                candidates.append((supplier, platform))
        return candidates

    def _secondary_admissible(self, supplier: SupplierRecord, platform: PlatformRecord) -> bool:
        for field_name in self.rules.secondary:
            if field_name == "amount":
                if _amount_delta(supplier, platform) > self.config.amount_tolerance_cents:
                    return False
            elif field_name == "timestamp":
                if _ts_delta(supplier, platform) > self.config.timestamp_tolerance_seconds:
                    return False
            elif field_name == "product_code":
                if (supplier.product_code or "").strip().lower() != (platform.product_code or "").strip().lower():
                    return False
            elif field_name == "reference":
                if not _key(supplier.reference) or _key(supplier.reference) != _key(platform.reference):
                    return False
        return True

    def _fuzzy_pairs(
        self,
        suppliers: Dict[int, SupplierRecord],
        platforms: Dict[int, PlatformRecord]
    ) -> List[Tuple[SupplierRecord, PlatformRecord, float]]:
        """
        Accept (s, p) when p is s's clear best and s is p's clear best.

        "Clear" means at least min_confidence and one full tier ahead of the
        runner-up on that side. Clear bests are unique per record, so the
        accepted pairs never overlap.
        """
        min_confidence = self.rules.fuzzy_match.min_confidence
        scores: Dict[Tuple[int, int], float] = {}
        for s_ord, supplier in suppliers.items():
            for p_ord, platform in platforms.items():
                scores[(s_ord, p_ord)] = self.scorer.score(supplier, platform)[0]

        best_for_supplier = {
            s_ord: self._clear_best([(scores[(s_ord, p_ord)], p_ord) for p_ord in platforms])
            for s_ord in suppliers
        }
        best_for_platform = {
            p_ord: self._clear_best([(scores[(s_ord, p_ord)], s_ord) for s_ord in suppliers])
            for p_ord in platforms
        }

        accepted = []
        for s_ord, p_ord in best_for_supplier.items():
            if p_ord is None or best_for_platform.get(p_ord) != s_ord:
                continue
            score = scores[(s_ord, p_ord)]
            if score < min_confidence:
                continue
            accepted.append((suppliers[s_ord], platforms[p_ord], score))

        accepted.sort(key=lambda item: tie_break_key((item[0], item[1])))
        return accepted

    def _clear_best(self, ranked: List[Tuple[float, int]]) -> Optional[int]:
        if not ranked:
            return None
        ranked = sorted(ranked, key=lambda item: (-item[0], item[1]))
        best_score, best_ordinal = ranked[0]
        runner_up = ranked[1][0] if len(ranked) > 1 else None
        if not self.scorer.clears_tier(best_score, runner_up):
            return None
        return best_ordinal

    # ==================== HELPERS ====================

    @staticmethod
    def _greedy(candidates: List[Pair]) -> List[Pair]:
        """Accept candidates in tie-break order, skipping consumed records."""
        used_suppliers = set()
        used_platforms = set()
        accepted = []
        for supplier, platform in sorted(candidates, key=tie_break_key):
            if supplier.ordinal in used_suppliers or platform.ordinal in used_platforms:
                continue
            used_suppliers.add(supplier.ordinal)
            used_platforms.add(platform.ordinal)
            accepted.append((supplier, platform))
        return accepted

    @staticmethod
    def _paired(
        index: int,
        supplier: SupplierRecord,
        platform: PlatformRecord,
        status: MatchStatus,
        confidence: float,
        method: str
    ) -> TransactionMatch:
        return TransactionMatch(
            match_index=index,
            match_status=status,
            confidence_score=confidence,
            match_method=method,
            platform=platform,
            supplier=supplier,
        )
