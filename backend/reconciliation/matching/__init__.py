from reconciliation.matching.engine import MatchingEngine, TierResult
from reconciliation.matching.fuzzy_scoring import FuzzyScorer

__all__ = ["MatchingEngine", "TierResult", "FuzzyScorer"]
