"""
Risk Aggregator

Reduces clause risk tags to one overall verdict and step confidences to one
overall confidence. Pure functions.
"""

from fractions import Fraction
from typing import Iterable, Sequence, Union

from clauseguard.models.analysis import AgentStep, Clause, RiskLevel

EMPTY_TRAIL_CONFIDENCE = 0.5


def overall_risk(
    clauses: Sequence[Clause],
    risky_ratio: Union[float, str, Fraction] = "0.3",
) -> RiskLevel:
    """
    risky  iff risky/total >= ratio
    review iff 0 < risky and risky/total < ratio, or there are no clauses
    safe   otherwise

    The comparison is done in exact rationals; Fraction(str(0.3)) is 3/10,
    not the nearest binary float.
    """
    total = len(clauses)
    if total == 0:
        return RiskLevel.REVIEW

    threshold = risky_ratio if isinstance(risky_ratio, Fraction) else Fraction(str(risky_ratio))
    risky = sum(1 for c in clauses if c.risk_level == RiskLevel.RISKY)

    if Fraction(risky, total) >= threshold:
        return RiskLevel.RISKY
    if risky > 0:
        return RiskLevel.REVIEW
    return RiskLevel.SAFE


def overall_confidence(steps: Iterable[AgentStep]) -> float:
    values = [s.confidence for s in steps]
    if not values:
        return EMPTY_TRAIL_CONFIDENCE
    return round(sum(values) / len(values), 2)
