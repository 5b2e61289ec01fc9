"""
Kata Aggregator

Trimmed-sum rule over one performance's judge scores:
- fewer than 3 scores: undefined (None)
- 3 scores: sum of all
- 4 scores: drop lowest and highest, sum the middle 2
- 5+ scores: drop one lowest and one highest, sum the last 3 of the rest

Pure functions of the score values; no state, no I/O.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from karate_scoring.orm.base import QUANTIZER_2DP

COUNTED_SCORES = 3


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 8.1 as 8.1 instead of its binary float expansion
    return Decimal(str(value))


@dataclass(frozen=True)
class KataBreakdown:
    """Which judge values were dropped and which were summed."""
    sorted_scores: List[Decimal] = field(default_factory=list)
    highest: Optional[Decimal] = None
    lowest: Optional[Decimal] = None
    counted: List[Decimal] = field(default_factory=list)
    final_score: Optional[Decimal] = None

    @property
    def is_decidable(self) -> bool:
        return self.final_score is not None


def counted_scores(sorted_scores: List[Decimal]) -> List[Decimal]:
    """Values that contribute to the final score, given ascending input."""
    count = len(sorted_scores)
    if count < COUNTED_SCORES:
        return []
    if count == COUNTED_SCORES:
        return list(sorted_scores)
    trimmed = sorted_scores[1:-1]
    if count == 4:
        return trimmed
    return trimmed[-COUNTED_SCORES:]


def breakdown_kata_scores(values: Iterable) -> KataBreakdown:
    ordered = sorted(_to_decimal(v) for v in values)
    if not ordered:
        return KataBreakdown()
    counted = counted_scores(ordered)
    final = None
    if counted:
        final = sum(counted, Decimal("0")).quantize(QUANTIZER_2DP, rounding=ROUND_HALF_UP)
    return KataBreakdown(
        sorted_scores=ordered,
        highest=ordered[-1],
        lowest=ordered[0],
        counted=counted,
        final_score=final,
    )


def aggregate_kata_scores(values: Iterable) -> Optional[Decimal]:
    """
    Final score for a performance, or None while fewer than 3 judges scored.

    The result is a sum, not a 0-10 value, and is never clamped.
    """
    return breakdown_kata_scores(values).final_score
