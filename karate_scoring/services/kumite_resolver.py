"""
Kumite Resolver

points    = yuko*1 + waza_ari*2 + ippon*3
deduction = chukoku*0.5 + keikoku*1 + hansoku_chui*1.5 + hansoku*2 + jogai*0.25
score     = clamp(points - deduction, 0, 10)

Penalty categories (contact/conduct) are summed before weighting. An exact
tie is never broken here; it is reported for manual adjudication.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from karate_scoring.orm.base import QUANTIZER_2DP
from karate_scoring.orm.kumite import DecisionReason, POINT_FIELDS, PENALTY_FIELDS

POINT_VALUES: Dict[str, Decimal] = {
    "yuko": Decimal("1"),
    "waza_ari": Decimal("2"),
    "ippon": Decimal("3"),
}

PENALTY_DEDUCTIONS: Dict[str, Decimal] = {
    "chukoku": Decimal("0.5"),
    "keikoku": Decimal("1"),
    "hansoku_chui": Decimal("1.5"),
    "hansoku": Decimal("2"),
    "jogai": Decimal("0.25"),
}

SCORE_FLOOR = Decimal("0")
SCORE_CEILING = Decimal("10")


@dataclass(frozen=True)
class TallySnapshot:
    """Immutable merged counts for one participant of one match."""
    participant_id: int
    yuko: int = 0
    waza_ari: int = 0
    ippon: int = 0
    chukoku: int = 0
    keikoku: int = 0
    hansoku_chui: int = 0
    hansoku: int = 0
    jogai: int = 0

    @classmethod
    def from_counts(cls, participant_id: int, counts: Mapping[str, int]) -> "TallySnapshot":
        known = {name: int(counts.get(name, 0) or 0) for name in POINT_FIELDS + PENALTY_FIELDS}
        return cls(participant_id=participant_id, **known)


@dataclass(frozen=True)
class KumiteDecision:
    winner_id: Optional[int]
    reason: DecisionReason
    scores: Dict[int, Decimal]
    is_tie: bool = False

    def to_dict(self) -> Dict:
        return {
            "winner_id": self.winner_id,
            "reason": self.reason.value,
            "scores": {str(pid): score for pid, score in self.scores.items()},
            "is_tie": self.is_tie,
        }


def points(tally: TallySnapshot) -> Decimal:
    return sum(
        (POINT_VALUES[name] * getattr(tally, name) for name in POINT_FIELDS),
        Decimal("0")
    )


def deduction(tally: TallySnapshot) -> Decimal:
    return sum(
        (PENALTY_DEDUCTIONS[name] * getattr(tally, name) for name in PENALTY_FIELDS),
        Decimal("0")
    )


def score_participant(tally: TallySnapshot) -> Decimal:
    raw = points(tally) - deduction(tally)
    clamped = min(max(raw, SCORE_FLOOR), SCORE_CEILING)
    return clamped.quantize(QUANTIZER_2DP)


def resolve_bye(participant_id: int) -> KumiteDecision:
    """The sole participant of a bye wins without any computation."""
    return KumiteDecision(winner_id=participant_id, reason=DecisionReason.BYE, scores={})


def resolve_match(tallies: List[TallySnapshot]) -> KumiteDecision:
    """
    Decide a two-participant match from its tallies.

    Returns a decision with is_tie=True and no winner when both scores are
    exactly equal; the caller decides how to surface it.
    """
    if len(tallies) != 2:
        raise ValueError(f"resolve_match needs exactly 2 tallies, got {len(tallies)}")
    scores = {t.participant_id: score_participant(t) for t in tallies}
    first, second = tallies
    if scores[first.participant_id] == scores[second.participant_id]:
        return KumiteDecision(winner_id=None, reason=DecisionReason.POINTS, scores=scores, is_tie=True)
    winner = max(tallies, key=lambda t: scores[t.participant_id])
    return KumiteDecision(winner_id=winner.participant_id, reason=DecisionReason.POINTS, scores=scores)
