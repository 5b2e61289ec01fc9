"""
Scoring State Machine
Derived per-subject scoring state plus strict match status transitions.

Subject (performance or match) state:
    OPEN -> PARTIALLY_SCORED -> DECIDABLE -> FINALIZED

Kata:
- OPEN: no judge scores yet
- PARTIALLY_SCORED: 1-2 judge scores, final score undefined
- DECIDABLE: at least 3 judge scores, final score defined
- FINALIZED: round finalized, final score and place locked

Kumite (orthogonal to Scheduled/In Progress/Completed):
- OPEN: no tallies
- PARTIALLY_SCORED: one side has a tally
- DECIDABLE: both sides have a tally (or the match is a bye)
- FINALIZED: match Completed
"""
import enum
import logging
from typing import Dict, List, Optional

from karate_scoring.exceptions import StateTransitionError
from karate_scoring.orm.kata import KataPerformance
from karate_scoring.orm.kumite import KumiteMatch, MatchStatus

logger = logging.getLogger(__name__)

MIN_KATA_JUDGES = 3


class SubjectState(str, enum.Enum):
    OPEN = "open"
    PARTIALLY_SCORED = "partially_scored"
    DECIDABLE = "decidable"
    FINALIZED = "finalized"


def kata_performance_state(performance: KataPerformance, round_finalized: bool = False) -> SubjectState:
    if round_finalized and performance.final_score is not None:
        return SubjectState.FINALIZED
    judges = len(performance.scores)
    if judges == 0:
        return SubjectState.OPEN
    if judges < MIN_KATA_JUDGES or performance.final_score is None:
        return SubjectState.PARTIALLY_SCORED
    return SubjectState.DECIDABLE


def kumite_match_state(match: KumiteMatch) -> SubjectState:
    if match.status == MatchStatus.COMPLETED.value:
        return SubjectState.FINALIZED
    if match.is_bye:
        return SubjectState.DECIDABLE
    scored = sum(1 for pid in match.participant_ids if match.tally_for(pid) is not None)
    if scored == 0:
        return SubjectState.OPEN
    if scored < len(match.participant_ids):
        return SubjectState.PARTIALLY_SCORED
    return SubjectState.DECIDABLE


def is_ready_for_finalize(state: SubjectState, discipline_is_kata: bool) -> bool:
    """
    Kata members count once their final score exists; kumite members only
    once the match is Completed.
    """
    if discipline_is_kata:
        return state in (SubjectState.DECIDABLE, SubjectState.FINALIZED)
    return state == SubjectState.FINALIZED


class MatchStateMachine:
    """Strict status transitions for kumite matches."""

    # Valid state transitions: {current_state: [allowed_next_states]}
    ALLOWED_TRANSITIONS: Dict[MatchStatus, List[MatchStatus]] = {
        MatchStatus.SCHEDULED: [
            MatchStatus.IN_PROGRESS,
            MatchStatus.COMPLETED,  # bye or walkover decision
        ],
        MatchStatus.IN_PROGRESS: [
            MatchStatus.COMPLETED,
        ],
        MatchStatus.COMPLETED: [
            MatchStatus.IN_PROGRESS,  # explicit reopen only
        ],
    }

    @classmethod
    def can_transition(cls, current: MatchStatus, target: MatchStatus) -> bool:
        return target in cls.ALLOWED_TRANSITIONS.get(current, [])

    @classmethod
    def validate_transition(cls, match: KumiteMatch, target: MatchStatus) -> None:
        current = MatchStatus(match.status)
        if not cls.can_transition(current, target):
            logger.warning(
                f"[TRANSITION REJECTED] match={match.id} {current.value} -> {target.value}"
            )
            raise StateTransitionError(
                f"Match {match.id} cannot move from '{current.value}' to '{target.value}'",
                from_state=current.value,
                to_state=target.value
            )

    @classmethod
    def apply(cls, match: KumiteMatch, target: MatchStatus, at=None) -> Optional[MatchStatus]:
        """Validate and apply a transition; returns the previous status."""
        previous = MatchStatus(match.status)
        cls.validate_transition(match, target)
        match.status = target.value
        if target == MatchStatus.IN_PROGRESS and match.started_at is None:
            match.started_at = at
        if target == MatchStatus.COMPLETED:
            match.completed_at = at
        if target == MatchStatus.IN_PROGRESS and previous == MatchStatus.COMPLETED:
            match.completed_at = None
        logger.info(f"[TRANSITION SUCCESS] match={match.id} {previous.value} -> {target.value}")
        return previous
