from .scoring_state import (
    SubjectState, MatchStateMachine, MIN_KATA_JUDGES,
    kata_performance_state, kumite_match_state, is_ready_for_finalize,
)
