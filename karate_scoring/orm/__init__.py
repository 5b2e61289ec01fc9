from .base import Base, QUANTIZER_2DP

from .competition_round import (
    CompetitionRound, Discipline, RoundStatus,
    KATA_FIRST_ROUND, KATA_FINAL_8, KATA_FINAL_4, KATA_ROUND_LABELS,
    KATA_ADVANCEMENT, KATA_TERMINAL_ROUND,
)
from .kata import KataPerformance, KataScore, KATA_MIN_SCORE, KATA_MAX_SCORE, MEDALS
from .kumite import (
    KumiteMatch, KumiteMatchParticipant, KumiteTally, KumiteTallyEvent,
    MatchStatus, DecisionReason, PenaltyCategory,
    POINT_FIELDS, PENALTY_FIELDS, TALLY_FIELDS,
)
