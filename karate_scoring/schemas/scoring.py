"""
Pydantic Schemas for the Scoring Engine API

Request bodies only carry shape; scoring rules (score range, tally floor)
are enforced by the services so they surface as engine errors.
"""
from decimal import Decimal
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from karate_scoring.orm.competition_round import Discipline
from karate_scoring.orm.kumite import PenaltyCategory


# ============================================================================
# Round Schemas
# ============================================================================

class CreateRoundRequest(BaseModel):
    category_id: int = Field(..., description="Category supplied by the tournament system")
    discipline: Discipline
    round: str = Field(..., min_length=1, max_length=64, description="Round label")
    participant_ids: List[int] = Field(..., description="Participants in running/pairing order")
    judge_ids: Optional[List[int]] = Field(None, description="Judge panel assigned to the round")


class RoundRef(BaseModel):
    category_id: int
    round: str = Field(..., min_length=1, max_length=64)


class FinalizeRoundResponse(BaseModel):
    category_id: int
    round: str
    discipline: str
    next_round: Optional[str] = None
    advanced: List[Optional[int]] = []
    placements: List[Dict[str, Any]] = []
    ranking: List[Dict[str, Any]] = []
    bouts: List[Dict[str, Any]] = []
    already_finalized: bool
    checksum: Optional[str] = None
    finalized_at: Optional[str] = None


# ============================================================================
# Kata Schemas
# ============================================================================

class SubmitKataScoreRequest(BaseModel):
    judge_id: int
    value: Decimal = Field(..., description="Judge score, 5.0 to 10.0 inclusive")


class KataScoreResponse(BaseModel):
    id: int
    performance_id: int
    judge_id: int
    value: float
    scored_at: Optional[str] = None
    final_score: Optional[float] = None


# ============================================================================
# Kumite Schemas
# ============================================================================

class TallyDeltaRequest(BaseModel):
    participant_id: int
    field: str = Field(..., description="yuko, waza_ari, ippon, chukoku, keikoku, hansoku_chui, hansoku or jogai")
    amount: int = Field(..., description="Signed delta, e.g. +1 or -1")
    category: Optional[PenaltyCategory] = Field(None, description="Penalty category (penalty fields only)")
    recorded_by: Optional[int] = Field(None, description="Judge or table worker entering the delta")


class DeclareWinnerRequest(BaseModel):
    participant_id: int
    reason: Optional[str] = Field(None, max_length=255, description="Referee decision note")


class KumiteDecisionResponse(BaseModel):
    match_id: int
    winner_id: Optional[int]
    reason: Optional[str]
    scores: Dict[str, float] = {}
    note: Optional[str] = None
    status: str
