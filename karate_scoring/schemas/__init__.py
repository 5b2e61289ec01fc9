from .scoring import (
    CreateRoundRequest, RoundRef, FinalizeRoundResponse,
    SubmitKataScoreRequest, KataScoreResponse,
    TallyDeltaRequest, DeclareWinnerRequest, KumiteDecisionResponse,
)
