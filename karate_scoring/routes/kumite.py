"""
Kumite API Routes

Match lifecycle, live tally deltas, winner computation and report.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from karate_scoring.database import get_db
from karate_scoring.schemas import TallyDeltaRequest, DeclareWinnerRequest, KumiteDecisionResponse
from karate_scoring.services import kumite_service, report_service


router = APIRouter(
    prefix="/kumite",
    tags=["Kumite"],
    responses={
        409: {"description": "Tie, incomplete data or match state conflict"},
        404: {"description": "Match not found"},
        400: {"description": "Invalid tally delta"}
    }
)


@router.get("/matches/{match_id}")
async def get_match(
    match_id: int,
    db: AsyncSession = Depends(get_db)
):
    match = await kumite_service.get_match(match_id, db)
    return kumite_service.match_payload(match)


@router.post("/matches/{match_id}/start")
async def start_match(
    match_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Scheduled -> In Progress."""
    match = await kumite_service.start_match(match_id, db)
    return {"id": match.id, "status": match.status}


@router.post("/matches/{match_id}/tally")
async def submit_kumite_tally(
    match_id: int,
    request: TallyDeltaRequest,
    db: AsyncSession = Depends(get_db)
):
    """Apply a +/- delta to one counter of one participant's tally."""
    tally = await kumite_service.submit_kumite_tally(
        match_id=match_id,
        participant_id=request.participant_id,
        field=request.field,
        amount=request.amount,
        db=db,
        category=request.category,
        recorded_by=request.recorded_by
    )
    body = tally.to_dict()
    body["score"] = kumite_service.score_participant(kumite_service.tally_snapshot(tally))
    return body


@router.post("/matches/{match_id}/winner", response_model=KumiteDecisionResponse)
async def calculate_kumite_winner(
    match_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Resolve the match from its tallies (409 on an exact tie)."""
    return await kumite_service.calculate_kumite_winner(match_id, db)


@router.post("/matches/{match_id}/decision", response_model=KumiteDecisionResponse)
async def declare_kumite_winner(
    match_id: int,
    request: DeclareWinnerRequest,
    db: AsyncSession = Depends(get_db)
):
    """Record an explicit referee decision."""
    return await kumite_service.declare_kumite_winner(
        match_id, request.participant_id, request.reason, db
    )


@router.post("/matches/{match_id}/reopen")
async def reopen_match(
    match_id: int,
    db: AsyncSession = Depends(get_db)
):
    match = await kumite_service.reopen_match(match_id, db)
    return {"id": match.id, "status": match.status}


@router.delete("/matches/{match_id}")
async def delete_match(
    match_id: int,
    db: AsyncSession = Depends(get_db)
):
    await kumite_service.delete_match(match_id, db)
    return {"id": match_id, "deleted": True}


@router.get("/report/{category_id}")
async def get_kumite_report(
    category_id: int,
    db: AsyncSession = Depends(get_db)
):
    return await report_service.build_kumite_report(category_id, db)
