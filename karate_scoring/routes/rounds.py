"""
Round API Routes

Round creation, finalization (idempotent), status, integrity and deletion.
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from karate_scoring.database import get_db
from karate_scoring.orm.kata import KataPerformance
from karate_scoring.schemas import CreateRoundRequest, RoundRef, FinalizeRoundResponse
from karate_scoring.services import round_service
from karate_scoring.services.kata_service import performance_payload
from karate_scoring.services.kumite_service import match_payload


router = APIRouter(
    prefix="/rounds",
    tags=["Rounds"],
    responses={
        409: {"description": "Round state conflict"},
        404: {"description": "Round not found"},
        400: {"description": "Invalid round request"}
    }
)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_round(
    request: CreateRoundRequest,
    db: AsyncSession = Depends(get_db)
):
    """Open a round (or add participants to an open one)."""
    created = await round_service.create_round(
        category_id=request.category_id,
        discipline=request.discipline,
        round_label=request.round,
        participant_ids=request.participant_ids,
        db=db,
        judge_ids=request.judge_ids
    )

    body = {
        "category_id": request.category_id,
        "round": request.round,
        "discipline": request.discipline.value,
    }
    if request.discipline.is_kata:
        body["performances"] = [performance_payload(p) for p in created if isinstance(p, KataPerformance)]
    else:
        body["matches"] = [match_payload(m) for m in created]
    return body


@router.post("/finalize", response_model=FinalizeRoundResponse)
async def finalize_round(
    request: RoundRef,
    db: AsyncSession = Depends(get_db)
):
    """Finalize a round. Repeat calls return the stored outcome."""
    return await round_service.finalize_round(request.category_id, request.round, db)


@router.get("/status")
async def get_round_status(
    category_id: int = Query(...),
    round: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db)
):
    return await round_service.get_round_status(category_id, round, db)


@router.get("/integrity")
async def verify_round_integrity(
    category_id: int = Query(...),
    round: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db)
):
    """Recompute the finalized outcome checksum."""
    return await round_service.verify_round_integrity(category_id, round, db)


@router.delete("")
async def delete_round(
    category_id: int = Query(...),
    round: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db)
):
    return await round_service.delete_round(category_id, round, db)
