"""
Kata API Routes

Judge score submission, performance detail, scoreboard and report.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from karate_scoring.database import get_db
from karate_scoring.schemas import SubmitKataScoreRequest, KataScoreResponse
from karate_scoring.services import kata_service, report_service


router = APIRouter(
    prefix="/kata",
    tags=["Kata"],
    responses={
        409: {"description": "Round already finalized or concurrent update"},
        404: {"description": "Performance not found"},
        400: {"description": "Score out of range or judge not assigned"}
    }
)


@router.post("/performances/{performance_id}/scores", response_model=KataScoreResponse)
async def submit_kata_score(
    performance_id: int,
    request: SubmitKataScoreRequest,
    db: AsyncSession = Depends(get_db)
):
    """Submit or overwrite one judge's score."""
    score = await kata_service.submit_kata_score(
        performance_id=performance_id,
        judge_id=request.judge_id,
        value=request.value,
        db=db
    )
    performance = await kata_service.get_performance(performance_id, db)

    return KataScoreResponse(
        id=score.id,
        performance_id=score.performance_id,
        judge_id=score.judge_id,
        value=score.value,
        scored_at=score.scored_at.isoformat() if score.scored_at else None,
        final_score=performance.final_score
    )


@router.get("/performances/{performance_id}")
async def get_performance(
    performance_id: int,
    db: AsyncSession = Depends(get_db)
):
    return await kata_service.get_performance_detail(performance_id, db)


@router.delete("/performances/{performance_id}")
async def delete_performance(
    performance_id: int,
    db: AsyncSession = Depends(get_db)
):
    await kata_service.delete_performance(performance_id, db)
    return {"id": performance_id, "deleted": True}


@router.get("/scoreboard/{category_id}")
async def get_kata_scoreboard(
    category_id: int,
    round: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    rows = await kata_service.get_kata_scoreboard(category_id, db, round_label=round)
    return {"category_id": category_id, "round": round, "performances": rows}


@router.get("/report/{category_id}")
async def get_kata_report(
    category_id: int,
    db: AsyncSession = Depends(get_db)
):
    return await report_service.build_kata_report(category_id, db)
