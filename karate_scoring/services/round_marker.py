"""
Round marker lookups shared by the kata, kumite and round services.
"""
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from karate_scoring.errors import ErrorCode
from karate_scoring.exceptions import AlreadyFinalizedError, NotFoundError
from karate_scoring.orm.competition_round import CompetitionRound


async def load_round(
    db: AsyncSession,
    category_id: int,
    round_label: str,
    for_update: bool = False
) -> Optional[CompetitionRound]:
    """
    Fetch the marker for (category, round).

    Always re-reads the row so a marker cached in the session from before
    another transaction's commit is never trusted.
    """
    query = select(CompetitionRound).where(
        and_(
            CompetitionRound.category_id == category_id,
            CompetitionRound.round_label == round_label
        )
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def require_round(
    db: AsyncSession,
    category_id: int,
    round_label: str,
    for_update: bool = False
) -> CompetitionRound:
    marker = await load_round(db, category_id, round_label, for_update=for_update)
    if marker is None:
        raise NotFoundError(
            "Round",
            f"{category_id}/{round_label}",
            code=ErrorCode.ROUND_NOT_FOUND
        )
    return marker


def ensure_round_open(marker: Optional[CompetitionRound], action: str) -> None:
    """Reject mutations of a finalized round's members."""
    if marker is not None and marker.is_finalized:
        raise AlreadyFinalizedError(
            marker.category_id,
            marker.round_label,
            message=(
                f"Cannot {action}: round '{marker.round_label}' of category "
                f"{marker.category_id} is already finalized"
            )
        )
