"""
Score Record Store

Persistence seam for judge submissions and scored subjects. No business
logic beyond the kata range rule; callers own the transaction (nothing here
commits).
"""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional, Union

from sqlalchemy import select, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from karate_scoring.exceptions import ValidationError, NotFoundError
from karate_scoring.errors import ErrorCode
from karate_scoring.orm.base import QUANTIZER_2DP
from karate_scoring.orm.competition_round import Discipline
from karate_scoring.orm.kata import KataPerformance, KataScore, KATA_MIN_SCORE, KATA_MAX_SCORE
from karate_scoring.orm.kumite import (
    KumiteMatch, KumiteMatchParticipant, KumiteTally, KumiteTallyEvent
)

logger = logging.getLogger(__name__)


def normalize_kata_value(value: Union[Decimal, float, int, str]) -> Decimal:
    """Parse, range-check and quantize a kata judge score."""
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Kata score must be a number, got {value!r}")
    if not parsed.is_finite():
        raise ValidationError(f"Kata score must be a finite number, got {value!r}")
    if parsed < KATA_MIN_SCORE or parsed > KATA_MAX_SCORE:
        raise ValidationError(
            f"Kata score {parsed} is outside [{KATA_MIN_SCORE}.0, {KATA_MAX_SCORE}.0]",
            details={"value": str(parsed), "min": KATA_MIN_SCORE, "max": KATA_MAX_SCORE}
        )
    return parsed.quantize(QUANTIZER_2DP, rounding=ROUND_HALF_UP)


class ScoreStore:
    """Keyed storage of kata judge scores and of round subjects."""

    @staticmethod
    async def upsert_score(
        db: AsyncSession,
        performance_id: int,
        judge_id: int,
        value: Union[Decimal, float, int, str]
    ) -> KataScore:
        """
        Insert or overwrite the score for (performance, judge).

        Raises:
            ValidationError: value outside [5.0, 10.0]
            NotFoundError: performance does not exist
        """
        normalized = normalize_kata_value(value)

        exists = await db.execute(
            select(KataPerformance.id).where(KataPerformance.id == performance_id)
        )
        if exists.scalar_one_or_none() is None:
            raise NotFoundError("Performance", performance_id, code=ErrorCode.PERFORMANCE_NOT_FOUND)

        result = await db.execute(
            select(KataScore).where(
                and_(
                    KataScore.performance_id == performance_id,
                    KataScore.judge_id == judge_id
                )
            ).with_for_update()
        )
        score = result.scalar_one_or_none()
        now = datetime.utcnow()

        if score is None:
            score = KataScore(
                performance_id=performance_id,
                judge_id=judge_id,
                value=normalized,
                scored_at=now
            )
            db.add(score)
        else:
            score.value = normalized
            score.scored_at = now

        await db.flush()
        return score

    @staticmethod
    async def list_scores(db: AsyncSession, performance_id: int) -> List[KataScore]:
        result = await db.execute(
            select(KataScore)
            .where(KataScore.performance_id == performance_id)
            .order_by(KataScore.judge_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def delete_subject(
        db: AsyncSession,
        subject_id: int,
        discipline: Optional[Discipline] = None
    ) -> None:
        """
        Delete one performance (kata disciplines) or match (kumite
        disciplines) together with everything scored against it.
        """
        if discipline is None or Discipline(discipline).is_kata:
            resource, code = "Performance", ErrorCode.PERFORMANCE_NOT_FOUND
            found = await db.execute(select(KataPerformance.id).where(KataPerformance.id == subject_id))
            if found.scalar_one_or_none() is None:
                raise NotFoundError(resource, subject_id, code=code)
            await ScoreStore._delete_performances(db, [subject_id])
        else:
            resource, code = "Match", ErrorCode.MATCH_NOT_FOUND
            found = await db.execute(select(KumiteMatch.id).where(KumiteMatch.id == subject_id))
            if found.scalar_one_or_none() is None:
                raise NotFoundError(resource, subject_id, code=code)
            await ScoreStore._delete_matches(db, [subject_id])

        logger.info(f"[SUBJECT DELETED] {resource.lower()}={subject_id}")

    @staticmethod
    async def delete_round_subjects(db: AsyncSession, category_id: int, round_label: str) -> int:
        """Delete every performance and match of a round. Returns the count removed."""
        performance_ids = list((await db.execute(
            select(KataPerformance.id).where(
                and_(
                    KataPerformance.category_id == category_id,
                    KataPerformance.round_label == round_label
                )
            )
        )).scalars().all())
        match_ids = list((await db.execute(
            select(KumiteMatch.id).where(
                and_(
                    KumiteMatch.category_id == category_id,
                    KumiteMatch.round_label == round_label
                )
            )
        )).scalars().all())

        await ScoreStore._delete_performances(db, performance_ids)
        await ScoreStore._delete_matches(db, match_ids)

        removed = len(performance_ids) + len(match_ids)
        logger.info(
            f"[ROUND SUBJECTS DELETED] category={category_id} round='{round_label}' count={removed}"
        )
        return removed

    @staticmethod
    async def _delete_performances(db: AsyncSession, performance_ids: List[int]) -> None:
        if not performance_ids:
            return
        await db.execute(delete(KataScore).where(KataScore.performance_id.in_(performance_ids)))
        await db.execute(delete(KataPerformance).where(KataPerformance.id.in_(performance_ids)))

    @staticmethod
    async def _delete_matches(db: AsyncSession, match_ids: List[int]) -> None:
        if not match_ids:
            return
        for child in (KumiteTallyEvent, KumiteTally, KumiteMatchParticipant):
            await db.execute(delete(child).where(child.match_id.in_(match_ids)))
        await db.execute(delete(KumiteMatch).where(KumiteMatch.id.in_(match_ids)))
