"""
Kata Service

Judge score submission, final score recomputation and kata read models.

Concurrency:
- Submissions hold the round lock and the performance lock, so a score can
  never land between finalize's completeness check and its commit
- final_score is recomputed from the full stored score set on every change
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from karate_scoring.config import FeatureFlags
from karate_scoring.core import hold, round_key, performance_key
from karate_scoring.errors import APIError, ErrorCode
from karate_scoring.exceptions import ConcurrencyConflictError, NotFoundError, ValidationError
from karate_scoring.orm.competition_round import CompetitionRound, Discipline, KATA_ROUND_LABELS
from karate_scoring.orm.kata import KataPerformance, KataScore
from karate_scoring.services.kata_aggregator import breakdown_kata_scores
from karate_scoring.services.round_marker import ensure_round_open, load_round
from karate_scoring.services.score_store import ScoreStore, normalize_kata_value
from karate_scoring.state_machines import kata_performance_state

logger = logging.getLogger(__name__)


async def _load_performance(db: AsyncSession, performance_id: int) -> KataPerformance:
    result = await db.execute(
        select(KataPerformance)
        .where(KataPerformance.id == performance_id)
        .execution_options(populate_existing=True)
    )
    performance = result.scalar_one_or_none()
    if performance is None:
        raise NotFoundError("Performance", performance_id, code=ErrorCode.PERFORMANCE_NOT_FOUND)
    return performance


async def recompute_final_score(db: AsyncSession, performance: KataPerformance) -> Optional[Decimal]:
    """
    Recompute final_score from the stored score set. Never patched
    incrementally; null until at least 3 judges scored.
    """
    scores = await ScoreStore.list_scores(db, performance.id)
    final = breakdown_kata_scores(s.value for s in scores).final_score
    if final != performance.final_score:
        performance.final_score = final
        performance.scored_at = datetime.utcnow() if final is not None else None
    await db.flush()
    return final


def rank_performances(performances: List[KataPerformance]) -> List[KataPerformance]:
    """
    Order by final score descending. Equal scores fall back to
    performance order, then id, so ties at a cut are always broken the
    same way.
    """
    return sorted(
        performances,
        key=lambda p: (-(p.final_score or Decimal("0")), p.performance_order, p.id)
    )


def performance_payload(
    performance: KataPerformance,
    marker: Optional[CompetitionRound] = None
) -> Dict[str, Any]:
    breakdown = breakdown_kata_scores(s.value for s in performance.scores)
    round_finalized = marker is not None and marker.is_finalized
    payload = performance.to_dict()
    payload.update({
        "scores": [s.to_dict() for s in performance.scores],
        "judge_count": len(performance.scores),
        "highest": breakdown.highest,
        "lowest": breakdown.lowest,
        "counted": breakdown.counted,
        "state": kata_performance_state(performance, round_finalized).value,
    })
    return payload


async def submit_kata_score(
    performance_id: int,
    judge_id: int,
    value: Union[Decimal, float, int, str],
    db: AsyncSession
) -> KataScore:
    """
    Upsert one judge's score and recompute the performance's final score.

    Raises:
        ValidationError: value outside [5.0, 10.0] or judge not on the roster
        NotFoundError: unknown performance
        AlreadyFinalizedError: the performance's round is finalized
        ConcurrencyConflictError: lock timeout or concurrent write
    """
    normalize_kata_value(value)
    performance = await _load_performance(db, performance_id)
    category_id, round_label = performance.category_id, performance.round_label

    async with hold(round_key(category_id, round_label), performance_key(performance_id)):
        try:
            marker = await load_round(db, category_id, round_label, for_update=True)
            ensure_round_open(marker, "submit a kata score")

            if (
                FeatureFlags.FEATURE_ENFORCE_JUDGE_ROSTER
                and marker is not None
                and marker.judge_roster
                and judge_id not in marker.judge_roster
            ):
                raise ValidationError(
                    f"Judge {judge_id} is not assigned to round '{round_label}'",
                    details={"judge_id": judge_id, "roster": marker.judge_roster}
                )

            performance = await _load_performance(db, performance_id)
            score = await ScoreStore.upsert_score(db, performance_id, judge_id, value)
            final = await recompute_final_score(db, performance)
            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except (IntegrityError, StaleDataError) as e:
            await db.rollback()
            logger.warning(f"[SCORE CONFLICT] performance={performance_id} judge={judge_id}: {e}")
            raise ConcurrencyConflictError(
                "Score changed concurrently; retry",
                details={"performance_id": performance_id, "judge_id": judge_id}
            )

    logger.info(
        f"[SCORE ACCEPTED] performance={performance_id} judge={judge_id} "
        f"value={score.value} final={final}"
    )
    return score


async def get_performance(performance_id: int, db: AsyncSession) -> KataPerformance:
    return await _load_performance(db, performance_id)


async def get_performance_detail(performance_id: int, db: AsyncSession) -> Dict[str, Any]:
    performance = await _load_performance(db, performance_id)
    marker = await load_round(db, performance.category_id, performance.round_label)
    return performance_payload(performance, marker)


async def delete_performance(performance_id: int, db: AsyncSession) -> None:
    """Delete a performance and its scores; rejected once its round is finalized."""
    performance = await _load_performance(db, performance_id)
    category_id, round_label = performance.category_id, performance.round_label

    async with hold(round_key(category_id, round_label), performance_key(performance_id)):
        try:
            marker = await load_round(db, category_id, round_label, for_update=True)
            ensure_round_open(marker, "delete a performance")
            await ScoreStore.delete_subject(db, performance_id, Discipline.KATA)
            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except (IntegrityError, StaleDataError) as e:
            await db.rollback()
            raise ConcurrencyConflictError(
                f"Performance {performance_id} changed concurrently; retry",
                details={"performance_id": performance_id, "reason": str(e)}
            )

    logger.info(f"[PERFORMANCE DELETED] id={performance_id} round='{round_label}'")


def _round_index(round_label: str) -> int:
    if round_label in KATA_ROUND_LABELS:
        return KATA_ROUND_LABELS.index(round_label)
    return len(KATA_ROUND_LABELS)


async def get_kata_scoreboard(
    category_id: int,
    db: AsyncSession,
    round_label: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Scoreboard rows for a category: by round ladder position, then final
    score descending (unscored last), then performance order.
    """
    query = select(KataPerformance).where(KataPerformance.category_id == category_id)
    if round_label is not None:
        query = query.where(KataPerformance.round_label == round_label)
    result = await db.execute(query.execution_options(populate_existing=True))
    performances = list(result.scalars().all())

    markers_result = await db.execute(
        select(CompetitionRound).where(CompetitionRound.category_id == category_id)
    )
    markers = {m.round_label: m for m in markers_result.scalars().all()}

    performances.sort(
        key=lambda p: (
            _round_index(p.round_label),
            p.round_label,
            p.final_score is None,
            -(p.final_score or Decimal("0")),
            p.performance_order,
            p.id,
        )
    )
    return [performance_payload(p, markers.get(p.round_label)) for p in performances]
