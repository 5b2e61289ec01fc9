"""
Round Advancement Controller

Round lifecycle for both disciplines:
- create_round: one performance per participant (kata) or sequential
  pairings with a trailing bye (kumite)
- finalize_round: completeness gate, ranking, next-round creation or
  terminal placements, persisted exactly once
- get_round_status / verify_round_integrity / delete_round

Finalization guarantees:
- Serialized per (category, round) and on the round it produces
- Validate, create next round and flip the marker in one transaction,
  committed last; any failure or cancellation leaves nothing behind
- A second call never creates a second next round: it returns the stored
  outcome (or raises AlreadyFinalizedError in strict mode)
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from karate_scoring.config import FeatureFlags
from karate_scoring.core import hold, round_key
from karate_scoring.errors import APIError, ErrorCode
from karate_scoring.exceptions import (
    AlreadyFinalizedError, ConcurrencyConflictError, IncompleteRoundError,
    InsufficientCandidatesError, NotFoundError, ValidationError
)
from karate_scoring.orm.competition_round import (
    CompetitionRound, Discipline, RoundStatus,
    KATA_ADVANCEMENT, KATA_ROUND_LABELS, KATA_TERMINAL_ROUND
)
from karate_scoring.orm.kata import KataPerformance, MEDALS
from karate_scoring.orm.kumite import KumiteMatch, KumiteMatchParticipant, MatchStatus
from karate_scoring.services.kata_service import rank_performances, recompute_final_score
from karate_scoring.services.kumite_service import complete_bye, list_round_matches
from karate_scoring.services.round_marker import load_round, require_round
from karate_scoring.services.score_store import ScoreStore
from karate_scoring.state_machines import (
    SubjectState, is_ready_for_finalize, kata_performance_state, kumite_match_state
)

logger = logging.getLogger(__name__)

# Terminal kata round: rank -> place (3 and 4 share bronze)
TERMINAL_PLACES = {1: 1, 2: 2, 3: 3, 4: 3}


def _parse_discipline(discipline: Union[Discipline, str]) -> Discipline:
    try:
        return Discipline(discipline)
    except ValueError:
        raise ValidationError(
            f"Unknown discipline '{discipline}'",
            details={"allowed": [d.value for d in Discipline]}
        )


async def _list_round_performances(db: AsyncSession, category_id: int, round_label: str) -> List[KataPerformance]:
    result = await db.execute(
        select(KataPerformance)
        .where(
            and_(
                KataPerformance.category_id == category_id,
                KataPerformance.round_label == round_label
            )
        )
        .order_by(KataPerformance.performance_order, KataPerformance.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _existing_participants(db: AsyncSession, category_id: int, round_label: str, is_kata: bool) -> set:
    if is_kata:
        query = select(KataPerformance.participant_id).where(
            and_(
                KataPerformance.category_id == category_id,
                KataPerformance.round_label == round_label
            )
        )
    else:
        query = select(KumiteMatchParticipant.participant_id).where(
            and_(
                KumiteMatchParticipant.category_id == category_id,
                KumiteMatchParticipant.round_label == round_label
            )
        )
    result = await db.execute(query)
    return set(result.scalars().all())


async def _get_or_create_marker(
    db: AsyncSession,
    category_id: int,
    discipline: Discipline,
    round_label: str
) -> CompetitionRound:
    marker = await load_round(db, category_id, round_label, for_update=True)
    if marker is None:
        marker = CompetitionRound(
            category_id=category_id,
            discipline=discipline.value,
            round_label=round_label,
            status=RoundStatus.OPEN.value,
            judge_roster_json="[]",
        )
        db.add(marker)
        await db.flush()
        logger.info(f"[ROUND OPENED] category={category_id} round='{round_label}' discipline={discipline.value}")
    elif marker.discipline != discipline.value:
        raise ValidationError(
            f"Round '{round_label}' of category {category_id} is a {marker.discipline} round",
            details={"discipline": marker.discipline}
        )
    return marker


async def _create_round_entities(
    db: AsyncSession,
    marker: CompetitionRound,
    participant_ids: List[int],
) -> List[Union[KataPerformance, KumiteMatch]]:
    """
    Add the round's performances or matches to the session. No commit;
    callers own the transaction.
    """
    category_id, round_label = marker.category_id, marker.round_label
    discipline = marker.discipline_enum

    if marker.is_finalized:
        raise AlreadyFinalizedError(category_id, round_label)

    if not participant_ids:
        raise ValidationError("A round needs at least one participant")
    duplicates_in_request = sorted({pid for pid in participant_ids if participant_ids.count(pid) > 1})
    if duplicates_in_request:
        raise ValidationError(
            "Participant ids must be unique",
            details={"duplicates": duplicates_in_request}
        )

    existing = await _existing_participants(db, category_id, round_label, discipline.is_kata)
    already_present = sorted(existing.intersection(participant_ids))
    if already_present:
        raise ValidationError(
            f"Participant(s) already in round '{round_label}' of category {category_id}",
            details={"participant_ids": already_present}
        )

    created: List[Union[KataPerformance, KumiteMatch]] = []

    if discipline.is_kata:
        result = await db.execute(
            select(func.max(KataPerformance.performance_order)).where(
                and_(
                    KataPerformance.category_id == category_id,
                    KataPerformance.round_label == round_label
                )
            )
        )
        next_order = (result.scalar() or 0) + 1
        for offset, participant_id in enumerate(participant_ids):
            performance = KataPerformance(
                category_id=category_id,
                round_label=round_label,
                participant_id=participant_id,
                performance_order=next_order + offset,
            )
            performance.scores = []
            db.add(performance)
            created.append(performance)
        await db.flush()
        return created

    result = await db.execute(
        select(func.max(KumiteMatch.bout_number)).where(
            and_(
                KumiteMatch.category_id == category_id,
                KumiteMatch.round_label == round_label
            )
        )
    )
    next_bout = (result.scalar() or 0) + 1
    pairings = [participant_ids[i:i + 2] for i in range(0, len(participant_ids), 2)]
    for offset, pair in enumerate(pairings):
        match = KumiteMatch(
            category_id=category_id,
            round_label=round_label,
            bout_number=next_bout + offset,
            is_team=discipline.is_team,
            status=MatchStatus.SCHEDULED.value,
        )
        match.participants = [
            KumiteMatchParticipant(
                category_id=category_id,
                round_label=round_label,
                participant_id=participant_id,
                position=position,
            )
            for position, participant_id in enumerate(pair, start=1)
        ]
        match.tallies = []
        db.add(match)
        created.append(match)
    await db.flush()

    if FeatureFlags.FEATURE_AUTO_RESOLVE_BYES:
        now = datetime.utcnow()
        for match in created:
            if match.is_bye:
                complete_bye(match, now)
        await db.flush()

    return created


async def create_round(
    category_id: int,
    discipline: Union[Discipline, str],
    round_label: str,
    participant_ids: List[int],
    db: AsyncSession,
    judge_ids: Optional[List[int]] = None
) -> List[Union[KataPerformance, KumiteMatch]]:
    """
    Open (or extend) a round with the given participants.

    Raises:
        ValidationError: unknown discipline or kata round label, empty or
            duplicate participant list, participant already in the round
        AlreadyFinalizedError: the round is already finalized
    """
    discipline = _parse_discipline(discipline)
    round_label = (round_label or "").strip()
    if not round_label:
        raise ValidationError("Round label is required")
    if discipline.is_kata and round_label not in KATA_ROUND_LABELS:
        raise ValidationError(
            f"Unknown kata round '{round_label}'",
            details={"allowed": list(KATA_ROUND_LABELS)}
        )

    async with hold(round_key(category_id, round_label)):
        try:
            marker = await _get_or_create_marker(db, category_id, discipline, round_label)
            if judge_ids is not None:
                marker.judge_roster = judge_ids
            created = await _create_round_entities(db, marker, list(participant_ids))
            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except (IntegrityError, StaleDataError) as e:
            await db.rollback()
            logger.warning(f"[ROUND CREATE CONFLICT] category={category_id} round='{round_label}': {e}")
            raise ConcurrencyConflictError(
                f"Round '{round_label}' changed concurrently; retry",
                details={"category_id": category_id, "round": round_label}
            )

    logger.info(
        f"[ROUND CREATED] category={category_id} round='{round_label}' "
        f"entities={len(created)} participants={len(participant_ids)}"
    )
    return created


def _finalize_response(marker: CompetitionRound, already_finalized: bool) -> Dict[str, Any]:
    response = dict(marker.outcome or {})
    response["already_finalized"] = already_finalized
    response["checksum"] = marker.outcome_checksum
    response["finalized_at"] = marker.finalized_at.isoformat() if marker.finalized_at else None
    return response


async def _finalize_kata(
    db: AsyncSession,
    marker: CompetitionRound,
) -> Dict[str, Any]:
    category_id, round_label = marker.category_id, marker.round_label
    performances = await _list_round_performances(db, category_id, round_label)

    for performance in performances:
        await recompute_final_score(db, performance)

    missing = [p.id for p in performances if p.final_score is None]
    if missing:
        raise IncompleteRoundError(round_label, missing)

    ranked = rank_performances(performances)
    outcome: Dict[str, Any] = {
        "category_id": category_id,
        "round": round_label,
        "discipline": marker.discipline,
        "ranking": [
            {"participant_id": p.participant_id, "final_score": str(p.final_score)}
            for p in ranked
        ],
        "next_round": None,
        "advanced": [],
        "placements": [],
    }

    if round_label in KATA_ADVANCEMENT:
        next_label, required = KATA_ADVANCEMENT[round_label]
        if len(ranked) < required:
            raise InsufficientCandidatesError(round_label, required, len(ranked))
        advanced = [p.participant_id for p in ranked[:required]]

        next_marker = await _get_or_create_marker(db, category_id, marker.discipline_enum, next_label)
        if not next_marker.judge_roster and marker.judge_roster:
            next_marker.judge_roster = marker.judge_roster
        await _create_round_entities(db, next_marker, advanced)

        outcome["next_round"] = next_label
        outcome["advanced"] = advanced
        marker.next_round_label = next_label
    elif round_label == KATA_TERMINAL_ROUND:
        if not ranked:
            raise InsufficientCandidatesError(round_label, 1, 0)
        for rank, performance in enumerate(ranked, start=1):
            performance.place = TERMINAL_PLACES.get(rank)
            if performance.place is not None:
                outcome["placements"].append({
                    "participant_id": performance.participant_id,
                    "place": performance.place,
                    "medal": MEDALS[performance.place],
                    "final_score": str(performance.final_score),
                })
    return outcome


async def _finalize_kumite(db: AsyncSession, marker: CompetitionRound) -> Dict[str, Any]:
    matches = await list_round_matches(db, marker.category_id, marker.round_label)
    if not matches:
        raise InsufficientCandidatesError(marker.round_label, 1, 0)

    missing = [m.id for m in matches if m.status != MatchStatus.COMPLETED.value]
    if missing:
        raise IncompleteRoundError(marker.round_label, missing)

    return {
        "category_id": marker.category_id,
        "round": marker.round_label,
        "discipline": marker.discipline,
        "next_round": None,
        "advanced": [m.winner_participant_id for m in matches],
        "placements": [],
        "bouts": [
            {
                "match_id": m.id,
                "bout_number": m.bout_number,
                "winner_id": m.winner_participant_id,
                "reason": m.decision_reason,
            }
            for m in matches
        ],
    }


async def finalize_round(category_id: int, round_label: str, db: AsyncSession) -> Dict[str, Any]:
    """
    Finalize a round exactly once.

    Returns:
        {category_id, round, discipline, next_round, advanced, placements,
         already_finalized, checksum, finalized_at, ...}

    Raises:
        NotFoundError: no such round
        IncompleteRoundError: members not finalized (details.missing)
        InsufficientCandidatesError: fewer finalized performances than the cut
        AlreadyFinalizedError: repeat call with FEATURE_STRICT_FINALIZE on
        ConcurrencyConflictError: lock timeout or concurrent modification
    """
    marker = await require_round(db, category_id, round_label)
    keys = [round_key(category_id, round_label)]
    if round_label in KATA_ADVANCEMENT and marker.discipline_enum.is_kata:
        keys.append(round_key(category_id, KATA_ADVANCEMENT[round_label][0]))

    async with hold(*keys):
        try:
            marker = await require_round(db, category_id, round_label, for_update=True)

            if marker.is_finalized:
                logger.info(f"[FINALIZE REPEAT] category={category_id} round='{round_label}'")
                if FeatureFlags.FEATURE_STRICT_FINALIZE:
                    raise AlreadyFinalizedError(category_id, round_label)
                stored = _finalize_response(marker, already_finalized=True)
                # release the row lock taken by the re-read
                await db.rollback()
                return stored

            if marker.discipline_enum.is_kata:
                outcome = await _finalize_kata(db, marker)
            else:
                outcome = await _finalize_kumite(db, marker)

            marker.status = RoundStatus.FINALIZED.value
            marker.outcome_json = CompetitionRound.canonical_outcome(outcome)
            marker.outcome_checksum = marker.compute_outcome_checksum()
            marker.finalized_at = datetime.utcnow()

            await db.commit()
        except APIError as e:
            await db.rollback()
            logger.warning(
                f"[FINALIZE REJECTED] category={category_id} round='{round_label}': {e.code} {e.message}"
            )
            raise
        except (IntegrityError, StaleDataError) as e:
            await db.rollback()
            logger.warning(f"[FINALIZE CONFLICT] category={category_id} round='{round_label}': {e}")
            raise ConcurrencyConflictError(
                f"Round '{round_label}' changed concurrently; retry",
                details={"category_id": category_id, "round": round_label}
            )
        except asyncio.CancelledError:
            await db.rollback()
            raise

    logger.info(
        f"[ROUND FINALIZED] category={category_id} round='{round_label}' "
        f"next='{outcome['next_round']}' advanced={len(outcome['advanced'])} "
        f"placements={len(outcome['placements'])}"
    )
    return _finalize_response(marker, already_finalized=False)


async def get_round_status(category_id: int, round_label: str, db: AsyncSession) -> Dict[str, Any]:
    marker = await require_round(db, category_id, round_label)
    is_kata = marker.discipline_enum.is_kata

    members: List[Dict[str, Any]] = []
    if is_kata:
        for performance in await _list_round_performances(db, category_id, round_label):
            state = kata_performance_state(performance, marker.is_finalized)
            members.append({
                "id": performance.id,
                "participant_id": performance.participant_id,
                "state": state.value,
                "judge_count": len(performance.scores),
                "final_score": performance.final_score,
                "place": performance.place,
            })
    else:
        for match in await list_round_matches(db, category_id, round_label):
            state = kumite_match_state(match)
            members.append({
                "id": match.id,
                "participant_ids": match.participant_ids,
                "state": state.value,
                "status": match.status,
                "winner_id": match.winner_participant_id,
            })

    state_counts = {state.value: 0 for state in SubjectState}
    missing = []
    for member in members:
        state = SubjectState(member["state"])
        state_counts[state.value] += 1
        if not is_ready_for_finalize(state, is_kata):
            missing.append(member["id"])

    return {
        "category_id": category_id,
        "round": round_label,
        "discipline": marker.discipline,
        "status": marker.status,
        "judge_roster": marker.judge_roster,
        "member_count": len(members),
        "state_counts": state_counts,
        "ready_to_finalize": bool(members) and not missing and not marker.is_finalized,
        "missing": missing,
        "next_round": marker.next_round_label,
        "outcome": marker.outcome,
        "members": members,
    }


async def verify_round_integrity(category_id: int, round_label: str, db: AsyncSession) -> Dict[str, Any]:
    """Recompute the stored outcome checksum and compare the produced round's roster."""
    marker = await require_round(db, category_id, round_label)
    if not marker.is_finalized:
        return {
            "category_id": category_id,
            "round": round_label,
            "finalized": False,
            "valid": None,
        }

    computed = marker.compute_outcome_checksum()
    checksum_valid = computed == marker.outcome_checksum

    next_round_consistent = None
    outcome = marker.outcome or {}
    # A produced round deleted by an operator is not an integrity failure
    if marker.next_round_label and await load_round(db, category_id, marker.next_round_label):
        present = await _existing_participants(db, category_id, marker.next_round_label, is_kata=True)
        next_round_consistent = set(outcome.get("advanced", [])).issubset(present)

    valid = checksum_valid and next_round_consistent is not False
    if not valid:
        logger.error(
            f"[INTEGRITY FAILURE] category={category_id} round='{round_label}' "
            f"checksum_valid={checksum_valid} next_round_consistent={next_round_consistent}"
        )

    return {
        "category_id": category_id,
        "round": round_label,
        "finalized": True,
        "valid": valid,
        "checksum_valid": checksum_valid,
        "stored_checksum": marker.outcome_checksum,
        "computed_checksum": computed,
        "next_round_consistent": next_round_consistent,
    }


async def delete_round(category_id: int, round_label: str, db: AsyncSession) -> Dict[str, Any]:
    """
    Delete a round's performances/matches and its marker.

    A finalized round cannot be deleted while the round it produced still
    exists.
    """
    async with hold(round_key(category_id, round_label)):
        try:
            marker = await load_round(db, category_id, round_label, for_update=True)
            if marker is not None and marker.is_finalized and marker.next_round_label:
                produced = await load_round(db, category_id, marker.next_round_label)
                if produced is not None:
                    raise AlreadyFinalizedError(
                        category_id,
                        round_label,
                        message=(
                            f"Round '{round_label}' produced '{marker.next_round_label}'; "
                            f"delete that round first"
                        )
                    )

            removed = await ScoreStore.delete_round_subjects(db, category_id, round_label)
            if marker is None and removed == 0:
                raise NotFoundError(
                    "Round",
                    f"{category_id}/{round_label}",
                    code=ErrorCode.ROUND_NOT_FOUND
                )
            if marker is not None:
                await db.delete(marker)
            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except (IntegrityError, StaleDataError) as e:
            await db.rollback()
            raise ConcurrencyConflictError(
                f"Round '{round_label}' changed concurrently; retry",
                details={"category_id": category_id, "round": round_label, "reason": str(e)}
            )

    logger.info(f"[ROUND DELETED] category={category_id} round='{round_label}' removed={removed}")
    return {"category_id": category_id, "round": round_label, "removed": removed}
