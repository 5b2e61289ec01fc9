"""
Kumite Service

Live tally deltas, winner computation, manual decisions and match
lifecycle.

Tally model:
- One authoritative tally per (match, participant); the latest saved
  counts win, table workers are recorded for audit only
- A delta is validated against the current count under the match lock;
  a result below zero is rejected, never clamped
- Every accepted delta appends a KumiteTallyEvent
"""
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from karate_scoring.core import hold, match_key, round_key
from karate_scoring.errors import APIError, ErrorCode
from karate_scoring.exceptions import (
    ConcurrencyConflictError, IncompleteDataError, NotFoundError,
    StateTransitionError, TieError, ValidationError
)
from karate_scoring.orm.competition_round import Discipline
from karate_scoring.orm.kumite import (
    KumiteMatch, KumiteTally, KumiteTallyEvent,
    MatchStatus, DecisionReason, PenaltyCategory,
    POINT_FIELDS, PENALTY_FIELDS, TALLY_FIELDS
)
from karate_scoring.services.kumite_resolver import (
    KumiteDecision, TallySnapshot, resolve_bye, resolve_match, score_participant
)
from karate_scoring.services.round_marker import ensure_round_open, load_round
from karate_scoring.services.score_store import ScoreStore
from karate_scoring.state_machines import MatchStateMachine, kumite_match_state

logger = logging.getLogger(__name__)


async def _load_match(db: AsyncSession, match_id: int) -> KumiteMatch:
    result = await db.execute(
        select(KumiteMatch)
        .where(KumiteMatch.id == match_id)
        .execution_options(populate_existing=True)
    )
    match = result.scalar_one_or_none()
    if match is None:
        raise NotFoundError("Match", match_id, code=ErrorCode.MATCH_NOT_FOUND)
    return match


async def _load_tallies(db: AsyncSession, match_id: int) -> Dict[int, KumiteTally]:
    result = await db.execute(
        select(KumiteTally)
        .where(KumiteTally.match_id == match_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {t.participant_id: t for t in result.scalars().all()}


def tally_snapshot(tally: KumiteTally) -> TallySnapshot:
    return TallySnapshot.from_counts(tally.participant_id, tally.counts())


def _store_decision(match: KumiteMatch, decision: KumiteDecision, note: Optional[str] = None) -> None:
    record = decision.to_dict()
    record["scores"] = {pid: str(score) for pid, score in record["scores"].items()}
    if note:
        record["note"] = note
    match.winner_participant_id = decision.winner_id
    match.decision_reason = decision.reason.value
    match.result_json = json.dumps(record, sort_keys=True)


def _stored_decision(match: KumiteMatch) -> Dict[str, Any]:
    stored = match.result or {}
    return {
        "match_id": match.id,
        "winner_id": match.winner_participant_id,
        "reason": match.decision_reason,
        "scores": {pid: Decimal(score) for pid, score in stored.get("scores", {}).items()},
        "note": stored.get("note"),
        "status": match.status,
    }


def complete_bye(match: KumiteMatch, now: Optional[datetime] = None) -> None:
    """Resolve a single-participant match to its participant, no tally needed."""
    decision = resolve_bye(match.participant_ids[0])
    _store_decision(match, decision)
    MatchStateMachine.apply(match, MatchStatus.COMPLETED, at=now or datetime.utcnow())


def match_payload(match: KumiteMatch) -> Dict[str, Any]:
    payload = match.to_dict()
    payload["state"] = kumite_match_state(match).value
    payload["tallies"] = [t.to_dict() for t in match.tallies]
    payload["live_scores"] = {
        str(t.participant_id): score_participant(tally_snapshot(t)) for t in match.tallies
    }
    return payload


async def submit_kumite_tally(
    match_id: int,
    participant_id: int,
    field: str,
    amount: int,
    db: AsyncSession,
    category: Optional[PenaltyCategory] = None,
    recorded_by: Optional[int] = None
) -> KumiteTally:
    """
    Apply a +/- delta to one tally counter.

    Raises:
        ValidationError: unknown field or penalty category, zero amount,
            penalty category on a point field, unknown participant, bye
            match, or a resulting count below zero
        StateTransitionError: the match is already Completed
        ConcurrencyConflictError: lock timeout or concurrent write
    """
    if field not in TALLY_FIELDS:
        raise ValidationError(
            f"Unknown tally field '{field}'",
            details={"field": field, "allowed": list(TALLY_FIELDS)}
        )
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise ValidationError(f"Tally amount must be a non-zero integer, got {amount!r}")
    if category is not None and field in POINT_FIELDS:
        raise ValidationError(f"'{field}' is a point field and takes no penalty category")
    if category is not None:
        try:
            category = PenaltyCategory(category)
        except ValueError:
            raise ValidationError(
                f"Unknown penalty category '{category}'",
                details={"allowed": [c.value for c in PenaltyCategory]}
            )

    async with hold(match_key(match_id)):
        try:
            match = await _load_match(db, match_id)
            if match.is_bye:
                raise ValidationError(f"Match {match_id} is a bye and takes no tally")
            if participant_id not in match.participant_ids:
                raise ValidationError(
                    f"Participant {participant_id} is not in match {match_id}",
                    details={"participant_id": participant_id, "match_participants": match.participant_ids}
                )
            if match.is_completed:
                raise StateTransitionError(
                    f"Match {match_id} is completed; reopen it before changing tallies",
                    from_state=match.status
                )

            tallies = await _load_tallies(db, match_id)
            tally = tallies.get(participant_id)
            column = KumiteTally.column_for(field, category)
            current = getattr(tally, column) if tally is not None else 0
            resulting = current + amount
            if resulting < 0:
                raise ValidationError(
                    f"'{field}' for participant {participant_id} cannot go below zero",
                    details={"field": field, "current": current, "amount": amount}
                )

            if tally is None:
                tally = KumiteTally(match_id=match_id, participant_id=participant_id)
                for name in POINT_FIELDS:
                    setattr(tally, name, 0)
                for name in PENALTY_FIELDS:
                    for penalty_category in PenaltyCategory:
                        setattr(tally, KumiteTally.column_for(name, penalty_category), 0)
                db.add(tally)

            setattr(tally, column, resulting)
            if recorded_by is not None:
                tally.recorded_by = recorded_by
            db.add(KumiteTallyEvent(
                match_id=match_id,
                participant_id=participant_id,
                field=field,
                penalty_category=(category or PenaltyCategory.CONTACT).value if field in PENALTY_FIELDS else None,
                amount=amount,
                resulting_count=resulting,
                recorded_by=recorded_by,
                recorded_at=datetime.utcnow()
            ))

            if match.status == MatchStatus.SCHEDULED.value:
                MatchStateMachine.apply(match, MatchStatus.IN_PROGRESS, at=datetime.utcnow())

            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except (IntegrityError, StaleDataError) as e:
            await db.rollback()
            logger.warning(f"[TALLY CONFLICT] match={match_id} participant={participant_id}: {e}")
            raise ConcurrencyConflictError(
                "Tally changed concurrently; retry",
                details={"match_id": match_id, "participant_id": participant_id}
            )

    logger.info(
        f"[TALLY ACCEPTED] match={match_id} participant={participant_id} "
        f"{column} {amount:+d} -> {resulting}"
    )
    return tally


async def calculate_kumite_winner(match_id: int, db: AsyncSession) -> Dict[str, Any]:
    """
    Resolve and complete a match.

    A completed match returns its stored decision unchanged; recomputing
    with newer tallies requires an explicit reopen first.

    Raises:
        IncompleteDataError: a participant of a 2-participant match has no tally
        TieError: both scores are exactly equal (nothing is mutated)
    """
    async with hold(match_key(match_id)):
        try:
            match = await _load_match(db, match_id)
            if match.is_completed:
                return _stored_decision(match)

            now = datetime.utcnow()
            if match.is_bye:
                complete_bye(match, now)
            else:
                tallies = await _load_tallies(db, match_id)
                missing = [pid for pid in match.participant_ids if pid not in tallies]
                if missing:
                    raise IncompleteDataError(match_id, missing)

                decision = resolve_match([tally_snapshot(tallies[pid]) for pid in match.participant_ids])
                if decision.is_tie:
                    logger.warning(f"[TIE] match={match_id} scores={decision.scores}")
                    raise TieError(match_id, decision.scores)

                _store_decision(match, decision)
                MatchStateMachine.apply(match, MatchStatus.COMPLETED, at=now)

            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except (IntegrityError, StaleDataError) as e:
            await db.rollback()
            raise ConcurrencyConflictError(
                f"Match {match_id} changed concurrently; retry",
                details={"match_id": match_id, "reason": str(e)}
            )

    logger.info(
        f"[MATCH COMPLETED] match={match_id} winner={match.winner_participant_id} "
        f"reason={match.decision_reason}"
    )
    return _stored_decision(match)


async def declare_kumite_winner(
    match_id: int,
    participant_id: int,
    reason: Optional[str],
    db: AsyncSession
) -> Dict[str, Any]:
    """
    Record an explicit referee decision (hantei, walkover, disqualification).
    The only way to complete a tied match.
    """
    async with hold(match_key(match_id)):
        try:
            match = await _load_match(db, match_id)
            if participant_id not in match.participant_ids:
                raise ValidationError(
                    f"Participant {participant_id} is not in match {match_id}",
                    details={"participant_id": participant_id, "match_participants": match.participant_ids}
                )
            if match.is_completed:
                raise StateTransitionError(
                    f"Match {match_id} is already completed; reopen it before declaring a winner",
                    from_state=match.status,
                    to_state=MatchStatus.COMPLETED.value
                )

            tallies = await _load_tallies(db, match_id)
            scores = {
                pid: score_participant(tally_snapshot(t)) for pid, t in tallies.items()
            }
            decision = KumiteDecision(
                winner_id=participant_id,
                reason=DecisionReason.DECISION,
                scores=scores
            )
            _store_decision(match, decision, note=reason)
            MatchStateMachine.apply(match, MatchStatus.COMPLETED, at=datetime.utcnow())
            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except (IntegrityError, StaleDataError) as e:
            await db.rollback()
            raise ConcurrencyConflictError(
                f"Match {match_id} changed concurrently; retry",
                details={"match_id": match_id, "reason": str(e)}
            )

    logger.info(f"[MATCH DECIDED] match={match_id} winner={participant_id} note={reason!r}")
    return _stored_decision(match)


async def start_match(match_id: int, db: AsyncSession) -> KumiteMatch:
    async with hold(match_key(match_id)):
        try:
            match = await _load_match(db, match_id)
            MatchStateMachine.apply(match, MatchStatus.IN_PROGRESS, at=datetime.utcnow())
            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except StaleDataError as e:
            await db.rollback()
            raise ConcurrencyConflictError(
                f"Match {match_id} changed concurrently; retry",
                details={"match_id": match_id, "reason": str(e)}
            )
    return match


async def reopen_match(match_id: int, db: AsyncSession) -> KumiteMatch:
    """Completed -> In Progress, clearing the decision. Rejected once the round is finalized."""
    match = await _load_match(db, match_id)
    category_id, round_label = match.category_id, match.round_label

    async with hold(round_key(category_id, round_label), match_key(match_id)):
        try:
            marker = await load_round(db, category_id, round_label, for_update=True)
            ensure_round_open(marker, "reopen a match")
            match = await _load_match(db, match_id)
            if not match.is_completed:
                raise StateTransitionError(
                    f"Match {match_id} is not completed; nothing to reopen",
                    from_state=match.status,
                    to_state=MatchStatus.IN_PROGRESS.value
                )
            MatchStateMachine.apply(match, MatchStatus.IN_PROGRESS)
            match.winner_participant_id = None
            match.decision_reason = None
            match.result_json = None
            await db.commit()
        except APIError:
            await db.rollback()
            raise
        except StaleDataError as e:
            await db.rollback()
            raise ConcurrencyConflictError(
                f"Match {match_id} changed concurrently; retry",
                details={"match_id": match_id, "reason": str(e)}
            )

    logger.info(f"[MATCH REOPENED] match={match_id}")
    return match


async def get_match(match_id: int, db: AsyncSession) -> KumiteMatch:
    return await _load_match(db, match_id)


async def list_round_matches(db: AsyncSession, category_id: int, round_label: str) -> List[KumiteMatch]:
    result = await db.execute(
        select(KumiteMatch)
        .where(
            and_(
                KumiteMatch.category_id == category_id,
                KumiteMatch.round_label == round_label
            )
        )
        .order_by(KumiteMatch.bout_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def delete_match(match_id: int, db: AsyncSession) -> None:
    """Delete a match with its seats, tallies and audit rows."""
    match = await _load_match(db, match_id)
    category_id, round_label = match.category_id, match.round_label

    async with hold(round_key(category_id, round_label), match_key(match_id)):
        try:
            marker = await load_round(db, category_id, round_label, for_update=True)
            ensure_round_open(marker, "delete a match")
            await ScoreStore.delete_subject(db, match_id, Discipline.KUMITE)
            await db.commit()
        except APIError:
            await db.rollback()
            raise

    logger.info(f"[MATCH DELETED] id={match_id} round='{round_label}'")
