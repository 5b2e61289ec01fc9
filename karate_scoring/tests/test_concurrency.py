"""
Concurrent callers, each on its own session:
- parallel finalize creates the next round exactly once
- parallel tally deltas lose no update
- parallel judge submissions all land
- lock timeouts and stale or duplicate writes surface as
  ConcurrencyConflictError
- a cancelled finalize leaves no partial next round
"""
import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from karate_scoring.config import settings
from karate_scoring.core import hold, round_key
from karate_scoring.exceptions import ConcurrencyConflictError
from karate_scoring.orm.competition_round import (
    CompetitionRound, Discipline, RoundStatus, KATA_FIRST_ROUND, KATA_FINAL_8
)
from karate_scoring.orm.kata import KataPerformance
from karate_scoring.services import kata_service, kumite_service, round_service
from karate_scoring.services.round_marker import load_round


async def _scored_first_round(db: AsyncSession, count: int = 9):
    performances = await round_service.create_round(
        1, Discipline.KATA, KATA_FIRST_ROUND, list(range(1, count + 1)), db
    )
    for performance_id in [p.id for p in performances]:
        for judge_id, value in enumerate([8.0, 8.5, 9.0], start=1):
            await kata_service.submit_kata_score(performance_id, judge_id, value, db)


@pytest.mark.asyncio
class TestConcurrentFinalize:

    async def test_parallel_finalize_creates_next_round_once(self, db: AsyncSession, session_factory):
        await _scored_first_round(db)

        async def finalize():
            async with session_factory() as session:
                return await round_service.finalize_round(1, KATA_FIRST_ROUND, session)

        outcomes = await asyncio.gather(*[finalize() for _ in range(5)])

        assert sorted(o["already_finalized"] for o in outcomes) == [False, True, True, True, True]
        assert len({o["checksum"] for o in outcomes}) == 1

        result = await db.execute(
            select(func.count(KataPerformance.id)).where(KataPerformance.round_label == KATA_FINAL_8)
        )
        assert result.scalar() == 8
        result = await db.execute(
            select(func.count(CompetitionRound.id)).where(CompetitionRound.round_label == KATA_FINAL_8)
        )
        assert result.scalar() == 1

    async def test_submission_racing_finalize_is_serialized(self, db: AsyncSession, session_factory):
        await _scored_first_round(db)
        result = await db.execute(select(KataPerformance.id).where(KataPerformance.participant_id == 9))
        last_id = result.scalar()

        async def finalize():
            async with session_factory() as session:
                return await round_service.finalize_round(1, KATA_FIRST_ROUND, session)

        async def late_score():
            async with session_factory() as session:
                try:
                    await kata_service.submit_kata_score(last_id, 1, 10.0, session)
                    return "accepted"
                except Exception as e:
                    return type(e).__name__

        outcome, submission = await asyncio.gather(finalize(), late_score())

        # Either the score landed before the freeze or it was rejected after it
        assert submission in ("accepted", "AlreadyFinalizedError")
        stored = {row["participant_id"]: row["final_score"] for row in outcome["ranking"]}
        performance = await kata_service.get_performance(last_id, db)
        assert str(performance.final_score) == stored[9]


@pytest.mark.asyncio
class TestConcurrentScoring:

    async def test_parallel_tally_deltas_are_not_lost(self, db: AsyncSession, session_factory):
        [match] = await round_service.create_round(3, Discipline.KUMITE, "Final", [1, 2], db)
        match_id = match.id

        async def add_yuko():
            async with session_factory() as session:
                await kumite_service.submit_kumite_tally(match_id, 1, "yuko", 1, session)

        await asyncio.gather(*[add_yuko() for _ in range(10)])

        match = await kumite_service.get_match(match_id, db)
        assert match.tally_for(1).yuko == 10

    async def test_parallel_judges_on_one_performance(self, db: AsyncSession, session_factory):
        [performance] = await round_service.create_round(
            1, Discipline.KATA, KATA_FIRST_ROUND, [1], db
        )
        performance_id = performance.id

        async def submit(judge_id, value):
            async with session_factory() as session:
                await kata_service.submit_kata_score(performance_id, judge_id, value, session)

        await asyncio.gather(*[
            submit(judge_id, value)
            for judge_id, value in enumerate([6.0, 7.0, 8.0, 9.0, 10.0], start=1)
        ])

        refreshed = await kata_service.get_performance(performance_id, db)
        assert len(refreshed.scores) == 5
        assert str(refreshed.final_score) == "24.00"


@pytest.mark.asyncio
class TestConflictsAndCancellation:

    async def test_lock_timeout_is_concurrency_conflict(self, db: AsyncSession, monkeypatch):
        await _scored_first_round(db)
        monkeypatch.setattr(settings, "LOCK_TIMEOUT_SECONDS", 0.05)

        async with hold(round_key(1, KATA_FIRST_ROUND)):
            with pytest.raises(ConcurrencyConflictError) as exc_info:
                await round_service.finalize_round(1, KATA_FIRST_ROUND, db)
        assert exc_info.value.code == "CONCURRENCY_CONFLICT"
        assert await load_round(db, 1, KATA_FINAL_8) is None

        # The timed-out waiter left no lock behind
        outcome = await round_service.finalize_round(1, KATA_FIRST_ROUND, db)
        assert outcome["next_round"] == KATA_FINAL_8

    async def test_released_lock_after_timeout_is_reusable(self):
        key = round_key(9, KATA_FIRST_ROUND)
        async with hold(key):
            with pytest.raises(ConcurrencyConflictError):
                async with hold(key, timeout=0.01):
                    pass

        async with hold(key, timeout=0.5):
            pass

    async def test_integrity_error_during_finalize_is_conflict(self, db: AsyncSession, monkeypatch):
        await _scored_first_round(db)

        async def duplicate_insert(db, marker, participant_ids):
            raise IntegrityError("INSERT INTO kata_performances", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(round_service, "_create_round_entities", duplicate_insert)

        with pytest.raises(ConcurrencyConflictError):
            await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

        marker = await load_round(db, 1, KATA_FIRST_ROUND)
        assert marker.status == RoundStatus.OPEN.value
        assert await load_round(db, 1, KATA_FINAL_8) is None

    async def test_stale_tally_is_conflict(self, db: AsyncSession, monkeypatch):
        [match] = await round_service.create_round(3, Discipline.KUMITE, "Final", [1, 2], db)
        match_id = match.id

        async def stale_tallies(db, match_id):
            raise StaleDataError("UPDATE statement on table 'kumite_tallies' expected to update 1 row(s)")

        monkeypatch.setattr(kumite_service, "_load_tallies", stale_tallies)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await kumite_service.submit_kumite_tally(match_id, 1, "yuko", 1, db)
        assert exc_info.value.details == {"match_id": match_id, "participant_id": 1}

    async def test_cancelled_finalize_leaves_no_next_round(
        self, db: AsyncSession, session_factory, monkeypatch
    ):
        await _scored_first_round(db)

        create_entities = round_service._create_round_entities
        entities_flushed = asyncio.Event()

        async def stall_after_create(db, marker, participant_ids):
            created = await create_entities(db, marker, participant_ids)
            entities_flushed.set()
            await asyncio.sleep(3600)
            return created

        monkeypatch.setattr(round_service, "_create_round_entities", stall_after_create)

        async def finalize():
            async with session_factory() as session:
                await round_service.finalize_round(1, KATA_FIRST_ROUND, session)

        task = asyncio.create_task(finalize())
        await asyncio.wait_for(entities_flushed.wait(), timeout=10)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        result = await db.execute(
            select(func.count(KataPerformance.id)).where(KataPerformance.round_label == KATA_FINAL_8)
        )
        assert result.scalar() == 0
        assert await load_round(db, 1, KATA_FINAL_8) is None
        assert (await load_round(db, 1, KATA_FIRST_ROUND)).status == RoundStatus.OPEN.value

        monkeypatch.setattr(round_service, "_create_round_entities", create_entities)
        outcome = await round_service.finalize_round(1, KATA_FIRST_ROUND, db)
        assert len(outcome["advanced"]) == 8
