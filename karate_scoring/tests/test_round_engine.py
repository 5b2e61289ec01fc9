"""
Round Advancement Controller

- Round creation (kata running order, kumite pairings and byes)
- Completeness gate and insufficient-candidate rejection
- Top-N advancement with deterministic tie-break
- Terminal placements with shared bronze
- Idempotent finalize (no duplicate next round)
- Status, integrity checksum and deletion guards
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from karate_scoring.config import FeatureFlags
from karate_scoring.exceptions import (
    AlreadyFinalizedError, IncompleteRoundError, InsufficientCandidatesError,
    NotFoundError, ValidationError
)
from karate_scoring.orm.competition_round import (
    CompetitionRound, Discipline, RoundStatus,
    KATA_FIRST_ROUND, KATA_FINAL_8, KATA_FINAL_4
)
from karate_scoring.orm.kata import KataPerformance
from karate_scoring.orm.kumite import MatchStatus
from karate_scoring.services import kata_service, kumite_service, round_service
from karate_scoring.services.round_marker import load_round


async def score(db: AsyncSession, performance_id: int, values):
    for judge_id, value in enumerate(values, start=1):
        await kata_service.submit_kata_score(performance_id, judge_id, value, db)


async def round_participants(db: AsyncSession, category_id: int, round_label: str):
    result = await db.execute(
        select(KataPerformance.participant_id)
        .where(KataPerformance.category_id == category_id, KataPerformance.round_label == round_label)
        .order_by(KataPerformance.performance_order)
    )
    return list(result.scalars().all())


async def count_performances(db: AsyncSession, category_id: int, round_label: str) -> int:
    result = await db.execute(
        select(func.count(KataPerformance.id))
        .where(KataPerformance.category_id == category_id, KataPerformance.round_label == round_label)
    )
    return result.scalar()


# Three equal-weight judge sets producing exact trimmed sums
TRIPLES = {
    30: [10.0, 10.0, 10.0],
    29: [10.0, 10.0, 9.0],
    28: [10.0, 9.0, 9.0],
    27: [9.0, 9.0, 9.0],
    26: [9.0, 9.0, 8.0],
    25: [9.0, 8.0, 8.0],
    24: [8.0, 8.0, 8.0],
    23: [8.0, 8.0, 7.0],
}


async def build_scored_round(db: AsyncSession, category_id: int, round_label: str, finals):
    """Open a kata round with one participant per final (ids 1..n) and score it."""
    participant_ids = list(range(1, len(finals) + 1))
    performances = await round_service.create_round(
        category_id, Discipline.KATA, round_label, participant_ids, db
    )
    ids = [p.id for p in performances]
    for performance_id, final in zip(ids, finals):
        await score(db, performance_id, TRIPLES[final])
    return participant_ids


@pytest.mark.asyncio
class TestCreateRound:

    async def test_kata_running_order(self, db: AsyncSession):
        performances = await round_service.create_round(
            1, Discipline.KATA, KATA_FIRST_ROUND, [30, 10, 20], db
        )
        assert [p.participant_id for p in performances] == [30, 10, 20]
        assert [p.performance_order for p in performances] == [1, 2, 3]

        marker = await load_round(db, 1, KATA_FIRST_ROUND)
        assert marker.status == RoundStatus.OPEN.value

    async def test_extending_round_continues_order(self, db: AsyncSession):
        await round_service.create_round(1, Discipline.KATA, KATA_FIRST_ROUND, [1, 2], db)
        [late] = await round_service.create_round(1, Discipline.KATA, KATA_FIRST_ROUND, [3], db)
        assert late.performance_order == 3

    async def test_participant_already_in_round(self, db: AsyncSession):
        await round_service.create_round(1, Discipline.KATA, KATA_FIRST_ROUND, [1, 2], db)
        with pytest.raises(ValidationError) as exc_info:
            await round_service.create_round(1, Discipline.KATA, KATA_FIRST_ROUND, [2, 3], db)
        assert exc_info.value.details["participant_ids"] == [2]
        assert await count_performances(db, 1, KATA_FIRST_ROUND) == 2

    async def test_same_participant_allowed_in_other_category(self, db: AsyncSession):
        await round_service.create_round(1, Discipline.KATA, KATA_FIRST_ROUND, [1], db)
        [other] = await round_service.create_round(2, Discipline.KATA, KATA_FIRST_ROUND, [1], db)
        assert other.category_id == 2

    @pytest.mark.parametrize("participant_ids", [[], [1, 1]])
    async def test_invalid_participant_lists(self, db: AsyncSession, participant_ids):
        with pytest.raises(ValidationError):
            await round_service.create_round(1, Discipline.KATA, KATA_FIRST_ROUND, participant_ids, db)

    async def test_unknown_kata_round_label(self, db: AsyncSession):
        with pytest.raises(ValidationError):
            await round_service.create_round(1, Discipline.KATA, "Quarterfinal", [1], db)

    async def test_unknown_discipline(self, db: AsyncSession):
        with pytest.raises(ValidationError):
            await round_service.create_round(1, "Tameshiwari", KATA_FIRST_ROUND, [1], db)

    async def test_discipline_mismatch(self, db: AsyncSession):
        await round_service.create_round(1, Discipline.KUMITE, "Preliminary", [1, 2], db)
        with pytest.raises(ValidationError):
            await round_service.create_round(1, Discipline.TEAM_KUMITE, "Preliminary", [3, 4], db)

    async def test_kumite_pairs_with_trailing_bye(self, db: AsyncSession):
        matches = await round_service.create_round(
            5, Discipline.KUMITE, "Preliminary", [11, 12, 13, 14, 15], db
        )
        assert [m.participant_ids for m in matches] == [[11, 12], [13, 14], [15]]
        assert [m.bout_number for m in matches] == [1, 2, 3]
        bye = matches[-1]
        assert bye.is_bye
        assert bye.status == MatchStatus.COMPLETED.value
        assert bye.winner_participant_id == 15
        assert bye.decision_reason == "bye"

    async def test_bye_left_scheduled_when_auto_resolve_off(self, db: AsyncSession, monkeypatch):
        monkeypatch.setattr(FeatureFlags, "FEATURE_AUTO_RESOLVE_BYES", False)
        matches = await round_service.create_round(5, Discipline.KUMITE, "Preliminary", [1, 2, 3], db)
        assert matches[-1].status == MatchStatus.SCHEDULED.value

    async def test_team_kumite_flag(self, db: AsyncSession):
        [match] = await round_service.create_round(5, Discipline.TEAM_KUMITE, "Final", [1, 2], db)
        assert match.is_team is True

    async def test_roster_stored(self, db: AsyncSession):
        await round_service.create_round(
            1, Discipline.KATA, KATA_FIRST_ROUND, [1], db, judge_ids=[3, 1, 2, 1]
        )
        marker = await load_round(db, 1, KATA_FIRST_ROUND)
        assert marker.judge_roster == [1, 2, 3]


@pytest.mark.asyncio
class TestFinalizeKata:

    async def test_ten_performance_scenario(self, db: AsyncSession):
        participant_ids = list(range(101, 111))
        performances = await round_service.create_round(
            1, Discipline.KATA, KATA_FIRST_ROUND, participant_ids, db
        )
        ids = [p.id for p in performances]
        for index, performance_id in enumerate(ids):
            values = [6.0 + 0.3 * index + 0.1 * judge for judge in range(5)]
            await score(db, performance_id, values)

        outcome = await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

        assert outcome["next_round"] == KATA_FINAL_8
        assert outcome["already_finalized"] is False
        assert len(outcome["advanced"]) == 8
        advanced = await round_participants(db, 1, KATA_FINAL_8)
        assert len(advanced) == 8
        assert 101 not in advanced and 102 not in advanced
        # Final 8 running order follows the First Round ranking
        assert advanced == list(range(110, 102, -1))

    async def test_completeness_gate_mutates_nothing(self, db: AsyncSession):
        performances = await round_service.create_round(
            1, Discipline.KATA, KATA_FIRST_ROUND, list(range(1, 11)), db
        )
        ids = [p.id for p in performances]
        for performance_id in ids[:9]:
            await score(db, performance_id, [8.0, 8.0, 8.0])
        await score(db, ids[9], [8.0, 8.0])

        with pytest.raises(IncompleteRoundError) as exc_info:
            await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

        assert exc_info.value.missing == [ids[9]]
        assert exc_info.value.details["missing"] == [ids[9]]
        assert await count_performances(db, 1, KATA_FINAL_8) == 0
        assert await load_round(db, 1, KATA_FINAL_8) is None
        marker = await load_round(db, 1, KATA_FIRST_ROUND)
        assert marker.status == RoundStatus.OPEN.value

    async def test_insufficient_candidates(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FIRST_ROUND, [30, 29, 28, 27, 26, 25])

        with pytest.raises(InsufficientCandidatesError) as exc_info:
            await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

        assert exc_info.value.required == 8
        assert exc_info.value.available == 6
        assert await count_performances(db, 1, KATA_FINAL_8) == 0
        assert (await load_round(db, 1, KATA_FIRST_ROUND)).status == RoundStatus.OPEN.value

    async def test_top_eight_excludes_lowest(self, db: AsyncSession):
        participant_ids = await build_scored_round(
            db, 1, KATA_FIRST_ROUND, [30, 29, 29, 28, 27, 26, 25, 24, 23]
        )
        outcome = await round_service.finalize_round(1, KATA_FIRST_ROUND, db)
        assert participant_ids[-1] not in outcome["advanced"]
        assert set(outcome["advanced"]) == set(participant_ids[:-1])

    async def test_tie_at_cut_broken_by_performance_order(self, db: AsyncSession):
        # participants 7, 8 and 9 all finish on 24; only one of them is cut
        await build_scored_round(db, 1, KATA_FIRST_ROUND, [30, 29, 28, 27, 26, 25, 24, 24, 24])
        outcome = await round_service.finalize_round(1, KATA_FIRST_ROUND, db)
        assert outcome["advanced"] == [1, 2, 3, 4, 5, 6, 7, 8]

    async def test_tie_rule_is_consistent_across_categories(self, db: AsyncSession):
        finals = [24, 24, 24, 24, 24, 24, 24, 24, 24, 24]
        await build_scored_round(db, 1, KATA_FIRST_ROUND, finals)
        await build_scored_round(db, 2, KATA_FIRST_ROUND, finals)
        first = await round_service.finalize_round(1, KATA_FIRST_ROUND, db)
        second = await round_service.finalize_round(2, KATA_FIRST_ROUND, db)
        assert first["advanced"] == second["advanced"] == list(range(1, 9))

    async def test_repeat_finalize_is_noop(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FIRST_ROUND, [30, 29, 28, 27, 26, 25, 24, 23, 23])

        first = await round_service.finalize_round(1, KATA_FIRST_ROUND, db)
        second = await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

        assert second["already_finalized"] is True
        assert second["advanced"] == first["advanced"]
        assert second["checksum"] == first["checksum"]
        assert await count_performances(db, 1, KATA_FINAL_8) == 8

    async def test_repeat_finalize_ends_its_transaction(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FINAL_4, [30, 29, 28, 27])
        await round_service.finalize_round(1, KATA_FINAL_4, db)

        repeat = await round_service.finalize_round(1, KATA_FINAL_4, db)

        assert repeat["already_finalized"] is True
        assert [p["place"] for p in repeat["placements"]] == [1, 2, 3, 3]
        assert not db.in_transaction()

    async def test_repeat_finalize_strict_mode(self, db: AsyncSession, monkeypatch):
        await build_scored_round(db, 1, KATA_FINAL_4, [30, 29, 28, 27])
        await round_service.finalize_round(1, KATA_FINAL_4, db)

        monkeypatch.setattr(FeatureFlags, "FEATURE_STRICT_FINALIZE", True)
        with pytest.raises(AlreadyFinalizedError):
            await round_service.finalize_round(1, KATA_FINAL_4, db)

    async def test_final_8_to_final_4(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FINAL_8, [23, 24, 25, 26, 27, 28, 29, 30])
        outcome = await round_service.finalize_round(1, KATA_FINAL_8, db)

        assert outcome["next_round"] == KATA_FINAL_4
        assert outcome["advanced"] == [8, 7, 6, 5]
        assert await round_participants(db, 1, KATA_FINAL_4) == [8, 7, 6, 5]

    async def test_terminal_round_shared_bronze(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FINAL_4, [27, 30, 28, 29])
        outcome = await round_service.finalize_round(1, KATA_FINAL_4, db)

        assert outcome["next_round"] is None
        placements = {p["participant_id"]: (p["place"], p["medal"]) for p in outcome["placements"]}
        assert placements == {
            2: (1, "Gold"),
            4: (2, "Silver"),
            3: (3, "Bronze"),
            1: (3, "Bronze"),
        }

        result = await db.execute(
            select(KataPerformance.participant_id, KataPerformance.place)
            .where(KataPerformance.round_label == KATA_FINAL_4)
        )
        assert dict(result.all()) == {1: 3, 2: 1, 3: 3, 4: 2}

        rounds = await db.execute(select(func.count(CompetitionRound.id)))
        assert rounds.scalar() == 1

    async def test_terminal_round_fifth_gets_no_place(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FINAL_4, [30, 29, 28, 27, 26])
        outcome = await round_service.finalize_round(1, KATA_FINAL_4, db)
        assert [p["participant_id"] for p in outcome["placements"]] == [1, 2, 3, 4]

        result = await db.execute(
            select(KataPerformance.place).where(KataPerformance.participant_id == 5)
        )
        assert result.scalar() is None

    async def test_roster_carried_to_next_round(self, db: AsyncSession):
        performances = await round_service.create_round(
            1, Discipline.KATA, KATA_FIRST_ROUND, list(range(1, 9)), db, judge_ids=[1, 2, 3]
        )
        for performance_id in [p.id for p in performances]:
            await score(db, performance_id, [8.0, 8.0, 8.0])
        await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

        assert (await load_round(db, 1, KATA_FINAL_8)).judge_roster == [1, 2, 3]

    async def test_finalize_unknown_round(self, db: AsyncSession):
        with pytest.raises(NotFoundError):
            await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

    async def test_full_ladder(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FIRST_ROUND, [30, 29, 28, 27, 26, 25, 24, 23, 23, 23])
        await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

        result = await db.execute(
            select(KataPerformance.id)
            .where(KataPerformance.category_id == 1, KataPerformance.round_label == KATA_FINAL_8)
            .order_by(KataPerformance.performance_order)
        )
        final8_ids = list(result.scalars().all())
        for performance_id, final in zip(final8_ids, [23, 24, 25, 26, 27, 28, 29, 30]):
            await score(db, performance_id, TRIPLES[final])
        outcome8 = await round_service.finalize_round(1, KATA_FINAL_8, db)
        assert outcome8["advanced"] == [8, 7, 6, 5]

        result = await db.execute(
            select(KataPerformance.id)
            .where(KataPerformance.category_id == 1, KataPerformance.round_label == KATA_FINAL_4)
            .order_by(KataPerformance.performance_order)
        )
        for performance_id, final in zip(result.scalars().all(), [27, 28, 29, 30]):
            await score(db, performance_id, TRIPLES[final])
        outcome4 = await round_service.finalize_round(1, KATA_FINAL_4, db)

        assert [(p["participant_id"], p["place"]) for p in outcome4["placements"]] == [
            (5, 1), (6, 2), (7, 3), (8, 3)
        ]


@pytest.mark.asyncio
class TestFinalizeKumite:

    async def test_incomplete_matches_block_finalize(self, db: AsyncSession):
        matches = await round_service.create_round(5, Discipline.KUMITE, "Preliminary", [1, 2, 3], db)
        open_match_id = matches[0].id
        with pytest.raises(IncompleteRoundError) as exc_info:
            await round_service.finalize_round(5, "Preliminary", db)
        assert exc_info.value.missing == [open_match_id]

    async def test_winners_exposed_in_bout_order(self, db: AsyncSession):
        matches = await round_service.create_round(5, Discipline.KUMITE, "Preliminary", [1, 2, 3, 4, 5], db)
        first_id, second_id = matches[0].id, matches[1].id

        await kumite_service.submit_kumite_tally(first_id, 1, "ippon", 1, db)
        await kumite_service.submit_kumite_tally(first_id, 2, "yuko", 1, db)
        await kumite_service.calculate_kumite_winner(first_id, db)

        await kumite_service.submit_kumite_tally(second_id, 3, "yuko", 1, db)
        await kumite_service.submit_kumite_tally(second_id, 4, "waza_ari", 1, db)
        await kumite_service.calculate_kumite_winner(second_id, db)

        outcome = await round_service.finalize_round(5, "Preliminary", db)
        assert outcome["advanced"] == [1, 4, 5]
        assert outcome["next_round"] is None
        assert [b["reason"] for b in outcome["bouts"]] == ["points", "points", "bye"]


@pytest.mark.asyncio
class TestStatusIntegrityDelete:

    async def test_round_status_counts(self, db: AsyncSession):
        performances = await round_service.create_round(
            1, Discipline.KATA, KATA_FIRST_ROUND, [1, 2, 3], db
        )
        ids = [p.id for p in performances]
        await score(db, ids[0], [8.0, 8.0, 8.0])
        await score(db, ids[1], [8.0])

        status = await round_service.get_round_status(1, KATA_FIRST_ROUND, db)
        assert status["state_counts"] == {
            "open": 1, "partially_scored": 1, "decidable": 1, "finalized": 0
        }
        assert status["missing"] == [ids[1], ids[2]]
        assert status["ready_to_finalize"] is False

    async def test_integrity_valid_then_tampered(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FINAL_4, [30, 29, 28, 27])
        await round_service.finalize_round(1, KATA_FINAL_4, db)

        report = await round_service.verify_round_integrity(1, KATA_FINAL_4, db)
        assert report["valid"] is True

        await db.execute(
            update(CompetitionRound)
            .where(CompetitionRound.round_label == KATA_FINAL_4)
            .values(outcome_json='{"placements":[]}')
        )
        await db.commit()

        report = await round_service.verify_round_integrity(1, KATA_FINAL_4, db)
        assert report["valid"] is False
        assert report["checksum_valid"] is False

    async def test_integrity_of_open_round(self, db: AsyncSession):
        await round_service.create_round(1, Discipline.KATA, KATA_FIRST_ROUND, [1], db)
        report = await round_service.verify_round_integrity(1, KATA_FIRST_ROUND, db)
        assert report["finalized"] is False
        assert report["valid"] is None

    async def test_delete_finalized_round_requires_produced_round_gone(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FIRST_ROUND, [30, 29, 28, 27, 26, 25, 24, 23])
        await round_service.finalize_round(1, KATA_FIRST_ROUND, db)

        with pytest.raises(AlreadyFinalizedError):
            await round_service.delete_round(1, KATA_FIRST_ROUND, db)

        removed = await round_service.delete_round(1, KATA_FINAL_8, db)
        assert removed["removed"] == 8

        removed = await round_service.delete_round(1, KATA_FIRST_ROUND, db)
        assert removed["removed"] == 8
        assert await load_round(db, 1, KATA_FIRST_ROUND) is None

    async def test_delete_member_of_finalized_round_rejected(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FINAL_4, [30, 29, 28, 27])
        await round_service.finalize_round(1, KATA_FINAL_4, db)
        result = await db.execute(select(KataPerformance.id).where(KataPerformance.participant_id == 1))
        performance_id = result.scalar()

        with pytest.raises(AlreadyFinalizedError):
            await kata_service.delete_performance(performance_id, db)

    async def test_delete_unknown_round(self, db: AsyncSession):
        with pytest.raises(NotFoundError):
            await round_service.delete_round(1, KATA_FIRST_ROUND, db)

    async def test_finalized_score_rounds_are_decimal(self, db: AsyncSession):
        await build_scored_round(db, 1, KATA_FINAL_4, [30, 29])
        outcome = await round_service.finalize_round(1, KATA_FINAL_4, db)
        assert [Decimal(r["final_score"]) for r in outcome["ranking"]] == [Decimal("30"), Decimal("29")]
