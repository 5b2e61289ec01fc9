"""
Category Reports

Read-only summaries of a category's rounds:
- Kata: per round, ranked performances with judge scores, places, medals
- Kumite: per round, bouts with resolved scores, winners, advanced
  participants, plus final rankings derived from the last two rounds
"""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from karate_scoring.orm.competition_round import CompetitionRound, KATA_ROUND_LABELS
from karate_scoring.orm.kata import KataPerformance, MEDALS
from karate_scoring.orm.kumite import KumiteMatch
from karate_scoring.services.kata_service import rank_performances
from karate_scoring.services.kumite_service import match_payload


async def _category_markers(db: AsyncSession, category_id: int) -> List[CompetitionRound]:
    result = await db.execute(
        select(CompetitionRound)
        .where(CompetitionRound.category_id == category_id)
        .order_by(CompetitionRound.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def build_kata_report(category_id: int, db: AsyncSession) -> Dict[str, Any]:
    markers = {m.round_label: m for m in await _category_markers(db, category_id)}
    result = await db.execute(
        select(KataPerformance)
        .where(KataPerformance.category_id == category_id)
        .execution_options(populate_existing=True)
    )
    by_round: Dict[str, List[KataPerformance]] = {}
    for performance in result.scalars().all():
        by_round.setdefault(performance.round_label, []).append(performance)

    rounds = []
    final_rankings = []
    for label in KATA_ROUND_LABELS:
        if label not in by_round:
            continue
        scored = [p for p in by_round[label] if p.final_score is not None]
        unscored = sorted(
            (p for p in by_round[label] if p.final_score is None),
            key=lambda p: (p.performance_order, p.id)
        )
        players = []
        for performance in rank_performances(scored) + unscored:
            players.append({
                "participant_id": performance.participant_id,
                "performance_order": performance.performance_order,
                "final_score": performance.final_score,
                "place": performance.place,
                "medal": performance.medal,
                "scores": [
                    {"judge_id": s.judge_id, "score": s.value} for s in performance.scores
                ],
            })
            if performance.place is not None:
                final_rankings.append({
                    "place": performance.place,
                    "participant_id": performance.participant_id,
                    "medal": performance.medal,
                })
        marker = markers.get(label)
        rounds.append({
            "round": label,
            "status": marker.status if marker else None,
            "players": players,
        })

    return {
        "category_id": category_id,
        "discipline": "Kata",
        "generated_at": datetime.utcnow().isoformat(),
        "rounds": rounds,
        "final_rankings": sorted(final_rankings, key=lambda r: (r["place"], r["participant_id"])),
    }


def _losers(match: KumiteMatch) -> List[int]:
    if match.winner_participant_id is None or match.is_bye:
        return []
    return [pid for pid in match.participant_ids if pid != match.winner_participant_id]


def _kumite_final_rankings(rounds: List[Dict[str, Any]], matches_by_round: Dict[str, List[KumiteMatch]]) -> List[Dict[str, Any]]:
    """
    Gold/Silver from a last round consisting of one decided bout; Bronze
    for the losers of the round before it.
    """
    if not rounds:
        return []
    final_matches = matches_by_round.get(rounds[-1]["round"], [])
    if len(final_matches) != 1:
        return []
    final = final_matches[0]
    if final.is_bye or final.winner_participant_id is None:
        return []

    rankings = [{"place": 1, "participant_id": final.winner_participant_id, "medal": MEDALS[1]}]
    rankings.extend(
        {"place": 2, "participant_id": pid, "medal": MEDALS[2]} for pid in _losers(final)
    )
    if len(rounds) > 1:
        for match in matches_by_round.get(rounds[-2]["round"], []):
            rankings.extend(
                {"place": 3, "participant_id": pid, "medal": MEDALS[3]} for pid in _losers(match)
            )
    return rankings


async def build_kumite_report(category_id: int, db: AsyncSession) -> Dict[str, Any]:
    markers = await _category_markers(db, category_id)
    result = await db.execute(
        select(KumiteMatch)
        .where(KumiteMatch.category_id == category_id)
        .order_by(KumiteMatch.bout_number)
        .execution_options(populate_existing=True)
    )
    matches_by_round: Dict[str, List[KumiteMatch]] = {}
    for match in result.scalars().all():
        matches_by_round.setdefault(match.round_label, []).append(match)

    ordered_labels = [m.round_label for m in markers if m.round_label in matches_by_round]
    ordered_labels += sorted(label for label in matches_by_round if label not in ordered_labels)
    marker_status = {m.round_label: m.status for m in markers}

    rounds = []
    for label in ordered_labels:
        matches = matches_by_round[label]
        rounds.append({
            "round": label,
            "status": marker_status.get(label),
            "matches": [match_payload(m) for m in matches],
            "advanced": [m.winner_participant_id for m in matches if m.winner_participant_id is not None],
        })

    return {
        "category_id": category_id,
        "discipline": "Kumite",
        "generated_at": datetime.utcnow().isoformat(),
        "rounds": rounds,
        "final_rankings": _kumite_final_rankings(rounds, matches_by_round),
    }
