"""
Competition Round ORM Model

A round is the set of all performances or matches sharing a
(category, round label) pair. This table is the persisted marker for that
partition:
- One row per (category_id, round_label), enforced by a unique constraint
- Holds the judge roster assigned to the round
- Flips to FINALIZED exactly once; the stored outcome is immutable afterwards
- Optimistic version column guards the OPEN -> FINALIZED transition
"""
import enum
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Text,
    UniqueConstraint, Index, CheckConstraint
)

from karate_scoring.orm.base import TimestampedModel


class Discipline(str, enum.Enum):
    """Category discipline as supplied by the tournament collaborator."""
    KATA = "Kata"
    KUMITE = "Kumite"
    TEAM_KATA = "Team Kata"
    TEAM_KUMITE = "Team Kumite"

    @property
    def is_kata(self) -> bool:
        return self in (Discipline.KATA, Discipline.TEAM_KATA)

    @property
    def is_team(self) -> bool:
        return self in (Discipline.TEAM_KATA, Discipline.TEAM_KUMITE)


class RoundStatus(str, enum.Enum):
    OPEN = "open"
    FINALIZED = "finalized"


# Kata elimination ladder
KATA_FIRST_ROUND = "First Round"
KATA_FINAL_8 = "Second Round (Final 8)"
KATA_FINAL_4 = "Third Round (Final 4)"

KATA_ROUND_LABELS = (KATA_FIRST_ROUND, KATA_FINAL_8, KATA_FINAL_4)

# round label -> (next round label, number of performances that advance)
KATA_ADVANCEMENT = {
    KATA_FIRST_ROUND: (KATA_FINAL_8, 8),
    KATA_FINAL_8: (KATA_FINAL_4, 4),
}

KATA_TERMINAL_ROUND = KATA_FINAL_4


class CompetitionRound(TimestampedModel):
    """
    Persisted round marker.

    Created by the first create_round call for a (category, round label)
    and locked by finalize_round for its whole validate-then-create
    sequence.
    """
    __tablename__ = "competition_rounds"

    category_id = Column(Integer, nullable=False, index=True)
    discipline = Column(String(20), nullable=False)
    round_label = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=RoundStatus.OPEN.value)

    # Assigned judge roster, JSON list of judge ids (empty list = no roster)
    judge_roster_json = Column(Text, nullable=False, default="[]")

    # Set when this round's finalization created the next round
    next_round_label = Column(String(64), nullable=True)

    # Finalization outcome (advanced ids / placements), canonical JSON
    outcome_json = Column(Text, nullable=True)
    outcome_checksum = Column(String(64), nullable=True)
    finalized_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("category_id", "round_label", name="uq_round_category_label"),
        Index("idx_round_status", "status"),
        CheckConstraint(
            "status IN ('open', 'finalized')",
            name="ck_round_status_valid"
        ),
        CheckConstraint(
            "discipline IN ('Kata', 'Kumite', 'Team Kata', 'Team Kumite')",
            name="ck_round_discipline_valid"
        ),
    )

    @property
    def discipline_enum(self) -> Discipline:
        return Discipline(self.discipline)

    @property
    def is_finalized(self) -> bool:
        return self.status == RoundStatus.FINALIZED.value

    @property
    def judge_roster(self) -> List[int]:
        return json.loads(self.judge_roster_json or "[]")

    @judge_roster.setter
    def judge_roster(self, judge_ids: List[int]) -> None:
        self.judge_roster_json = json.dumps(sorted(set(judge_ids)))

    @property
    def outcome(self) -> Optional[Dict[str, Any]]:
        if not self.outcome_json:
            return None
        return json.loads(self.outcome_json)

    @staticmethod
    def canonical_outcome(outcome: Dict[str, Any]) -> str:
        return json.dumps(outcome, sort_keys=True, separators=(",", ":"))

    def compute_outcome_checksum(self) -> str:
        """
        SHA256 over the round identity and the canonical outcome JSON.
        """
        payload = {
            "category_id": self.category_id,
            "round_label": self.round_label,
            "outcome": self.outcome_json or "",
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def __repr__(self) -> str:
        return (
            f"<CompetitionRound category={self.category_id} "
            f"round='{self.round_label}' status={self.status}>"
        )
