"""
Kumite ORM Models

- KumiteMatch: head-to-head pairing (or bye) inside one round of one category
- KumiteMatchParticipant: ordered seat in a match (position 1 = aka, 2 = ao)
- KumiteTally: single authoritative live tally per (match, participant)
- KumiteTallyEvent: append-only record of every accepted tally delta

Match status flow: Scheduled -> In Progress -> Completed.
Completed -> In Progress only through an explicit reopen.
"""
import enum
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Boolean, Text,
    UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import relationship

from karate_scoring.orm.base import TimestampedModel


class MatchStatus(str, enum.Enum):
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"


class DecisionReason(str, enum.Enum):
    POINTS = "points"
    BYE = "bye"
    DECISION = "decision"


class PenaltyCategory(str, enum.Enum):
    """Display/audit partition only; both categories deduct identically."""
    CONTACT = "contact"
    CONDUCT = "conduct"


POINT_FIELDS = ("yuko", "waza_ari", "ippon")
PENALTY_FIELDS = ("chukoku", "keikoku", "hansoku_chui", "hansoku", "jogai")
TALLY_FIELDS = POINT_FIELDS + PENALTY_FIELDS


class KumiteMatch(TimestampedModel):
    __tablename__ = "kumite_matches"

    category_id = Column(Integer, nullable=False)
    round_label = Column(String(64), nullable=False)
    bout_number = Column(Integer, nullable=False)
    is_team = Column(Boolean, nullable=False, default=False)

    status = Column(String(20), nullable=False, default=MatchStatus.SCHEDULED.value)
    scheduled_time = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    winner_participant_id = Column(Integer, nullable=True)
    decision_reason = Column(String(20), nullable=True)
    # Resolved scores at completion time: {"<participant_id>": "4.50", ...}
    result_json = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    participants = relationship(
        "KumiteMatchParticipant",
        back_populates="match",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="KumiteMatchParticipant.position",
        lazy="selectin",
    )
    tallies = relationship(
        "KumiteTally",
        back_populates="match",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("category_id", "round_label", "bout_number", name="uq_kumite_bout"),
        Index("idx_kumite_round", "category_id", "round_label"),
        CheckConstraint("bout_number > 0", name="ck_kumite_bout_positive"),
        CheckConstraint(
            "status IN ('Scheduled', 'In Progress', 'Completed')",
            name="ck_kumite_status_valid"
        ),
    )

    @property
    def participant_ids(self) -> List[int]:
        return [p.participant_id for p in self.participants]

    @property
    def is_bye(self) -> bool:
        return len(self.participants) == 1

    @property
    def is_completed(self) -> bool:
        return self.status == MatchStatus.COMPLETED.value

    @property
    def result(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.result_json) if self.result_json else None

    def tally_for(self, participant_id: int) -> Optional["KumiteTally"]:
        for tally in self.tallies:
            if tally.participant_id == participant_id:
                return tally
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "round": self.round_label,
            "bout_number": self.bout_number,
            "is_team": self.is_team,
            "is_bye": self.is_bye,
            "status": self.status,
            "participant_ids": self.participant_ids,
            "scheduled_time": self.scheduled_time.isoformat() if self.scheduled_time else None,
            "winner_participant_id": self.winner_participant_id,
            "decision_reason": self.decision_reason,
            "result": self.result,
        }


class KumiteMatchParticipant(TimestampedModel):
    """
    Seat in a match.

    category_id/round_label are denormalized so that a participant can
    appear at most once per round at the database level.
    """
    __tablename__ = "kumite_match_participants"

    match_id = Column(
        Integer,
        ForeignKey("kumite_matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    category_id = Column(Integer, nullable=False)
    round_label = Column(String(64), nullable=False)
    participant_id = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False)

    match = relationship("KumiteMatch", back_populates="participants")

    __table_args__ = (
        UniqueConstraint(
            "category_id", "round_label", "participant_id",
            name="uq_kumite_round_participant"
        ),
        UniqueConstraint("match_id", "position", name="uq_kumite_match_position"),
        CheckConstraint("position IN (1, 2)", name="ck_kumite_position_valid"),
    )


class KumiteTally(TimestampedModel):
    """
    Live tally for one participant of one match.

    Every count is a non-negative integer. Penalties are split into the
    contact and conduct categories; the resolver sums both.
    """
    __tablename__ = "kumite_tallies"

    match_id = Column(
        Integer,
        ForeignKey("kumite_matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    participant_id = Column(Integer, nullable=False)

    yuko = Column(Integer, nullable=False, default=0)
    waza_ari = Column(Integer, nullable=False, default=0)
    ippon = Column(Integer, nullable=False, default=0)

    chukoku_contact = Column(Integer, nullable=False, default=0)
    chukoku_conduct = Column(Integer, nullable=False, default=0)
    keikoku_contact = Column(Integer, nullable=False, default=0)
    keikoku_conduct = Column(Integer, nullable=False, default=0)
    hansoku_chui_contact = Column(Integer, nullable=False, default=0)
    hansoku_chui_conduct = Column(Integer, nullable=False, default=0)
    hansoku_contact = Column(Integer, nullable=False, default=0)
    hansoku_conduct = Column(Integer, nullable=False, default=0)
    jogai_contact = Column(Integer, nullable=False, default=0)
    jogai_conduct = Column(Integer, nullable=False, default=0)

    # Last table worker / judge who changed this tally
    recorded_by = Column(Integer, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    match = relationship("KumiteMatch", back_populates="tallies")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("match_id", "participant_id", name="uq_kumite_tally_participant"),
        CheckConstraint(
            "yuko >= 0 AND waza_ari >= 0 AND ippon >= 0",
            name="ck_tally_points_non_negative"
        ),
        CheckConstraint(
            "chukoku_contact >= 0 AND chukoku_conduct >= 0 "
            "AND keikoku_contact >= 0 AND keikoku_conduct >= 0 "
            "AND hansoku_chui_contact >= 0 AND hansoku_chui_conduct >= 0 "
            "AND hansoku_contact >= 0 AND hansoku_conduct >= 0 "
            "AND jogai_contact >= 0 AND jogai_conduct >= 0",
            name="ck_tally_penalties_non_negative"
        ),
    )

    @staticmethod
    def column_for(field: str, category: Optional[PenaltyCategory] = None) -> str:
        if field in POINT_FIELDS:
            return field
        return f"{field}_{(category or PenaltyCategory.CONTACT).value}"

    def penalty_total(self, field: str) -> int:
        return (
            getattr(self, f"{field}_{PenaltyCategory.CONTACT.value}")
            + getattr(self, f"{field}_{PenaltyCategory.CONDUCT.value}")
        )

    def counts(self) -> Dict[str, int]:
        """Merged counts with both penalty categories summed."""
        merged = {field: getattr(self, field) for field in POINT_FIELDS}
        for field in PENALTY_FIELDS:
            merged[field] = self.penalty_total(field)
        return merged

    def to_dict(self) -> Dict[str, Any]:
        penalties = {
            category.value: {
                field: getattr(self, f"{field}_{category.value}") for field in PENALTY_FIELDS
            }
            for category in PenaltyCategory
        }
        return {
            "match_id": self.match_id,
            "participant_id": self.participant_id,
            "counts": self.counts(),
            "penalties_by_category": penalties,
            "recorded_by": self.recorded_by,
            "version": self.version,
        }


class KumiteTallyEvent(TimestampedModel):
    """Append-only audit row for an accepted tally delta."""
    __tablename__ = "kumite_tally_events"

    match_id = Column(
        Integer,
        ForeignKey("kumite_matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    participant_id = Column(Integer, nullable=False)
    field = Column(String(20), nullable=False)
    penalty_category = Column(String(20), nullable=True)
    amount = Column(Integer, nullable=False)
    resulting_count = Column(Integer, nullable=False)
    recorded_by = Column(Integer, nullable=True)
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("amount != 0", name="ck_tally_event_amount_nonzero"),
        CheckConstraint("resulting_count >= 0", name="ck_tally_event_result_non_negative"),
    )
