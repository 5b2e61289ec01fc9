"""
Kata ORM Models

- KataPerformance: one competitor's routine in one round of one category
- KataScore: one judge's score for one performance (upserted, never appended)

final_score is a derived value. It is recomputed from the full score set
whenever the set changes and is non-null iff at least 3 judges scored.
"""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Numeric,
    UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import relationship

from karate_scoring.orm.base import TimestampedModel


KATA_MIN_SCORE = 5
KATA_MAX_SCORE = 10

# Medal awarded per terminal-round place
MEDALS = {1: "Gold", 2: "Silver", 3: "Bronze"}


class KataPerformance(TimestampedModel):
    __tablename__ = "kata_performances"

    category_id = Column(Integer, nullable=False)
    round_label = Column(String(64), nullable=False)
    participant_id = Column(Integer, nullable=False)

    # Running order inside the round; also the ranking tie-break
    performance_order = Column(Integer, nullable=False)

    final_score = Column(Numeric(6, 2), nullable=True)
    place = Column(Integer, nullable=True)
    scored_at = Column(DateTime, nullable=True)

    scores = relationship(
        "KataScore",
        back_populates="performance",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="KataScore.judge_id",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint(
            "category_id", "round_label", "participant_id",
            name="uq_kata_performance_participant"
        ),
        Index("idx_kata_round", "category_id", "round_label"),
        CheckConstraint("performance_order > 0", name="ck_kata_order_positive"),
        CheckConstraint("final_score IS NULL OR final_score >= 0", name="ck_kata_final_non_negative"),
        CheckConstraint("place IS NULL OR place >= 1", name="ck_kata_place_positive"),
    )

    @property
    def medal(self):
        return MEDALS.get(self.place) if self.place else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "round": self.round_label,
            "participant_id": self.participant_id,
            "performance_order": self.performance_order,
            "final_score": self.final_score,
            "place": self.place,
            "medal": self.medal,
        }


class KataScore(TimestampedModel):
    """
    Judge submission for a kata performance.

    Unique per (performance, judge): a re-submission overwrites the value.
    """
    __tablename__ = "kata_scores"

    performance_id = Column(
        Integer,
        ForeignKey("kata_performances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    judge_id = Column(Integer, nullable=False)
    value = Column(Numeric(4, 2), nullable=False)
    scored_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    performance = relationship("KataPerformance", back_populates="scores")

    __table_args__ = (
        UniqueConstraint("performance_id", "judge_id", name="uq_kata_score_judge"),
        CheckConstraint(
            f"value >= {KATA_MIN_SCORE} AND value <= {KATA_MAX_SCORE}",
            name="ck_kata_score_range"
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "performance_id": self.performance_id,
            "judge_id": self.judge_id,
            "value": self.value,
            "scored_at": self.scored_at.isoformat() if self.scored_at else None,
        }
