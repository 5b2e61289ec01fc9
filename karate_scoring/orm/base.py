"""
karate_scoring/orm/base.py
Declarative base for all ORM models
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Every stored score/total is quantized to two decimal places
QUANTIZER_2DP = Decimal("0.01")


class TimestampedModel(Base):
    """
    Abstract base model with common fields.
    Engine tables inherit from this.
    """
    __abstract__ = True

    id = Column(
        Integer,
        primary_key=True,
        autoincrement=True,
        index=True
    )

    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
        comment="Timestamp when record was last updated"
    )
