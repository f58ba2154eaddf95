"""
Learning persistence database models.

Defines tables for learned patterns, correction feedback, per-bank
accuracy metrics and the learning event log.
"""
import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from backend.database import Base
from backend.statement_audit.models import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class LearnedPatternRecord(Base):
    """
    A learned correction pattern.

    At most one row per natural key (bank, pattern type, original value);
    writes are upserts on that key.
    """

    __tablename__ = "learned_patterns"

    id = Column(String(36), primary_key=True, default=_uuid)
    bank_id = Column(String(50), nullable=False, index=True)
    pattern_type = Column(String(50), nullable=False)
    original_value = Column(Text, nullable=False)
    corrected_value = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False, default=0.5)
    occurrences = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "bank_id", "pattern_type", "original_value",
            name="uq_learned_pattern_natural_key",
        ),
        Index("idx_learned_patterns_bank_type", "bank_id", "pattern_type"),
    )

    def __repr__(self) -> str:
        return f"<LearnedPatternRecord(id={self.id}, bank={self.bank_id}, type={self.pattern_type})>"


class CorrectionFeedbackRecord(Base):
    """
    One reviewer correction. Append-only.
    """

    __tablename__ = "correction_feedback"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(100))
    transaction_id = Column(String(100))
    bank_id = Column(String(50), nullable=False)
    field = Column(String(20), nullable=False)
    original_value = Column(Text)
    corrected_value = Column(Text)
    statement_id = Column(String(100))

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_correction_feedback_bank_created", "bank_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<CorrectionFeedbackRecord(id={self.id}, bank={self.bank_id}, field={self.field})>"


class LearningMetricsRecord(Base):
    """
    Rolling accuracy counters, one row per bank.
    """

    __tablename__ = "learning_metrics"

    id = Column(String(36), primary_key=True, default=_uuid)
    bank_id = Column(String(50), nullable=False, unique=True)
    total_transactions_parsed = Column(Integer, nullable=False, default=0)
    total_corrections = Column(Integer, nullable=False, default=0)
    accuracy_rate = Column(Float, nullable=False, default=0.0)
    confidence_score = Column(Float, nullable=False, default=0.5)
    improvement_trend = Column(Float, nullable=False, default=0.0)

    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<LearningMetricsRecord(bank={self.bank_id}, accuracy={self.accuracy_rate})>"


class LearningLogRecord(Base):
    """
    Learning event log (parse, correction, pattern_learned, sync).
    """

    __tablename__ = "learning_log"

    id = Column(String(36), primary_key=True, default=_uuid)
    bank_id = Column(String(50), nullable=False)
    event_type = Column(String(50), nullable=False)
    details = Column(JSON, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_learning_log_created", "created_at"),
        Index("idx_learning_log_bank_event", "bank_id", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<LearningLogRecord(bank={self.bank_id}, event={self.event_type})>"
