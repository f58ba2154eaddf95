"""
Persistence gateway for the learning store.

Defines the load/save contract the learning workflow depends on and a
SQLAlchemy implementation. Storage failures degrade gracefully: loads
return empty results, saves return None or 0, and the failure is logged.
"""
import functools
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.exceptions import PersistenceError
from backend.models.learning import (
    CorrectionFeedbackRecord,
    LearnedPatternRecord,
    LearningLogRecord,
    LearningMetricsRecord,
)
from backend.statement_audit.models import (
    CorrectionField,
    LearnedPattern,
    LearningMetrics,
    PatternType,
    TransactionCorrection,
    utcnow,
)

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Learning log event types."""
    PARSE = "parse"
    CORRECTION = "correction"
    PATTERN_LEARNED = "pattern_learned"
    SYNC = "sync"


@dataclass
class LearningEvent:
    """A learning log entry."""
    bank_id: str
    event_type: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


def improvement_trend(older: int, recent: int) -> int:
    """
    Percent change in correction volume between two periods.

    Positive means fewer corrections recently (improving). A zero older
    period with recent corrections is the -100 floor; no recent
    corrections after some older ones is +100.
    """
    if older == 0 and recent == 0:
        return 0
    if older == 0:
        return -100
    if recent == 0:
        return 100
    return round((older - recent) / older * 100)


class PersistenceGateway(Protocol):
    """Storage operations the learning workflow calls."""

    def load_patterns(self, bank_id: Optional[str] = None) -> List[LearnedPattern]: ...

    def save_pattern(self, pattern: LearnedPattern) -> Optional[LearnedPattern]: ...

    def save_patterns_bulk(self, patterns: Sequence[LearnedPattern]) -> int: ...

    def save_feedback(
        self, correction: TransactionCorrection, statement_id: Optional[str] = None
    ) -> Optional[TransactionCorrection]: ...

    def load_feedback(
        self, bank_id: Optional[str] = None, limit: int = 50
    ) -> List[TransactionCorrection]: ...

    def load_metrics(self, bank_id: Optional[str] = None) -> List[LearningMetrics]: ...

    def update_metrics(self, metrics: LearningMetrics) -> Optional[LearningMetrics]: ...

    def log_event(self, bank_id: str, event_type: str, details: Dict[str, Any]) -> None: ...

    def load_events(
        self, since: datetime, bank_id: Optional[str] = None
    ) -> List[LearningEvent]: ...

    def calculate_improvement_trend(
        self, bank_id: str, now: Optional[datetime] = None
    ) -> int: ...


def degrade_on_failure(operation: str, default: Callable[[], Any]):
    """
    Decorator for gateway methods.

    Wraps storage errors in PersistenceError, rolls the session back and
    either re-raises (strict gateways) or logs and returns the default.
    """
    def decorator(func_: Callable) -> Callable:
        @functools.wraps(func_)
        def wrapper(self, *args, **kwargs):
            try:
                return func_(self, *args, **kwargs)
            except SQLAlchemyError as e:
                self.db.rollback()
                error = PersistenceError(operation, f"Storage operation '{operation}' failed: {e}")
                logger.error(
                    "Persistence operation failed",
                    operation=operation,
                    error_code=error.error_code,
                    error=str(e),
                )
                if self.raise_errors:
                    raise error from e
                return default()

        return wrapper

    return decorator


class SqlAlchemyPersistenceGateway:
    """
    SQLAlchemy-backed persistence gateway.

    Patterns are upserted on (bank_id, pattern_type, original_value) and
    metrics on bank_id, so re-syncing the same state never adds rows.
    """

    def __init__(self, db: Session, raise_errors: bool = False, window_days: Optional[int] = None):
        """
        Initialize gateway.

        Args:
            db: Database session.
            raise_errors: Re-raise PersistenceError instead of degrading.
            window_days: Trailing window for the improvement trend.
        """
        self.db = db
        self.raise_errors = raise_errors
        if window_days is None:
            from backend.config import get_settings

            window_days = get_settings().improvement_window_days
        self.window_days = window_days

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    @degrade_on_failure("load_patterns", list)
    def load_patterns(self, bank_id: Optional[str] = None) -> List[LearnedPattern]:
        query = self.db.query(LearnedPatternRecord)
        if bank_id:
            query = query.filter(LearnedPatternRecord.bank_id == bank_id)
        rows = query.order_by(LearnedPatternRecord.created_at, LearnedPatternRecord.id).all()

        patterns = []
        for row in rows:
            pattern = self._to_pattern(row)
            if pattern is not None:
                patterns.append(pattern)
        return patterns

    @degrade_on_failure("save_pattern", lambda: None)
    def save_pattern(self, pattern: LearnedPattern) -> Optional[LearnedPattern]:
        row = self._upsert_pattern(pattern, {})
        self.db.commit()
        self.db.refresh(row)
        return self._to_pattern(row)

    @degrade_on_failure("save_patterns_bulk", lambda: 0)
    def save_patterns_bulk(self, patterns: Sequence[LearnedPattern]) -> int:
        if not patterns:
            return 0

        pending: Dict[tuple, LearnedPatternRecord] = {}
        for pattern in patterns:
            self._upsert_pattern(pattern, pending)
        self.db.commit()

        logger.info("Patterns saved", count=len(pending))
        return len(pending)

    def _upsert_pattern(
        self, pattern: LearnedPattern, pending: Dict[tuple, LearnedPatternRecord]
    ) -> LearnedPatternRecord:
        key = (pattern.bank_id, pattern.pattern_type.value, pattern.original_value)
        row = pending.get(key)
        if row is None:
            row = self.db.query(LearnedPatternRecord).filter(
                LearnedPatternRecord.bank_id == key[0],
                LearnedPatternRecord.pattern_type == key[1],
                LearnedPatternRecord.original_value == key[2],
            ).first()

        if row is None:
            row = LearnedPatternRecord(
                id=pattern.id,
                bank_id=pattern.bank_id,
                pattern_type=pattern.pattern_type.value,
                original_value=pattern.original_value,
                created_at=pattern.created_at,
            )
            self.db.add(row)

        row.corrected_value = pattern.corrected_value
        row.confidence = pattern.confidence
        row.occurrences = pattern.occurrences
        row.updated_at = utcnow()
        pending[key] = row
        return row

    @staticmethod
    def _to_pattern(row: LearnedPatternRecord) -> Optional[LearnedPattern]:
        try:
            pattern_type = PatternType(row.pattern_type)
        except ValueError:
            logger.warning("Skipping pattern with unknown type", pattern_id=row.id, pattern_type=row.pattern_type)
            return None
        return LearnedPattern(
            id=row.id,
            bank_id=row.bank_id,
            pattern_type=pattern_type,
            original_value=row.original_value,
            corrected_value=row.corrected_value,
            confidence=row.confidence,
            occurrences=row.occurrences,
            created_at=row.created_at or utcnow(),
            updated_at=row.updated_at or utcnow(),
        )

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    @degrade_on_failure("save_feedback", lambda: None)
    def save_feedback(
        self, correction: TransactionCorrection, statement_id: Optional[str] = None
    ) -> Optional[TransactionCorrection]:
        row = CorrectionFeedbackRecord(
            user_id=correction.user_id,
            transaction_id=correction.transaction_id,
            bank_id=correction.bank_id,
            field=correction.field.value,
            original_value=_as_text(correction.original_value),
            corrected_value=_as_text(correction.corrected_value),
            statement_id=statement_id,
            created_at=correction.created_at,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return self._to_correction(row)

    @degrade_on_failure("load_feedback", list)
    def load_feedback(
        self, bank_id: Optional[str] = None, limit: int = 50
    ) -> List[TransactionCorrection]:
        query = self.db.query(CorrectionFeedbackRecord)
        if bank_id:
            query = query.filter(CorrectionFeedbackRecord.bank_id == bank_id)
        rows = query.order_by(CorrectionFeedbackRecord.created_at.desc()).limit(limit).all()

        corrections = []
        for row in rows:
            correction = self._to_correction(row)
            if correction is not None:
                corrections.append(correction)
        return corrections

    @staticmethod
    def _to_correction(row: CorrectionFeedbackRecord) -> Optional[TransactionCorrection]:
        try:
            correction_field = CorrectionField(row.field)
        except ValueError:
            logger.warning("Skipping feedback with unknown field", feedback_id=row.id, field=row.field)
            return None
        return TransactionCorrection(
            bank_id=row.bank_id,
            field=correction_field,
            original_value=row.original_value,
            corrected_value=row.corrected_value,
            user_id=row.user_id,
            transaction_id=row.transaction_id,
            created_at=row.created_at,
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    @degrade_on_failure("load_metrics", list)
    def load_metrics(self, bank_id: Optional[str] = None) -> List[LearningMetrics]:
        query = self.db.query(LearningMetricsRecord)
        if bank_id:
            query = query.filter(LearningMetricsRecord.bank_id == bank_id)
        return [self._to_metrics(row) for row in query.order_by(LearningMetricsRecord.bank_id).all()]

    @degrade_on_failure("update_metrics", lambda: None)
    def update_metrics(self, metrics: LearningMetrics) -> Optional[LearningMetrics]:
        row = self.db.query(LearningMetricsRecord).filter(
            LearningMetricsRecord.bank_id == metrics.bank_id
        ).first()
        if row is None:
            row = LearningMetricsRecord(bank_id=metrics.bank_id)
            self.db.add(row)

        row.total_transactions_parsed = metrics.total_transactions_parsed
        row.total_corrections = metrics.total_corrections
        row.accuracy_rate = metrics.accuracy_rate
        row.confidence_score = metrics.confidence_score
        row.improvement_trend = metrics.improvement_trend
        row.last_updated = metrics.last_updated

        self.db.commit()
        self.db.refresh(row)
        return self._to_metrics(row)

    @staticmethod
    def _to_metrics(row: LearningMetricsRecord) -> LearningMetrics:
        return LearningMetrics(
            bank_id=row.bank_id,
            total_transactions_parsed=row.total_transactions_parsed or 0,
            total_corrections=row.total_corrections or 0,
            accuracy_rate=row.accuracy_rate or 0.0,
            confidence_score=row.confidence_score if row.confidence_score is not None else 0.5,
            improvement_trend=row.improvement_trend or 0.0,
            last_updated=row.last_updated or utcnow(),
        )

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    @degrade_on_failure("log_event", lambda: None)
    def log_event(self, bank_id: str, event_type: str, details: Dict[str, Any]) -> None:
        row = LearningLogRecord(
            bank_id=bank_id,
            event_type=EventType(event_type).value,
            details=details or {},
        )
        self.db.add(row)
        self.db.commit()

    @degrade_on_failure("load_events", list)
    def load_events(self, since: datetime, bank_id: Optional[str] = None) -> List[LearningEvent]:
        query = self.db.query(LearningLogRecord).filter(LearningLogRecord.created_at >= since)
        if bank_id:
            query = query.filter(LearningLogRecord.bank_id == bank_id)
        rows = query.order_by(LearningLogRecord.created_at.desc()).all()
        return [
            LearningEvent(
                bank_id=row.bank_id,
                event_type=row.event_type,
                details=row.details or {},
                created_at=row.created_at,
            )
            for row in rows
        ]

    @degrade_on_failure("calculate_improvement_trend", lambda: 0)
    def calculate_improvement_trend(self, bank_id: str, now: Optional[datetime] = None) -> int:
        """
        Compare correction counts in the two halves of the trailing window.

        The older half is [now - window, now - window/2), the recent half
        [now - window/2, now].
        """
        now = now or utcnow()
        window_start = now - timedelta(days=self.window_days)
        midpoint = now - timedelta(days=self.window_days / 2)

        def count(start: datetime, end: datetime, inclusive_end: bool) -> int:
            upper = (
                CorrectionFeedbackRecord.created_at <= end
                if inclusive_end else CorrectionFeedbackRecord.created_at < end
            )
            return self.db.query(func.count(CorrectionFeedbackRecord.id)).filter(
                CorrectionFeedbackRecord.bank_id == bank_id,
                CorrectionFeedbackRecord.created_at >= start,
                upper,
            ).scalar() or 0

        older = count(window_start, midpoint, inclusive_end=False)
        recent = count(midpoint, now, inclusive_end=True)
        return improvement_trend(older, recent)


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def get_persistence_gateway(
    db: Optional[Session] = None, raise_errors: bool = False
) -> SqlAlchemyPersistenceGateway:
    """
    Get a gateway bound to a session.

    Args:
        db: Session to use; a new one is opened from SessionLocal when omitted
            and the caller owns closing it (gateway.db.close()).
        raise_errors: Re-raise PersistenceError instead of degrading.
    """
    if db is None:
        from backend.database import SessionLocal, get_engine

        get_engine()
        db = SessionLocal()
    return SqlAlchemyPersistenceGateway(db, raise_errors=raise_errors)
