"""
Tests for the SQLAlchemy persistence gateway.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from backend.exceptions import PersistenceError
from backend.models.learning import CorrectionFeedbackRecord, LearnedPatternRecord
from backend.services.persistence_gateway import (
    EventType,
    SqlAlchemyPersistenceGateway,
    improvement_trend,
)
from backend.statement_audit.models import (
    CorrectionField,
    LearnedPattern,
    LearningMetrics,
    PatternType,
    TransactionCorrection,
    utcnow,
)


def _pattern(pattern_id="p1", original="AMZN", corrected="Shopping", confidence=0.7, occurrences=2):
    return LearnedPattern(
        id=pattern_id,
        bank_id="chase",
        pattern_type=PatternType.TRANSACTION_CATEGORY,
        original_value=original,
        corrected_value=corrected,
        confidence=confidence,
        occurrences=occurrences,
    )


def _correction(created_at=None, field=CorrectionField.CATEGORY):
    return TransactionCorrection(
        bank_id="chase",
        field=field,
        original_value="AMZN",
        corrected_value="Shopping",
        user_id="reviewer-1",
        transaction_id="txn-1",
        created_at=created_at or utcnow(),
    )


class TestImprovementTrend:
    """Tests for the trend formula."""

    @pytest.mark.parametrize("older,recent,expected", [
        (0, 0, 0),
        (0, 5, -100),
        (5, 0, 100),
        (10, 5, 50),
        (10, 15, -50),
        (3, 2, 33),
    ])
    def test_formula(self, older, recent, expected):
        assert improvement_trend(older, recent) == expected


class TestPatterns:
    """Tests for pattern persistence."""

    def test_save_and_load(self, gateway: SqlAlchemyPersistenceGateway):
        saved = gateway.save_pattern(_pattern())

        loaded = gateway.load_patterns("chase")

        assert saved.id == "p1"
        assert len(loaded) == 1
        assert loaded[0].pattern_type == PatternType.TRANSACTION_CATEGORY
        assert loaded[0].corrected_value == "Shopping"

    def test_upsert_on_natural_key(self, gateway: SqlAlchemyPersistenceGateway, db_session):
        """Test re-saving the same key updates the row in place."""
        gateway.save_pattern(_pattern())
        gateway.save_pattern(_pattern(pattern_id="p2", corrected="Office", confidence=0.9, occurrences=5))

        rows = db_session.query(LearnedPatternRecord).all()

        assert len(rows) == 1
        assert rows[0].id == "p1"
        assert rows[0].corrected_value == "Office"
        assert rows[0].occurrences == 5

    def test_bulk_save_is_idempotent(self, gateway: SqlAlchemyPersistenceGateway, db_session):
        patterns = [_pattern(), _pattern(pattern_id="p2", original="UBER")]

        assert gateway.save_patterns_bulk(patterns) == 2
        assert gateway.save_patterns_bulk(patterns) == 2
        assert db_session.query(LearnedPatternRecord).count() == 2

    def test_bulk_save_collapses_duplicate_keys(self, gateway: SqlAlchemyPersistenceGateway, db_session):
        patterns = [_pattern(), _pattern(pattern_id="p2", corrected="Office")]

        assert gateway.save_patterns_bulk(patterns) == 1
        assert db_session.query(LearnedPatternRecord).one().corrected_value == "Office"

    def test_bulk_save_empty(self, gateway: SqlAlchemyPersistenceGateway):
        assert gateway.save_patterns_bulk([]) == 0

    def test_filter_by_bank(self, gateway: SqlAlchemyPersistenceGateway):
        gateway.save_pattern(_pattern())

        assert gateway.load_patterns("pnc") == []
        assert len(gateway.load_patterns()) == 1


class TestFeedback:
    """Tests for feedback persistence."""

    def test_values_stored_as_text(self, gateway: SqlAlchemyPersistenceGateway):
        correction = TransactionCorrection(
            bank_id="chase",
            field=CorrectionField.DEBIT,
            original_value=1050,
            corrected_value=105.0,
        )

        saved = gateway.save_feedback(correction, statement_id="stmt-1")

        assert saved.original_value == "1050"
        assert saved.corrected_value == "105.0"

    def test_load_newest_first_with_limit(self, gateway: SqlAlchemyPersistenceGateway):
        now = utcnow()
        for days in (3, 1, 2):
            gateway.save_feedback(_correction(created_at=now - timedelta(days=days)))

        loaded = gateway.load_feedback("chase", limit=2)

        assert len(loaded) == 2
        assert loaded[0].created_at > loaded[1].created_at

    def test_unknown_field_rows_skipped(self, gateway: SqlAlchemyPersistenceGateway, db_session):
        db_session.add(CorrectionFeedbackRecord(bank_id="chase", field="memo", original_value="a"))
        db_session.commit()
        gateway.save_feedback(_correction())

        loaded = gateway.load_feedback("chase")

        assert [c.field for c in loaded] == [CorrectionField.CATEGORY]


class TestMetrics:
    """Tests for metrics persistence."""

    def test_upsert_on_bank(self, gateway: SqlAlchemyPersistenceGateway):
        gateway.update_metrics(LearningMetrics(bank_id="chase", total_transactions_parsed=10))
        gateway.update_metrics(LearningMetrics(bank_id="chase", total_transactions_parsed=25))

        loaded = gateway.load_metrics()

        assert len(loaded) == 1
        assert loaded[0].total_transactions_parsed == 25


class TestEvents:
    """Tests for the learning event log."""

    def test_log_and_load(self, gateway: SqlAlchemyPersistenceGateway):
        gateway.log_event("chase", EventType.PARSE.value, {"transactions_parsed": 12})

        events = gateway.load_events(utcnow() - timedelta(days=1))

        assert len(events) == 1
        assert events[0].details == {"transactions_parsed": 12}

    def test_unknown_event_type_rejected(self, gateway: SqlAlchemyPersistenceGateway):
        with pytest.raises(ValueError):
            gateway.log_event("chase", "exploded", {})

    def test_improvement_trend_windows(self, gateway: SqlAlchemyPersistenceGateway):
        """Test older corrections outnumbering recent ones is an improvement."""
        now = utcnow()
        for days in (20, 22, 25, 28):
            gateway.save_feedback(_correction(created_at=now - timedelta(days=days)))
        gateway.save_feedback(_correction(created_at=now - timedelta(days=2)))

        assert gateway.calculate_improvement_trend("chase", now=now) == 75

    def test_trend_ignores_outside_window(self, gateway: SqlAlchemyPersistenceGateway):
        now = utcnow()
        gateway.save_feedback(_correction(created_at=now - timedelta(days=45)))

        assert gateway.calculate_improvement_trend("chase", now=now) == 0


class TestGracefulDegradation:
    """Tests for storage failures."""

    @pytest.fixture
    def broken_session(self) -> MagicMock:
        session = MagicMock()
        session.query.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
        session.commit.side_effect = OperationalError("COMMIT", {}, Exception("database is locked"))
        return session

    def test_loads_return_empty(self, broken_session):
        gateway = SqlAlchemyPersistenceGateway(broken_session, window_days=30)

        assert gateway.load_patterns() == []
        assert gateway.load_feedback("chase") == []
        assert gateway.load_metrics() == []
        assert gateway.calculate_improvement_trend("chase") == 0
        broken_session.rollback.assert_called()

    def test_saves_return_none_or_zero(self, broken_session):
        gateway = SqlAlchemyPersistenceGateway(broken_session, window_days=30)

        assert gateway.save_feedback(_correction()) is None
        assert gateway.save_patterns_bulk([_pattern()]) == 0
        assert gateway.log_event("chase", "parse", {}) is None

    def test_strict_gateway_raises(self, broken_session):
        gateway = SqlAlchemyPersistenceGateway(broken_session, raise_errors=True, window_days=30)

        with pytest.raises(PersistenceError) as exc_info:
            gateway.load_patterns()

        assert exc_info.value.details["operation"] == "load_patterns"
