"""
Tests for the feedback learning workflow.
"""
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from backend.config import Settings
from backend.database import SessionLocal
from backend.exceptions import InvalidCorrectionError
from backend.models.learning import (
    CorrectionFeedbackRecord,
    LearnedPatternRecord,
    LearningLogRecord,
    LearningMetricsRecord,
)
from backend.schemas.statement import CorrectionPayload
from backend.services.learning_service import LearningService, get_learning_service, learning_session
from backend.services.persistence_gateway import get_persistence_gateway
from backend.statement_audit.learning_store import LearningStore
from backend.statement_audit.models import LearnedPattern, LearningMetrics, PatternType


CATEGORY_FIX = {"field": "category", "originalValue": "AMZN MKTP", "correctedValue": "Office Supplies"}


@pytest.fixture
def service(store, gateway, registry) -> LearningService:
    settings = Settings(feedback_learning_window=50, bulk_feedback_learning_window=100)
    return LearningService(store, gateway, settings=settings, registry=registry)


def _event_types(db_session):
    return [row.event_type for row in db_session.query(LearningLogRecord).order_by(LearningLogRecord.created_at)]


class TestRecordFeedback:
    """Tests for LearningService.record_feedback."""

    def test_saves_correction(self, service: LearningService, store: LearningStore, db_session):
        outcome = service.record_feedback("chase", "txn-1", [CATEGORY_FIX], user_id="u1", statement_id="s1")

        assert outcome.saved == 1
        assert outcome.patterns_learned == 0
        assert outcome.message == "Saved 1 corrections"
        assert db_session.query(CorrectionFeedbackRecord).one().statement_id == "s1"
        assert store.get_metrics("chase").total_corrections == 1
        assert _event_types(db_session) == ["correction"]

    def test_accepts_payload_objects(self, service: LearningService):
        correction = CorrectionPayload(field="date", original_value="01/32", corrected_value="2024-02-01")

        assert service.record_feedback("chase", "txn-1", [correction], user_id="u1").saved == 1

    def test_recurring_correction_learns_pattern(self, service: LearningService, store, db_session):
        service.record_feedback("chase", "txn-1", [CATEGORY_FIX], user_id="u1")
        outcome = service.record_feedback("chase", "txn-2", [CATEGORY_FIX], user_id="u1")

        assert outcome.patterns_learned == 1
        pattern = store.find_pattern("chase", PatternType.TRANSACTION_CATEGORY, "AMZN MKTP")
        assert pattern.corrected_value == "Office Supplies"
        assert db_session.query(LearnedPatternRecord).count() == 1
        assert "pattern_learned" in _event_types(db_session)

    def test_invalid_field_saves_nothing(self, service: LearningService, db_session):
        bad = {"field": "memo", "originalValue": "a", "correctedValue": "b"}

        with pytest.raises(InvalidCorrectionError) as exc_info:
            service.record_feedback("chase", "txn-1", [CATEGORY_FIX, bad], user_id="u1")

        assert "category" in exc_info.value.details["allowed"]
        assert db_session.query(CorrectionFeedbackRecord).count() == 0

    def test_empty_corrections(self, service: LearningService, db_session):
        outcome = service.record_feedback("chase", "txn-1", [], user_id="u1")

        assert outcome.saved == 0
        assert db_session.query(LearningLogRecord).count() == 0

    def test_unsaved_corrections_not_counted(self, store: LearningStore, registry):
        """Test corrections the gateway failed to store stay out of the store."""
        gateway = MagicMock()
        gateway.save_feedback.return_value = None
        gateway.load_feedback.return_value = []
        gateway.load_patterns.return_value = []
        gateway.load_metrics.return_value = []
        gateway.calculate_improvement_trend.return_value = 0
        service = LearningService(store, gateway, settings=Settings(), registry=registry)

        outcome = service.record_feedback("chase", "txn-1", [CATEGORY_FIX], user_id="u1")

        assert outcome.saved == 0
        assert store.get_corrections("chase") == []


class TestRecordBulkFeedback:
    """Tests for LearningService.record_bulk_feedback."""

    def test_bulk_learns_across_transactions(self, service: LearningService, db_session):
        outcome = service.record_bulk_feedback(
            "chase",
            [
                {"transactionId": "txn-1", "corrections": [CATEGORY_FIX]},
                {"transaction_id": "txn-2", "corrections": [CATEGORY_FIX]},
            ],
            user_id="u1",
        )

        assert outcome.saved == 2
        assert outcome.patterns_learned == 1
        assert outcome.message == "Saved 2 corrections across 2 transactions"
        assert db_session.query(CorrectionFeedbackRecord).count() == 2


class TestRecordParse:
    """Tests for LearningService.record_parse."""

    def test_updates_metrics(self, service: LearningService, gateway, db_session):
        metrics = service.record_parse("chase", 40, 0.85, user_id="u1")

        assert metrics.total_transactions_parsed == 40
        assert metrics.accuracy_rate == 1.0
        assert gateway.load_metrics("chase")[0].confidence_score == pytest.approx(0.85)
        assert _event_types(db_session) == ["parse"]


class TestHydrateAndSync:
    """Tests for moving state between storage and the store."""

    def test_hydrate(self, service: LearningService, store: LearningStore, gateway):
        gateway.save_pattern(LearnedPattern(
            id="p1", bank_id="pnc", pattern_type=PatternType.DATE_FORMAT,
            original_value="13/01/2024", corrected_value="2024-01-13",
            confidence=0.9, occurrences=4,
        ))
        gateway.update_metrics(LearningMetrics(bank_id="pnc", total_transactions_parsed=7))

        service.hydrate()

        assert store.get_pattern("p1").occurrences == 4
        assert store.get_metrics("pnc").total_transactions_parsed == 7

    def test_sync(self, service: LearningService, store: LearningStore, gateway, db_session):
        store.initialize([LearnedPattern(
            id="p1", bank_id="chase", pattern_type=PatternType.TRANSACTION_CATEGORY,
            original_value="UBER", corrected_value="Travel", confidence=0.8, occurrences=3,
        )])
        store.record_transactions_parsed("chase", 10, 0.9)

        counts = service.sync()

        assert counts == {"patterns": 1, "metrics": 1}
        assert gateway.load_patterns()[0].corrected_value == "Travel"
        assert _event_types(db_session) == ["sync"]

    def test_factory(self, store, gateway):
        assert isinstance(get_learning_service(store, gateway), LearningService)


class TestSummarizeMetrics:
    """Tests for the dashboard summary."""

    def test_summary(self, service: LearningService):
        service.record_parse("chase", 100, 0.9)
        service.record_feedback("chase", "txn-1", [CATEGORY_FIX], user_id="u1")

        summary = service.summarize_metrics()

        assert summary["overall"]["total_transactions_parsed"] == 100
        assert summary["overall"]["overall_accuracy"] == 99
        assert summary["overall"]["average_confidence"] == 90
        assert summary["by_bank"][0]["bank_name"] == "Chase Bank"
        assert summary["recent_activity"]["last_24_hours"] == {
            "parses": 1, "corrections": 1, "patterns_learned": 0,
        }

    def test_by_bank_sorted_by_volume(self, service: LearningService):
        service.record_parse("pnc", 5, 0.8)
        service.record_parse("chase", 50, 0.8)

        summary = service.summarize_metrics()

        assert [row["bank_id"] for row in summary["by_bank"]] == ["chase", "pnc"]

    def test_empty_summary(self, service: LearningService):
        summary = service.summarize_metrics()

        assert summary["overall"]["overall_accuracy"] == 100
        assert summary["overall"]["average_confidence"] == 50
        assert summary["by_bank"] == []
        assert summary["top_patterns"] == []


class TestDatabaseBackedService:
    """Tests for the services built over the application's own session factory."""

    def test_default_gateway_uses_bound_session(self, bound_database):
        gateway = get_persistence_gateway()

        assert isinstance(gateway.db, Session)
        assert gateway.db.get_bind() is bound_database
        gateway.db.close()

    def test_factory_defaults(self, bound_database):
        service = get_learning_service()

        assert isinstance(service, LearningService)
        assert service.summarize_metrics()["overall"]["overall_accuracy"] == 100

    def test_session_syncs_on_exit(self, bound_database):
        with learning_session() as service:
            service.record_parse("chase", 40, 0.85)

        db = SessionLocal()
        try:
            row = db.query(LearningMetricsRecord).filter_by(bank_id="chase").one()
            assert row.total_transactions_parsed == 40
            assert sorted(_event_types(db)) == ["parse", "sync"]
        finally:
            db.close()

    def test_session_hydrates_stored_patterns(self, bound_database):
        with learning_session() as service:
            service._gateway.save_pattern(LearnedPattern(
                id="p1", bank_id="pnc", pattern_type=PatternType.DATE_FORMAT,
                original_value="13/01/2024", corrected_value="2024-01-13",
                confidence=0.9, occurrences=4,
            ))

        store = LearningStore()
        with learning_session(store):
            pass

        assert store.get_pattern("p1").occurrences == 4
