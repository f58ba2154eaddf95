"""
Learning service.

Records reviewer feedback, mines it into learned patterns, and keeps the
per-bank accuracy metrics in step with storage.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional

import structlog

from backend.config import Settings, get_settings
from backend.database import get_db
from backend.exceptions import InvalidCorrectionError
from backend.services.persistence_gateway import (
    EventType,
    LearningEvent,
    PersistenceGateway,
    get_persistence_gateway,
)
from backend.statement_audit.bank_profiles import BankProfileRegistry, get_bank_profile_registry
from backend.statement_audit.learning_store import LearningStore
from backend.statement_audit.models import (
    CorrectionField,
    LearnedPattern,
    LearningMetrics,
    TransactionCorrection,
    utcnow,
)

logger = structlog.get_logger(__name__)

ACTIVITY_WINDOWS = (
    ("last_24_hours", timedelta(hours=24)),
    ("last_7_days", timedelta(days=7)),
    ("last_30_days", timedelta(days=30)),
)


@dataclass
class FeedbackOutcome:
    """Result of recording reviewer feedback."""

    saved: int
    patterns_learned: int
    message: str


class LearningService:
    """
    Feedback workflow over the learning store and its persistence gateway.

    Key features:
    - Persist each correction and mirror it into the in-memory store
    - Re-mine the latest feedback into patterns after every submission
    - Keep accuracy, confidence and trend metrics synced to storage
    """

    def __init__(
        self,
        store: LearningStore,
        gateway: PersistenceGateway,
        settings: Optional[Settings] = None,
        registry: Optional[BankProfileRegistry] = None,
    ):
        """
        Initialize learning service.

        Args:
            store: In-memory learning store.
            gateway: Storage for patterns, feedback, metrics and events.
            settings: Learning windows; defaults to application settings.
            registry: Bank profiles, used for display names.
        """
        self._store = store
        self._gateway = gateway
        self._settings = settings or get_settings()
        self._registry = registry

    @property
    def registry(self) -> BankProfileRegistry:
        if self._registry is None:
            self._registry = get_bank_profile_registry()
        return self._registry

    def hydrate(self) -> None:
        """Load persisted patterns and metrics into the store."""
        patterns = self._gateway.load_patterns()
        metrics = self._gateway.load_metrics()
        self._store.initialize(patterns, metrics)

    def _ensure_hydrated(self) -> None:
        if not self._store.is_initialized:
            self.hydrate()

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def record_feedback(
        self,
        bank_id: str,
        transaction_id: str,
        corrections: Iterable[Any],
        user_id: Optional[str],
        statement_id: Optional[str] = None,
    ) -> FeedbackOutcome:
        """
        Record a reviewer's corrections to one transaction.

        Args:
            bank_id: Institution the statement came from.
            transaction_id: Corrected transaction.
            corrections: CorrectionPayload objects or dicts with field,
                original_value and corrected_value (camelCase accepted).
            user_id: Reviewer.
            statement_id: Statement the transaction belongs to.

        Returns:
            FeedbackOutcome with saved and learned counts.

        Raises:
            InvalidCorrectionError: A correction names an unknown field.
        """
        built = self._build_corrections(bank_id, transaction_id, corrections, user_id)
        if not built:
            return FeedbackOutcome(saved=0, patterns_learned=0, message="No corrections provided")

        self._ensure_hydrated()
        saved = self._save_corrections(built, statement_id)

        self._gateway.log_event(bank_id, EventType.CORRECTION.value, {
            "transaction_id": transaction_id,
            "corrections_count": len(built),
            "fields": [c.field.value for c in built],
            "user_id": user_id,
            "statement_id": statement_id,
        })

        learned = self._learn(bank_id, self._settings.feedback_learning_window)
        self._refresh_metrics(bank_id)

        logger.info(
            "Feedback recorded",
            bank_id=bank_id,
            transaction_id=transaction_id,
            saved=saved,
            patterns_learned=len(learned),
        )
        return FeedbackOutcome(
            saved=saved,
            patterns_learned=len(learned),
            message=f"Saved {saved} corrections",
        )

    def record_bulk_feedback(
        self,
        bank_id: str,
        transactions: Iterable[Any],
        user_id: Optional[str],
    ) -> FeedbackOutcome:
        """
        Record corrections for many transactions in one submission.

        Args:
            bank_id: Institution the statement came from.
            transactions: Items with transaction_id and corrections, as
                TransactionFeedbackPayload objects or dicts.
            user_id: Reviewer.

        Returns:
            FeedbackOutcome with saved and learned counts.
        """
        built: List[TransactionCorrection] = []
        transaction_count = 0
        for item in transactions:
            transaction_id = _get(item, "transaction_id", "transactionId")
            item_corrections = _get(item, "corrections") or []
            built.extend(self._build_corrections(bank_id, transaction_id, item_corrections, user_id))
            transaction_count += 1

        if not built:
            return FeedbackOutcome(saved=0, patterns_learned=0, message="No corrections provided")

        self._ensure_hydrated()
        saved = self._save_corrections(built, None)

        self._gateway.log_event(bank_id, EventType.CORRECTION.value, {
            "bulk": True,
            "transactions_count": transaction_count,
            "corrections_count": len(built),
            "user_id": user_id,
        })

        learned = self._learn(bank_id, self._settings.bulk_feedback_learning_window)
        self._refresh_metrics(bank_id)

        logger.info(
            "Bulk feedback recorded",
            bank_id=bank_id,
            transactions=transaction_count,
            saved=saved,
            patterns_learned=len(learned),
        )
        return FeedbackOutcome(
            saved=saved,
            patterns_learned=len(learned),
            message=f"Saved {saved} corrections across {transaction_count} transactions",
        )

    def _build_corrections(
        self,
        bank_id: str,
        transaction_id: Optional[str],
        corrections: Iterable[Any],
        user_id: Optional[str],
    ) -> List[TransactionCorrection]:
        """Validate every field before anything is saved."""
        items = list(corrections or [])
        allowed = [f.value for f in CorrectionField]

        built = []
        for item in items:
            if isinstance(item, TransactionCorrection):
                built.append(item)
                continue

            raw_field = _get(item, "field")
            try:
                correction_field = CorrectionField(raw_field)
            except ValueError:
                raise InvalidCorrectionError(str(raw_field), allowed)

            built.append(TransactionCorrection(
                bank_id=bank_id,
                field=correction_field,
                original_value=_get(item, "original_value", "originalValue"),
                corrected_value=_get(item, "corrected_value", "correctedValue"),
                user_id=user_id,
                transaction_id=transaction_id,
            ))
        return built

    def _save_corrections(
        self, corrections: List[TransactionCorrection], statement_id: Optional[str]
    ) -> int:
        saved = 0
        for correction in corrections:
            if self._gateway.save_feedback(correction, statement_id=statement_id) is None:
                continue
            self._store.add_correction(correction)
            saved += 1
        return saved

    def _learn(self, bank_id: str, window: int) -> List[LearnedPattern]:
        recent = self._gateway.load_feedback(bank_id, limit=window)
        if not recent:
            recent = self._store.get_corrections(bank_id)[-window:]

        learned = self._store.learn_from_corrections(recent)
        if not learned:
            return learned

        self._gateway.save_patterns_bulk(learned)
        self._gateway.log_event(bank_id, EventType.PATTERN_LEARNED.value, {
            "patterns_count": len(learned),
            "patterns": [
                {
                    "type": p.pattern_type.value,
                    "original": p.original_value,
                    "corrected": p.corrected_value,
                    "confidence": p.confidence,
                }
                for p in learned
            ],
        })
        return learned

    def _refresh_metrics(self, bank_id: str) -> LearningMetrics:
        trend = self._gateway.calculate_improvement_trend(bank_id)
        metrics = self._store.set_improvement_trend(bank_id, trend)
        self._gateway.update_metrics(metrics)
        return metrics

    # ------------------------------------------------------------------
    # Parses
    # ------------------------------------------------------------------

    def record_parse(
        self,
        bank_id: str,
        transactions_parsed: int,
        confidence: Optional[float],
        user_id: Optional[str] = None,
    ) -> LearningMetrics:
        """
        Count a parsed statement towards the bank's accuracy denominator.

        Args:
            bank_id: Institution.
            transactions_parsed: Transactions extracted.
            confidence: Extraction confidence (0-1).
            user_id: Who uploaded the statement.

        Returns:
            Updated metrics.
        """
        self._ensure_hydrated()
        self._store.record_transactions_parsed(bank_id, transactions_parsed, confidence)
        metrics = self._refresh_metrics(bank_id)

        self._gateway.log_event(bank_id, EventType.PARSE.value, {
            "transactions_parsed": transactions_parsed,
            "confidence": confidence,
            "user_id": user_id,
        })

        logger.info(
            "Parse recorded",
            bank_id=bank_id,
            transactions=transactions_parsed,
            accuracy=metrics.accuracy_rate,
        )
        return metrics

    def sync(self) -> Dict[str, int]:
        """Push the store's patterns and metrics back to storage."""
        state = self._store.export_state()
        patterns_saved = self._gateway.save_patterns_bulk(state["patterns"])

        metrics_saved = 0
        for metrics in state["metrics"]:
            if self._gateway.update_metrics(metrics) is not None:
                metrics_saved += 1

        banks = sorted({p.bank_id for p in state["patterns"]} | {m.bank_id for m in state["metrics"]})
        for bank_id in banks:
            self._gateway.log_event(bank_id, EventType.SYNC.value, {
                "patterns": patterns_saved,
                "metrics": metrics_saved,
            })

        logger.info("Learning state synced", patterns=patterns_saved, metrics=metrics_saved)
        return {"patterns": patterns_saved, "metrics": metrics_saved}

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def summarize_metrics(
        self, bank_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Dashboard summary of learning progress.

        Args:
            bank_id: Restrict to one institution.
            now: Reference time for the activity windows.

        Returns:
            Dict with overall, by_bank, recent_activity and top_patterns.
        """
        now = now or utcnow()

        records = self._gateway.load_metrics(bank_id)
        if not records:
            records = [
                m for m in self._store.get_all_metrics()
                if bank_id is None or m.bank_id == bank_id
            ]

        total_parsed = sum(m.total_transactions_parsed for m in records)
        total_corrections = sum(m.total_corrections for m in records)

        by_bank = [
            {
                "bank_id": m.bank_id,
                "bank_name": self._bank_name(m.bank_id),
                "transactions_parsed": m.total_transactions_parsed,
                "corrections": m.total_corrections,
                "accuracy": round(m.accuracy_rate * 100),
                "confidence": round(m.confidence_score * 100),
                "improvement_trend": m.improvement_trend,
                "last_updated": m.last_updated.isoformat(),
            }
            for m in records
        ]
        by_bank.sort(key=lambda row: row["transactions_parsed"], reverse=True)

        if total_parsed > 0:
            overall_accuracy = round((1 - total_corrections / total_parsed) * 100)
        else:
            overall_accuracy = 100

        if records:
            average_confidence = round(sum(m.confidence_score for m in records) / len(records) * 100)
            overall_trend = round(sum(m.improvement_trend for m in records) / len(records))
        else:
            average_confidence = 50
            overall_trend = 0

        events = self._gateway.load_events(now - ACTIVITY_WINDOWS[-1][1], bank_id)
        recent_activity = {
            name: _count_activity(events, now - span) for name, span in ACTIVITY_WINDOWS
        }

        patterns = self._gateway.load_patterns(bank_id) or self._store.get_patterns(bank_id)
        top = sorted(patterns, key=lambda p: p.occurrences, reverse=True)[:10]

        return {
            "overall": {
                "total_transactions_parsed": total_parsed,
                "total_corrections": total_corrections,
                "overall_accuracy": overall_accuracy,
                "average_confidence": average_confidence,
                "banks_processed": len(records),
                "improvement_trend": overall_trend,
            },
            "by_bank": by_bank,
            "recent_activity": recent_activity,
            "top_patterns": [
                {
                    "bank_id": p.bank_id,
                    "pattern_type": p.pattern_type.value,
                    "original_value": p.original_value,
                    "corrected_value": p.corrected_value,
                    "confidence": round(p.confidence * 100),
                    "occurrences": p.occurrences,
                }
                for p in top
            ],
        }

    def _bank_name(self, bank_id: str) -> str:
        if self.registry.has_profile(bank_id):
            return self.registry.get_profile(bank_id).name
        return bank_id


def _get(item: Any, *names: str) -> Any:
    """Read the first present attribute or key from a payload object or dict."""
    for name in names:
        if isinstance(item, dict):
            if name in item:
                return item[name]
        elif hasattr(item, name):
            return getattr(item, name)
    return None


def _count_activity(events: List[LearningEvent], since: datetime) -> Dict[str, int]:
    recent = [e for e in events if e.created_at >= since]
    return {
        "parses": sum(1 for e in recent if e.event_type == EventType.PARSE.value),
        "corrections": sum(1 for e in recent if e.event_type == EventType.CORRECTION.value),
        "patterns_learned": sum(1 for e in recent if e.event_type == EventType.PATTERN_LEARNED.value),
    }


def get_learning_service(
    store: Optional[LearningStore] = None,
    gateway: Optional[PersistenceGateway] = None,
    settings: Optional[Settings] = None,
) -> LearningService:
    """Get LearningService instance, defaulting to a fresh store and a database-backed gateway."""
    return LearningService(
        store if store is not None else LearningStore(),
        gateway if gateway is not None else get_persistence_gateway(),
        settings=settings,
    )


@contextmanager
def learning_session(
    store: Optional[LearningStore] = None,
    settings: Optional[Settings] = None,
) -> Iterator[LearningService]:
    """
    Open a database session and yield a hydrated learning service over it.

    The store is synced back to storage when the block exits normally; the
    session is closed either way.

    Usage:
        with learning_session() as service:
            service.record_parse("chase", 42, 0.93)
    """
    db_gen = get_db()
    db = next(db_gen)
    try:
        service = get_learning_service(store, get_persistence_gateway(db), settings)
        service.hydrate()
        yield service
        service.sync()
    finally:
        db_gen.close()
