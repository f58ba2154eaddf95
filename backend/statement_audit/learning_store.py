"""
Learning store.

Turns a stream of reviewer corrections into confidence-weighted patterns
per institution, applies high-confidence patterns to new transactions and
keeps rolling accuracy metrics. The store is an explicit object: callers
construct it, hydrate it with initialize() and push it back to storage with
export_state().
"""

import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from backend.statement_audit.confidence import ConfidenceWeights
from backend.statement_audit.models import (
    CorrectionField,
    LearnedPattern,
    LearningMetrics,
    PatternType,
    Transaction,
    TransactionCorrection,
    is_canonical_date,
    to_decimal,
    utcnow,
)

logger = structlog.get_logger(__name__)

FIELD_PATTERN_TYPES = {
    CorrectionField.DATE: PatternType.DATE_FORMAT,
    CorrectionField.CATEGORY: PatternType.TRANSACTION_CATEGORY,
    CorrectionField.DEBIT: PatternType.AMOUNT_FORMAT,
    CorrectionField.CREDIT: PatternType.AMOUNT_FORMAT,
    CorrectionField.BALANCE: PatternType.AMOUNT_FORMAT,
    CorrectionField.DESCRIPTION: PatternType.DESCRIPTION_NORMALIZATION,
}

AMOUNT_FIELDS = ("debit", "credit", "balance")

NaturalKey = Tuple[str, PatternType, str]


def pattern_type_for_field(field: Any) -> PatternType:
    """Map a corrected field to the pattern type it teaches."""
    try:
        return FIELD_PATTERN_TYPES[CorrectionField(field)]
    except ValueError:
        return PatternType.DESCRIPTION_NORMALIZATION


def canonical_value(pattern_type: PatternType, value: Any) -> str:
    """
    Text form used in a pattern's natural key.

    Amounts are written as plain decimal text without trailing zeros, so
    1050, 1050.0 and "1050.00" share one key. Text that does not parse as a
    number (an OCR misread such as "1O5.00") is kept verbatim.
    """
    text = str(value)
    if pattern_type != PatternType.AMOUNT_FORMAT:
        return text
    amount = to_decimal(value)
    if amount is None:
        return text
    return format(amount.normalize(), "f")


def _key_of(pattern: LearnedPattern) -> NaturalKey:
    return (
        pattern.bank_id,
        pattern.pattern_type,
        canonical_value(pattern.pattern_type, pattern.original_value),
    )


@dataclass
class AppliedPattern:
    """Record of one learned pattern rewriting one transaction field."""
    pattern_id: str
    transaction_id: str
    field: str
    original_value: Optional[str]
    corrected_value: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "transaction_id": self.transaction_id,
            "field": self.field,
            "original_value": self.original_value,
            "corrected_value": self.corrected_value,
        }


class LearningStore:
    """
    In-memory registry of learned patterns, corrections and metrics.

    Read-modify-write operations take a per-institution re-entrant lock so
    several threads can share one store without losing counter updates.
    The containers themselves are guarded by a single store-wide lock;
    readers iterate over snapshots taken under it. Lock order is always
    institution lock first, then the store lock.
    """

    NEW_PATTERN_BASE_CONFIDENCE = 0.5
    NEW_PATTERN_CONFIDENCE_STEP = 0.1
    EXISTING_PATTERN_CONFIDENCE_STEP = 0.05
    APPLIED_PATTERN_CONFIDENCE_STEP = 0.01
    MIN_GROUP_SIZE = 2
    DEFAULT_CONFIDENCE_SCORE = 0.5
    HIGH_CONFIDENCE_BOOST = 1.1

    def __init__(
        self,
        auto_apply_confidence: Optional[float] = None,
        high_confidence_threshold: Optional[float] = None,
        high_confidence_pattern_count: Optional[int] = None,
    ):
        from backend.config import get_settings

        settings = get_settings()
        self.auto_apply_confidence = (
            settings.auto_apply_confidence if auto_apply_confidence is None else auto_apply_confidence
        )
        self.high_confidence_threshold = (
            settings.high_confidence_threshold
            if high_confidence_threshold is None else high_confidence_threshold
        )
        self.high_confidence_pattern_count = (
            settings.high_confidence_pattern_count
            if high_confidence_pattern_count is None else high_confidence_pattern_count
        )

        self._patterns: "OrderedDict[str, LearnedPattern]" = OrderedDict()
        self._by_natural_key: Dict[NaturalKey, str] = {}
        self._by_bank_type: Dict[Tuple[str, PatternType], List[str]] = {}
        self._corrections: List[TransactionCorrection] = []
        self._metrics: Dict[str, LearningMetrics] = {}

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._state_lock = threading.RLock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(
        self,
        patterns: Iterable[LearnedPattern] = (),
        metrics: Iterable[LearningMetrics] = (),
    ) -> None:
        """
        Replace the store contents with persisted state.

        Args:
            patterns: Patterns loaded from storage. Later entries win on a
                natural-key clash.
            metrics: Metrics records loaded from storage.
        """
        with self._state_lock:
            self._patterns.clear()
            self._by_natural_key.clear()
            self._by_bank_type.clear()
            self._metrics.clear()

            for pattern in patterns:
                self._index_pattern(replace(pattern))
            for record in metrics:
                self._metrics[record.bank_id] = replace(record)

            self._initialized = True
        logger.info(
            "Learning store initialized",
            patterns=len(self._patterns),
            banks=len(self._metrics),
        )

    def export_state(self) -> Dict[str, List[Any]]:
        """Snapshot of patterns and metrics for syncing back to storage."""
        with self._state_lock:
            return {
                "patterns": [replace(p) for p in self._patterns.values()],
                "metrics": [replace(m) for m in self._metrics.values()],
            }

    def _lock_for(self, bank_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(bank_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[bank_id] = lock
            return lock

    def _index_pattern(self, pattern: LearnedPattern) -> None:
        with self._state_lock:
            existing_id = self._by_natural_key.get(_key_of(pattern))
            if existing_id is not None and existing_id != pattern.id:
                self._remove_pattern(existing_id)

            self._patterns[pattern.id] = pattern
            self._by_natural_key[_key_of(pattern)] = pattern.id
            ids = self._by_bank_type.setdefault((pattern.bank_id, pattern.pattern_type), [])
            if pattern.id not in ids:
                ids.append(pattern.id)

    def _remove_pattern(self, pattern_id: str) -> None:
        with self._state_lock:
            pattern = self._patterns.pop(pattern_id, None)
            if pattern is None:
                return
            self._by_natural_key.pop(_key_of(pattern), None)
            ids = self._by_bank_type.get((pattern.bank_id, pattern.pattern_type), [])
            if pattern_id in ids:
                ids.remove(pattern_id)

    def _pattern_snapshot(self) -> List[LearnedPattern]:
        with self._state_lock:
            return list(self._patterns.values())

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _metrics_for(self, bank_id: str) -> LearningMetrics:
        with self._state_lock:
            metrics = self._metrics.get(bank_id)
            if metrics is None:
                metrics = LearningMetrics(
                    bank_id=bank_id,
                    confidence_score=self.DEFAULT_CONFIDENCE_SCORE,
                )
                self._metrics[bank_id] = metrics
            return metrics

    @staticmethod
    def _recompute_accuracy(metrics: LearningMetrics) -> None:
        if metrics.total_transactions_parsed <= 0:
            metrics.accuracy_rate = 0.0
        else:
            metrics.accuracy_rate = max(
                0.0, 1 - metrics.total_corrections / metrics.total_transactions_parsed
            )
        metrics.last_updated = utcnow()

    def add_correction(self, correction: TransactionCorrection) -> LearningMetrics:
        """
        Append a correction to the log and update accuracy for its bank.

        Args:
            correction: Reviewer correction.

        Returns:
            The institution's live metrics record.
        """
        with self._lock_for(correction.bank_id):
            with self._state_lock:
                self._corrections.append(correction)
            metrics = self._metrics_for(correction.bank_id)
            metrics.total_corrections += 1
            self._recompute_accuracy(metrics)

        logger.debug(
            "Correction recorded",
            bank_id=correction.bank_id,
            field=correction.field.value,
            accuracy_rate=metrics.accuracy_rate,
        )
        return metrics

    def record_transactions_parsed(
        self, bank_id: str, count: int, confidence: Optional[float] = None
    ) -> LearningMetrics:
        """
        Add to an institution's parsed-transaction denominator.

        Args:
            bank_id: Institution id.
            count: Transactions parsed in this batch.
            confidence: Extraction confidence (0-1) for the batch; blended into
                the running score weighted by transaction counts.

        Returns:
            The institution's live metrics record.
        """
        with self._lock_for(bank_id):
            metrics = self._metrics_for(bank_id)
            if count <= 0:
                return metrics

            previous = metrics.total_transactions_parsed
            total = previous + count
            if confidence is not None:
                metrics.confidence_score = round(
                    (metrics.confidence_score * previous + confidence * count) / total, 4
                )
            metrics.total_transactions_parsed = total
            self._recompute_accuracy(metrics)

        return metrics

    def set_improvement_trend(self, bank_id: str, trend: float) -> LearningMetrics:
        with self._lock_for(bank_id):
            metrics = self._metrics_for(bank_id)
            metrics.improvement_trend = trend
            metrics.last_updated = utcnow()
        return metrics

    def get_metrics(self, bank_id: str) -> Optional[LearningMetrics]:
        return self._metrics.get(bank_id)

    def get_all_metrics(self) -> List[LearningMetrics]:
        with self._state_lock:
            return list(self._metrics.values())

    def get_corrections(self, bank_id: Optional[str] = None) -> List[TransactionCorrection]:
        with self._state_lock:
            corrections = list(self._corrections)
        if bank_id is None:
            return corrections
        return [c for c in corrections if c.bank_id == bank_id]

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def get_pattern(self, pattern_id: str) -> Optional[LearnedPattern]:
        with self._state_lock:
            return self._patterns.get(pattern_id)

    def find_pattern(
        self, bank_id: str, pattern_type: PatternType, original_value: str
    ) -> Optional[LearnedPattern]:
        key = (bank_id, pattern_type, canonical_value(pattern_type, original_value))
        with self._state_lock:
            pattern_id = self._by_natural_key.get(key)
            return self._patterns.get(pattern_id) if pattern_id else None

    def get_patterns(
        self,
        bank_id: Optional[str] = None,
        pattern_type: Optional[PatternType] = None,
    ) -> List[LearnedPattern]:
        """Patterns in registration order, optionally filtered."""
        with self._state_lock:
            if bank_id is not None and pattern_type is not None:
                ids = self._by_bank_type.get((bank_id, pattern_type), [])
                return [self._patterns[i] for i in ids]
            patterns = list(self._patterns.values())
        return [
            p for p in patterns
            if (bank_id is None or p.bank_id == bank_id)
            and (pattern_type is None or p.pattern_type == pattern_type)
        ]

    def update_pattern(self, pattern_id: str, **changes: Any) -> Optional[LearnedPattern]:
        """
        Overwrite mutable pattern fields.

        Only corrected_value, confidence and occurrences may change; the
        natural key is fixed. Confidence is clamped to [0, 1].

        Returns:
            The updated pattern, or None if it does not exist.
        """
        allowed = {"corrected_value", "confidence", "occurrences"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update pattern fields: {sorted(unknown)}")

        pattern = self.get_pattern(pattern_id)
        if pattern is None:
            return None

        with self._lock_for(pattern.bank_id):
            if "corrected_value" in changes:
                pattern.corrected_value = str(changes["corrected_value"])
            if "confidence" in changes:
                pattern.confidence = min(1.0, max(0.0, float(changes["confidence"])))
            if "occurrences" in changes:
                pattern.occurrences = max(0, int(changes["occurrences"]))
            pattern.updated_at = utcnow()
        return pattern

    def increment_pattern_occurrence(self, pattern_id: str) -> Optional[LearnedPattern]:
        """Bump a pattern after it fired: confidence +0.01 (capped), occurrences +1."""
        pattern = self.get_pattern(pattern_id)
        if pattern is None:
            return None

        with self._lock_for(pattern.bank_id):
            pattern.confidence = min(
                1.0, round(pattern.confidence + self.APPLIED_PATTERN_CONFIDENCE_STEP, 4)
            )
            pattern.occurrences += 1
            pattern.updated_at = utcnow()
        return pattern

    def learn_from_corrections(
        self, corrections: Iterable[TransactionCorrection]
    ) -> List[LearnedPattern]:
        """
        Mine recurring corrections into patterns.

        Corrections are grouped by natural key. Existing patterns absorb any
        group; a new pattern needs at least two corrections. The corrected
        value is the most frequent one in the group, first seen on a tie.

        Args:
            corrections: Batch of corrections, possibly overlapping earlier
                batches.

        Returns:
            Patterns created or updated by this batch.
        """
        groups: "OrderedDict[NaturalKey, List[TransactionCorrection]]" = OrderedDict()
        for correction in corrections:
            if correction.original_value in (None, "") or correction.corrected_value is None:
                continue
            pattern_type = pattern_type_for_field(correction.field)
            key = (
                correction.bank_id,
                pattern_type,
                canonical_value(pattern_type, correction.original_value),
            )
            groups.setdefault(key, []).append(correction)

        touched: List[LearnedPattern] = []
        for key, group in groups.items():
            bank_id, pattern_type, original_value = key
            size = len(group)

            counts: Dict[str, int] = {}
            for correction in group:
                value = canonical_value(pattern_type, correction.corrected_value)
                counts[value] = counts.get(value, 0) + 1
            corrected_value = max(counts, key=counts.get)

            with self._lock_for(bank_id):
                existing = self.find_pattern(bank_id, pattern_type, original_value)
                if existing is not None:
                    existing.confidence = min(
                        1.0,
                        round(existing.confidence + self.EXISTING_PATTERN_CONFIDENCE_STEP * size, 4),
                    )
                    existing.occurrences += size
                    existing.updated_at = utcnow()
                    touched.append(existing)
                    continue

                if size < self.MIN_GROUP_SIZE:
                    continue

                pattern = LearnedPattern(
                    id=str(uuid.uuid4()),
                    bank_id=bank_id,
                    pattern_type=pattern_type,
                    original_value=original_value,
                    corrected_value=corrected_value,
                    confidence=min(
                        1.0,
                        round(self.NEW_PATTERN_BASE_CONFIDENCE + self.NEW_PATTERN_CONFIDENCE_STEP * size, 4),
                    ),
                    occurrences=size,
                )
                self._index_pattern(pattern)
                touched.append(pattern)

        if touched:
            logger.info(
                "Patterns learned",
                groups=len(groups),
                patterns=len(touched),
            )
        return touched

    # ------------------------------------------------------------------
    # Application and scoring
    # ------------------------------------------------------------------

    def apply_learned_patterns(self, transaction: Transaction, bank_id: str) -> Transaction:
        """
        Apply high-confidence patterns for an institution to a transaction.

        Returns:
            A new transaction; the input is never mutated.
        """
        updated, _ = self.apply_learned_patterns_with_changes(transaction, bank_id)
        return updated

    def apply_learned_patterns_with_changes(
        self, transaction: Transaction, bank_id: str
    ) -> Tuple[Transaction, List[AppliedPattern]]:
        """
        Apply patterns and report which ones fired.

        Patterns are tried in registration order and several may fire on
        the same transaction. Only a real value change counts as a firing.
        Passes repeat until nothing changes, so chained patterns (X to Y,
        then Y to Z) settle in one call whatever their order; each pattern
        fires at most once per field per call.
        """
        values: Dict[str, Any] = {
            "date": transaction.date,
            "description": transaction.description,
            "debit": transaction.debit,
            "credit": transaction.credit,
            "balance": transaction.balance,
            "category": transaction.category,
        }
        applied: List[AppliedPattern] = []

        candidates = [
            p for p in self._pattern_snapshot()
            if p.bank_id == bank_id and p.confidence >= self.auto_apply_confidence
        ]

        fired = set()
        changed = True
        while changed:
            changed = False
            for pattern in candidates:
                for field_name in self._fields_for(pattern, values):
                    if (pattern.id, field_name) in fired:
                        continue
                    current = values[field_name]
                    if field_name in AMOUNT_FIELDS:
                        new_value = to_decimal(pattern.corrected_value)
                        if new_value is None or new_value == current:
                            continue
                    else:
                        new_value = pattern.corrected_value
                        if new_value == current:
                            continue

                    values[field_name] = new_value
                    fired.add((pattern.id, field_name))
                    changed = True
                    self.increment_pattern_occurrence(pattern.id)
                    applied.append(AppliedPattern(
                        pattern_id=pattern.id,
                        transaction_id=transaction.id,
                        field=field_name,
                        original_value=None if current is None else str(current),
                        corrected_value=pattern.corrected_value,
                    ))

        if not applied:
            return transaction, applied

        logger.debug(
            "Learned patterns applied",
            bank_id=bank_id,
            transaction_id=transaction.id,
            changes=len(applied),
        )
        return replace(transaction, **values), applied

    @staticmethod
    def _fields_for(pattern: LearnedPattern, values: Dict[str, Any]) -> List[str]:
        original = pattern.original_value

        if pattern.pattern_type == PatternType.DATE_FORMAT:
            return ["date"] if values["date"] == original else []

        if pattern.pattern_type == PatternType.DESCRIPTION_NORMALIZATION:
            return ["description"] if values["description"] == original else []

        # Amount corrections share one natural key across debit, credit and
        # balance, so a fix learned from debits also rewrites a matching balance
        if pattern.pattern_type == PatternType.AMOUNT_FORMAT:
            target = to_decimal(original)
            if target is None:
                return []
            return [
                name for name in AMOUNT_FIELDS
                if values[name] is not None and values[name] == target
            ]

        if values["category"] == original:
            return ["category"]
        # Description text only fills a missing category
        description = (values["description"] or "").lower()
        if not values["category"] and original and original.lower() in description:
            return ["category"]
        return []

    def high_confidence_pattern_total(self, bank_id: str) -> int:
        return sum(
            1 for p in self._pattern_snapshot()
            if p.bank_id == bank_id and p.confidence >= self.high_confidence_threshold
        )

    def calculate_transaction_confidence(
        self,
        transaction: Transaction,
        bank_id: str,
        weights: Optional[ConfidenceWeights] = None,
    ) -> float:
        """
        Boolean-weighted confidence for a transaction (0-1).

        Institutions with many high-confidence patterns get a 10% boost,
        capped at 1.
        """
        weights = weights or ConfidenceWeights()

        score = 0.0
        if is_canonical_date(transaction.date):
            score += weights.date
        if transaction.has_amount:
            score += weights.amount
        if len(transaction.description or "") > 3:
            score += weights.description
        if transaction.balance is not None:
            score += weights.balance
        if transaction.category:
            score += weights.category

        if self.high_confidence_pattern_total(bank_id) > self.high_confidence_pattern_count:
            score = min(1.0, score * self.HIGH_CONFIDENCE_BOOST)

        return round(score, 2)

    def get_learning_stats(self, bank_id: Optional[str] = None) -> Dict[str, Any]:
        """Pattern and correction totals plus the ten most used patterns."""
        patterns = self.get_patterns(bank_id)
        top = sorted(patterns, key=lambda p: p.occurrences, reverse=True)[:10]
        return {
            "total_patterns": len(patterns),
            "high_confidence_patterns": sum(
                1 for p in patterns if p.confidence >= self.high_confidence_threshold
            ),
            "total_corrections": len(self.get_corrections(bank_id)),
            "top_patterns": [p.to_dict() for p in top],
        }
