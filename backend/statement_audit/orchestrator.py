"""
Review pipeline for an extracted statement.

1. Resolve the institution (explicit id, detection from raw text, or "other")
2. Repair known extraction errors in descriptions
3. Pre-apply high-confidence learned patterns
4. Fill missing categories from the profile's rules
5. Run the full audit on the corrected copy

The input statement is never modified; corrections land on new objects.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import structlog

from backend.exceptions import InvalidStatementError
from backend.statement_audit.audit import AuditEngine, AuditOptions
from backend.statement_audit.bank_profiles import (
    OTHER_INSTITUTION_ID,
    BankProfileRegistry,
    get_bank_profile_registry,
)
from backend.statement_audit.confidence import calculate_extraction_confidence
from backend.statement_audit.learning_store import LearningStore
from backend.statement_audit.models import AuditResult, Statement, Transaction
from backend.utils.logging import log_performance

logger = structlog.get_logger(__name__)


@dataclass
class ReviewChange:
    """One field rewritten before the audit ran."""
    transaction_id: str
    field: str
    original_value: Optional[str]
    corrected_value: Optional[str]
    source: str  # known-error | learned-pattern | category-rule
    pattern_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "field": self.field,
            "original_value": self.original_value,
            "corrected_value": self.corrected_value,
            "source": self.source,
            "pattern_id": self.pattern_id,
        }


@dataclass
class ReviewResult:
    """Outcome of reviewing one statement."""
    bank_id: str
    statement: Statement
    audit: AuditResult
    applied_changes: List[ReviewChange] = field(default_factory=list)
    extraction_confidence: int = 0
    transaction_confidence: Dict[str, float] = field(default_factory=dict)

    @property
    def ready_to_post(self) -> bool:
        return self.audit.passed


@log_performance("review_statement")
def review_statement(
    statement: Statement,
    store: LearningStore,
    registry: Optional[BankProfileRegistry] = None,
    raw_text: Optional[str] = None,
    bank_id: Optional[str] = None,
    options: Optional[AuditOptions] = None,
) -> ReviewResult:
    """
    Correct and audit an extracted statement.

    Args:
        statement: Statement from the extraction step.
        store: Learning store holding learned patterns.
        registry: Bank profile registry (shared instance by default).
        raw_text: Raw document text used for institution detection.
        bank_id: Explicit institution id; skips detection.
        options: Audit thresholds.

    Returns:
        ReviewResult with the corrected statement and its audit.
    """
    registry = registry or get_bank_profile_registry()
    engine = AuditEngine(options)

    if statement is None or not isinstance(statement, Statement):
        raise InvalidStatementError()

    resolved_bank = (
        bank_id
        or statement.bank_id
        or registry.detect_from_content(raw_text)
        or OTHER_INSTITUTION_ID
    )

    changes: List[ReviewChange] = []
    corrected: List[Transaction] = []
    for txn in statement.transactions:
        corrected.append(_correct_transaction(txn, resolved_bank, store, registry, changes))

    reviewed = replace(statement, transactions=corrected, bank_id=resolved_bank)
    audit = engine.run_full_audit(reviewed)

    result = ReviewResult(
        bank_id=resolved_bank,
        statement=reviewed,
        audit=audit,
        applied_changes=changes,
        extraction_confidence=calculate_extraction_confidence(reviewed),
        transaction_confidence={
            t.id: store.calculate_transaction_confidence(t, resolved_bank) for t in corrected
        },
    )

    logger.info(
        "Statement reviewed",
        bank_id=resolved_bank,
        transactions=len(corrected),
        changes=len(changes),
        score=audit.score,
        passed=audit.passed,
    )
    return result


def _correct_transaction(
    txn: Transaction,
    bank_id: str,
    store: LearningStore,
    registry: BankProfileRegistry,
    changes: List[ReviewChange],
) -> Transaction:
    repaired = registry.apply_known_error_corrections(txn.description, bank_id)
    if repaired != txn.description:
        changes.append(ReviewChange(
            transaction_id=txn.id,
            field="description",
            original_value=txn.description,
            corrected_value=repaired,
            source="known-error",
        ))
        txn = replace(txn, description=repaired)

    txn, applied = store.apply_learned_patterns_with_changes(txn, bank_id)
    for item in applied:
        changes.append(ReviewChange(
            transaction_id=item.transaction_id,
            field=item.field,
            original_value=item.original_value,
            corrected_value=item.corrected_value,
            source="learned-pattern",
            pattern_id=item.pattern_id,
        ))

    if not txn.category:
        category = registry.categorize_transaction(txn.description, bank_id)
        if category:
            changes.append(ReviewChange(
                transaction_id=txn.id,
                field="category",
                original_value=None,
                corrected_value=category,
                source="category-rule",
            ))
            txn = replace(txn, category=category)

    return txn
