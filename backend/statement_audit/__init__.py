"""
Statement Audit & Adaptive Learning Engine.

Audits machine-extracted bank statements for internal consistency and learns
from reviewer corrections so recurring extraction mistakes for an
institution are repaired before they reach a reviewer again.
"""

from backend.statement_audit.audit import AuditEngine, AuditOptions, run_full_audit
from backend.statement_audit.bank_profiles import BankProfileRegistry, get_bank_profile_registry
from backend.statement_audit.learning_store import LearningStore
from backend.statement_audit.models import (
    AuditIssue,
    AuditResult,
    LearnedPattern,
    LearningMetrics,
    Statement,
    Transaction,
    TransactionCorrection,
)
from backend.statement_audit.orchestrator import ReviewResult, review_statement

__version__ = "1.0.0"
__all__ = [
    "AuditEngine",
    "AuditOptions",
    "run_full_audit",
    "BankProfileRegistry",
    "get_bank_profile_registry",
    "LearningStore",
    "AuditIssue",
    "AuditResult",
    "LearnedPattern",
    "LearningMetrics",
    "Statement",
    "Transaction",
    "TransactionCorrection",
    "ReviewResult",
    "review_statement",
]
