"""
Data structures for the statement audit engine.

Shared vocabulary used by every layer:
- Transaction and Statement as produced by the extraction collaborator
- AuditIssue / AuditResult produced by the audit engine
- BankProfile entries held by the profile registry
- LearnedPattern, TransactionCorrection and LearningMetrics owned by the
  learning store
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


CANONICAL_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a JSON amount into a Decimal; anything non-numeric becomes None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def is_canonical_date(value: Optional[str]) -> bool:
    """Check a date string is YYYY-MM-DD and names a real calendar day."""
    if not value or not CANONICAL_DATE_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


class IssueType(str, Enum):
    """Kinds of problems the audit engine reports."""
    BALANCE_MISMATCH = "balance-mismatch"
    DUPLICATE = "duplicate"
    DATE_SEQUENCE = "date-sequence"
    AMOUNT_INVALID = "amount-invalid"
    MISSING_DATA = "missing-data"
    SUSPICIOUS_PATTERN = "suspicious-pattern"


class Severity(str, Enum):
    """How much an issue should block automatic posting."""
    ERROR = "error"      # must not be trusted as-is
    WARNING = "warning"  # plausible, needs review
    INFO = "info"        # advisory only


class AuditPass(str, Enum):
    """The six independent audit checks."""
    BALANCE = "balance"
    DUPLICATE = "duplicate"
    DATE = "date"
    AMOUNT = "amount"
    COMPLETENESS = "completeness"
    SUSPICIOUS = "suspicious-pattern"


class PatternType(str, Enum):
    """Kinds of learned correction patterns."""
    DATE_FORMAT = "date-format"
    TRANSACTION_CATEGORY = "transaction-category"
    AMOUNT_FORMAT = "amount-format"
    DESCRIPTION_NORMALIZATION = "description-normalization"


class CorrectionField(str, Enum):
    """Transaction fields a reviewer can correct."""
    DATE = "date"
    DESCRIPTION = "description"
    DEBIT = "debit"
    CREDIT = "credit"
    BALANCE = "balance"
    CATEGORY = "category"


class TransactionType(str, Enum):
    """Coarse transaction types inferred from descriptions."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    PAYMENT = "payment"
    FEE = "fee"
    INTEREST = "interest"
    CHECK = "check"
    ATM = "atm"
    POS = "pos"
    ACH = "ach"
    WIRE = "wire"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    OTHER = "other"


# =============================================================================
# Statement Data
# =============================================================================

@dataclass
class Transaction:
    """A single extracted statement line."""
    id: str
    date: str
    description: str = ""
    debit: Optional[Decimal] = None
    credit: Optional[Decimal] = None
    balance: Optional[Decimal] = None
    category: Optional[str] = None
    check_number: Optional[str] = None
    reference: Optional[str] = None

    def __post_init__(self):
        self.debit = to_decimal(self.debit)
        self.credit = to_decimal(self.credit)
        self.balance = to_decimal(self.balance)
        if self.description is None:
            self.description = ""

    @property
    def has_amount(self) -> bool:
        return self.debit is not None or self.credit is not None

    @property
    def net_change(self) -> Decimal:
        """Credit minus debit, treating missing sides as zero."""
        return (self.credit or Decimal("0")) - (self.debit or Decimal("0"))

    def amounts(self) -> List[Decimal]:
        return [a for a in (self.debit, self.credit) if a is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "description": self.description,
            "debit": _decimal_str(self.debit),
            "credit": _decimal_str(self.credit),
            "balance": _decimal_str(self.balance),
            "category": self.category,
            "check_number": self.check_number,
            "reference": self.reference,
        }


@dataclass
class Statement:
    """A parsed bank statement as handed over by the extraction step."""
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_type: Optional[str] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    opening_balance: Optional[Decimal] = None
    closing_balance: Optional[Decimal] = None
    currency: str = "USD"
    transactions: List[Transaction] = field(default_factory=list)
    total_debits: Optional[Decimal] = None
    total_credits: Optional[Decimal] = None
    id: Optional[str] = None
    bank_id: Optional[str] = None

    def __post_init__(self):
        self.opening_balance = to_decimal(self.opening_balance)
        self.closing_balance = to_decimal(self.closing_balance)
        self.total_debits = to_decimal(self.total_debits)
        self.total_credits = to_decimal(self.total_credits)

    def computed_totals(self) -> Tuple[Decimal, Decimal]:
        """Sum debits and credits over the transactions."""
        debits = sum((t.debit or Decimal("0") for t in self.transactions), Decimal("0"))
        credits = sum((t.credit or Decimal("0") for t in self.transactions), Decimal("0"))
        return debits, credits


# =============================================================================
# Audit Output
# =============================================================================

@dataclass(frozen=True)
class AuditIssue:
    """A single finding from one audit pass."""
    id: str
    type: IssueType
    severity: Severity
    audit_pass: AuditPass
    message: str
    transaction_ids: Tuple[str, ...] = ()
    details: Dict[str, Any] = field(default_factory=dict)
    suggested_fix: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "pass": self.audit_pass.value,
            "message": self.message,
            "transaction_ids": list(self.transaction_ids),
            "details": dict(self.details),
            "suggested_fix": self.suggested_fix,
        }


@dataclass
class PassOutcome:
    """Issues and pass flag produced by one audit pass."""
    audit_pass: AuditPass
    passed: bool
    issues: List[AuditIssue] = field(default_factory=list)


@dataclass
class AuditSummary:
    """Counts by severity and by pass."""
    total_checks: int = 6
    passed_checks: int = 0
    errors: int = 0
    warnings: int = 0
    info: int = 0
    by_pass: Dict[str, int] = field(default_factory=dict)
    pass_results: Dict[str, bool] = field(default_factory=dict)

    @property
    def total_issues(self) -> int:
        return self.errors + self.warnings + self.info


@dataclass
class AuditResult:
    """Aggregated outcome of a full audit run."""
    passed: bool
    score: float
    issues: List[AuditIssue] = field(default_factory=list)
    summary: AuditSummary = field(default_factory=AuditSummary)
    recommendations: List[str] = field(default_factory=list)

    def issues_by_severity(self, severity: Severity) -> List[AuditIssue]:
        return [i for i in self.issues if i.severity == severity]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "score": self.score,
            "issues": [i.to_dict() for i in self.issues],
            "summary": asdict(self.summary),
            "recommendations": list(self.recommendations),
        }


# =============================================================================
# Bank Profiles
# =============================================================================

@dataclass
class CategoryRule:
    """Ordered categorisation rule: regex over the description → category."""
    pattern: str
    category: str
    direction: Optional[str] = None  # "debit" | "credit" hint

    def __post_init__(self):
        self._regex = re.compile(self.pattern, re.IGNORECASE)

    def matches(self, description: str) -> bool:
        return bool(self._regex.search(description or ""))


@dataclass
class KnownErrorCorrection:
    """Literal substitution for a recurring extraction error."""
    find: str
    replace: str


@dataclass
class StructuralMarkers:
    """Text markers for statement layout."""
    header: List[str] = field(default_factory=list)
    footer: List[str] = field(default_factory=list)
    page_break: List[str] = field(default_factory=list)


@dataclass
class BankProfile:
    """Per-institution parsing heuristics."""
    id: str
    name: str
    aliases: List[str] = field(default_factory=list)
    date_formats: List[str] = field(default_factory=list)
    category_rules: List[CategoryRule] = field(default_factory=list)
    known_errors: List[KnownErrorCorrection] = field(default_factory=list)
    markers: StructuralMarkers = field(default_factory=StructuralMarkers)
    ocr_confusions: Dict[str, str] = field(default_factory=dict)
    regional: bool = False


# =============================================================================
# Learning
# =============================================================================

@dataclass
class LearnedPattern:
    """A learned (original → corrected) mapping for one institution and field type."""
    id: str
    bank_id: str
    pattern_type: PatternType
    original_value: str
    corrected_value: str
    confidence: float
    occurrences: int
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def natural_key(self) -> Tuple[str, PatternType, str]:
        return (self.bank_id, self.pattern_type, self.original_value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_id": self.bank_id,
            "pattern_type": self.pattern_type.value,
            "original_value": self.original_value,
            "corrected_value": self.corrected_value,
            "confidence": self.confidence,
            "occurrences": self.occurrences,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class TransactionCorrection:
    """A reviewer's fix to one field of one transaction."""
    bank_id: str
    field: CorrectionField
    original_value: Any
    corrected_value: Any
    user_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LearningMetrics:
    """Rolling accuracy counters for one institution."""
    bank_id: str
    total_transactions_parsed: int = 0
    total_corrections: int = 0
    accuracy_rate: float = 0.0
    confidence_score: float = 0.5
    improvement_trend: float = 0.0
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat()
        return data


def _decimal_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)
