"""
Pydantic schemas for the statement audit boundary.

Accepts the extraction step's JSON (camelCase or snake_case keys),
normalises it into domain objects, and serialises audit results.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from backend.exceptions import StatementPayloadError
from backend.statement_audit.models import (
    AuditIssue,
    AuditResult,
    Statement,
    Transaction,
    to_decimal,
)

DEFAULT_BANK_NAME = "Unknown Bank"
DEFAULT_ACCOUNT_NUMBER = "****"
DEFAULT_ACCOUNT_TYPE = "Unknown"
DEFAULT_CURRENCY = "USD"


def _stringify(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return str(value)


class TransactionPayload(BaseModel):
    """A transaction as produced by the extraction step."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = Field(None, description="Transaction id, generated when missing")
    date: Optional[str] = Field(None, description="Transaction date (YYYY-MM-DD)")
    description: Optional[str] = Field(None, description="Free-text description")
    debit: Optional[Decimal] = Field(None, description="Debit amount")
    credit: Optional[Decimal] = Field(None, description="Credit amount")
    balance: Optional[Decimal] = Field(None, description="Running balance as printed")
    category: Optional[str] = None
    check_number: Optional[str] = Field(None, alias="checkNumber")
    reference: Optional[str] = None

    @field_validator("id", "date", "description", "category", "check_number", "reference", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _stringify(value)

    @field_validator("debit", "credit", "balance", mode="before")
    @classmethod
    def coerce_amount(cls, value: Any) -> Optional[Decimal]:
        """Non-numeric amounts become None."""
        return to_decimal(value)


class StatementPeriodPayload(BaseModel):
    """Statement period bounds."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")


class StatementPayload(BaseModel):
    """A parsed statement as produced by the extraction step."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    bank_id: Optional[str] = Field(None, alias="bankId")
    bank_name: Optional[str] = Field(None, alias="bankName")
    account_number: Optional[str] = Field(None, alias="accountNumber")
    account_type: Optional[str] = Field(None, alias="accountType")
    statement_period: Optional[StatementPeriodPayload] = Field(None, alias="statementPeriod")
    opening_balance: Optional[Decimal] = Field(None, alias="openingBalance")
    closing_balance: Optional[Decimal] = Field(None, alias="closingBalance")
    currency: Optional[str] = None
    transactions: List[TransactionPayload] = Field(default_factory=list)

    @field_validator("id", "bank_id", "bank_name", "account_number", "account_type", "currency", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _stringify(value)

    @field_validator("opening_balance", "closing_balance", mode="before")
    @classmethod
    def coerce_amount(cls, value: Any) -> Optional[Decimal]:
        return to_decimal(value)

    @field_validator("transactions", mode="before")
    @classmethod
    def default_transactions(cls, value: Any) -> Any:
        return value if value is not None else []

    def to_statement(self) -> Statement:
        """
        Build a normalised domain Statement.

        Missing ids become txn-N (1-based), placeholders fill missing header
        fields, and totals are recomputed from the transactions.
        """
        transactions = [
            Transaction(
                id=txn.id or f"txn-{index}",
                date=txn.date or "",
                description=txn.description or "",
                debit=txn.debit,
                credit=txn.credit,
                balance=txn.balance,
                category=txn.category,
                check_number=txn.check_number,
                reference=txn.reference,
            )
            for index, txn in enumerate(self.transactions, 1)
        ]

        period = self.statement_period or StatementPeriodPayload()
        statement = Statement(
            id=self.id,
            bank_id=self.bank_id,
            bank_name=self.bank_name or DEFAULT_BANK_NAME,
            account_number=self.account_number or DEFAULT_ACCOUNT_NUMBER,
            account_type=self.account_type or DEFAULT_ACCOUNT_TYPE,
            period_start=period.start_date or None,
            period_end=period.end_date or None,
            opening_balance=self.opening_balance if self.opening_balance is not None else Decimal("0"),
            closing_balance=self.closing_balance if self.closing_balance is not None else Decimal("0"),
            currency=self.currency or DEFAULT_CURRENCY,
            transactions=transactions,
        )

        debits, credits = statement.computed_totals()
        cent = Decimal("0.01")
        statement.total_debits = debits.quantize(cent, rounding=ROUND_HALF_UP)
        statement.total_credits = credits.quantize(cent, rounding=ROUND_HALF_UP)
        return statement


def parse_statement(data: Any) -> Statement:
    """
    Validate extraction JSON and convert it into a Statement.

    Raises:
        StatementPayloadError: Payload is not an object or fails validation.
    """
    if not isinstance(data, Mapping):
        raise StatementPayloadError(
            "Statement payload must be a JSON object",
            errors=[{"loc": [], "msg": f"expected object, got {type(data).__name__}"}],
        )

    try:
        payload = StatementPayload.model_validate(dict(data))
    except ValidationError as e:
        raise StatementPayloadError(
            "Invalid statement payload",
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ],
        )

    return payload.to_statement()


# =============================================================================
# Feedback
# =============================================================================

class CorrectionPayload(BaseModel):
    """A single field correction from a reviewer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    field: str
    original_value: Optional[Any] = Field(None, alias="originalValue")
    corrected_value: Optional[Any] = Field(None, alias="correctedValue")


class TransactionFeedbackPayload(BaseModel):
    """Corrections for one transaction in a bulk feedback request."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transaction_id: str = Field(..., alias="transactionId")
    corrections: List[CorrectionPayload] = Field(default_factory=list)


# =============================================================================
# Audit Output
# =============================================================================

class AuditIssueSchema(BaseModel):
    """Serialised audit issue."""

    id: str
    type: str
    severity: str
    audit_pass: str = Field(..., serialization_alias="pass")
    message: str
    transaction_ids: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
    suggested_fix: Optional[str] = None

    @classmethod
    def from_issue(cls, issue: AuditIssue) -> "AuditIssueSchema":
        return cls(
            id=issue.id,
            type=issue.type.value,
            severity=issue.severity.value,
            audit_pass=issue.audit_pass.value,
            message=issue.message,
            transaction_ids=list(issue.transaction_ids),
            details=dict(issue.details),
            suggested_fix=issue.suggested_fix,
        )


class AuditSummarySchema(BaseModel):
    """Serialised audit summary."""

    total_checks: int
    passed_checks: int
    errors: int
    warnings: int
    info: int
    by_pass: Dict[str, int] = Field(default_factory=dict)
    pass_results: Dict[str, bool] = Field(default_factory=dict)


class AuditResultSchema(BaseModel):
    """Serialised audit result for the surrounding application."""

    passed: bool
    score: float
    issues: List[AuditIssueSchema] = Field(default_factory=list)
    summary: AuditSummarySchema
    recommendations: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: AuditResult) -> "AuditResultSchema":
        summary = result.summary
        return cls(
            passed=result.passed,
            score=result.score,
            issues=[AuditIssueSchema.from_issue(i) for i in result.issues],
            summary=AuditSummarySchema(
                total_checks=summary.total_checks,
                passed_checks=summary.passed_checks,
                errors=summary.errors,
                warnings=summary.warnings,
                info=summary.info,
                by_pass=dict(summary.by_pass),
                pass_results=dict(summary.pass_results),
            ),
            recommendations=list(result.recommendations),
        )
