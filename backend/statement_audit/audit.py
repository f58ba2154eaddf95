"""
Audit engine for extracted bank statements.

Runs six independent passes over a Statement and aggregates them into a
score, an issue list and reviewer recommendations:

1. Balance reconciliation
2. Duplicate detection
3. Date-sequence validation
4. Amount validation
5. Data completeness
6. Suspicious-pattern detection

Malformed statement data is always reported as an issue. Only a malformed
call (no statement at all) raises.
"""

import re
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog

from backend.exceptions import InvalidStatementError
from backend.statement_audit.models import (
    AuditIssue,
    AuditPass,
    AuditResult,
    AuditSummary,
    IssueType,
    PassOutcome,
    Severity,
    Statement,
    Transaction,
    is_canonical_date,
)
from backend.utils.logging import log_performance

logger = structlog.get_logger(__name__)

PLACEHOLDER_BANK_NAMES = {"", "unknown", "unknown bank"}

DIGIT_RUN_RE = re.compile(r"\d{10,}")

RECOMMENDATIONS = OrderedDict([
    (IssueType.BALANCE_MISMATCH,
     "Reconcile the ledger: check each flagged amount and the opening and closing balances against the document."),
    (IssueType.DUPLICATE,
     "Review possible duplicate transactions and remove any line extracted twice."),
    (IssueType.DATE_SEQUENCE,
     "Correct malformed dates and confirm transactions dated out of order or outside the statement period."),
    (IssueType.AMOUNT_INVALID,
     "Fix transactions with missing, negative or conflicting debit/credit amounts."),
    (IssueType.MISSING_DATA,
     "Fill in missing statement details, dates, descriptions and amounts."),
    (IssueType.SUSPICIOUS_PATTERN,
     "Spot-check flagged descriptions and round amounts against the source document."),
])


@dataclass
class AuditOptions:
    """Thresholds for one audit run."""
    tolerance: Decimal = Decimal("0.01")
    large_amount_threshold: Decimal = Decimal("10000000")

    @classmethod
    def from_settings(cls, settings=None) -> "AuditOptions":
        if settings is None:
            from backend.config import get_settings

            settings = get_settings()
        return cls(
            tolerance=Decimal(str(settings.balance_tolerance)),
            large_amount_threshold=Decimal(str(settings.large_amount_threshold)),
        )


class _IssueCollector:
    """Builds issues for one pass with stable, position-based ids."""

    def __init__(self, audit_pass: AuditPass):
        self.audit_pass = audit_pass
        self.issues: List[AuditIssue] = []

    def add(
        self,
        issue_type: IssueType,
        severity: Severity,
        message: str,
        transaction_ids: Sequence[str] = (),
        details: Optional[Dict[str, Any]] = None,
        suggested_fix: Optional[str] = None,
    ) -> AuditIssue:
        issue = AuditIssue(
            id=f"{self.audit_pass.value}-{len(self.issues) + 1}",
            type=issue_type,
            severity=severity,
            audit_pass=self.audit_pass,
            message=message,
            transaction_ids=tuple(transaction_ids),
            details=details or {},
            suggested_fix=suggested_fix,
        )
        self.issues.append(issue)
        return issue

    @property
    def has_errors(self) -> bool:
        return any(i.severity == Severity.ERROR for i in self.issues)

    def outcome(self, passed: Optional[bool] = None) -> PassOutcome:
        # Passes without their own flag pass when they raised no errors
        if passed is None:
            passed = not self.has_errors
        return PassOutcome(audit_pass=self.audit_pass, passed=passed, issues=self.issues)


class AuditEngine:
    """
    Multi-pass statement auditor.

    Stateless apart from its thresholds; safe to share across threads.
    """

    def __init__(self, options: Optional[AuditOptions] = None):
        self.options = options or AuditOptions.from_settings()

    @log_performance("full_audit")
    def run_full_audit(self, statement: Statement) -> AuditResult:
        """
        Audit a statement.

        Args:
            statement: Parsed statement to audit.

        Returns:
            AuditResult with score, issues, summary and recommendations.

        Raises:
            InvalidStatementError: No statement was supplied.
        """
        if statement is None or not isinstance(statement, Statement):
            raise InvalidStatementError()

        outcomes = [
            self.check_balances(statement),
            self.check_duplicates(statement.transactions),
            self.check_dates(statement),
            self.check_amounts(statement.transactions),
            self.check_completeness(statement),
            self.check_suspicious_patterns(statement.transactions),
        ]

        result = self._aggregate(outcomes)

        logger.info(
            "Audit complete",
            statement_id=statement.id,
            transactions=len(statement.transactions),
            passed=result.passed,
            score=result.score,
            errors=result.summary.errors,
            warnings=result.summary.warnings,
        )
        return result

    # ------------------------------------------------------------------
    # Pass 1: balance reconciliation
    # ------------------------------------------------------------------

    def check_balances(self, statement: Statement) -> PassOutcome:
        """Walk the ledger from the opening balance, resyncing on stated balances."""
        collector = _IssueCollector(AuditPass.BALANCE)
        opening = statement.opening_balance
        closing = statement.closing_balance

        if opening is None or closing is None:
            collector.add(
                IssueType.MISSING_DATA,
                Severity.WARNING,
                "Opening or closing balance not available; ledger cannot be reconciled",
                details={
                    "opening_balance": _fmt(opening),
                    "closing_balance": _fmt(closing),
                },
                suggested_fix="Enter the opening and closing balances from the statement",
            )
            return collector.outcome(passed=False)

        tolerance = self.options.tolerance
        running = opening
        discrepancies = 0

        for txn in statement.transactions:
            running += txn.net_change
            if txn.balance is None:
                continue

            difference = abs(txn.balance - running)
            if difference > tolerance:
                discrepancies += 1
                collector.add(
                    IssueType.BALANCE_MISMATCH,
                    Severity.WARNING,
                    f"Stated balance {txn.balance} differs from computed balance {running}",
                    transaction_ids=[txn.id],
                    details={
                        "expected": _fmt(running),
                        "stated": _fmt(txn.balance),
                        "difference": _fmt(difference),
                    },
                    suggested_fix="Verify this line's amount and running balance",
                )
                running = txn.balance

        closing_difference = abs(running - closing)
        closing_ok = closing_difference <= tolerance
        if not closing_ok:
            collector.add(
                IssueType.BALANCE_MISMATCH,
                Severity.ERROR,
                f"Closing balance {closing} does not match computed balance {running}",
                details={
                    "opening_balance": _fmt(opening),
                    "computed_closing": _fmt(running),
                    "stated_closing": _fmt(closing),
                    "difference": _fmt(closing_difference),
                },
                suggested_fix="Look for missing or mis-keyed transactions",
            )

        return collector.outcome(passed=discrepancies == 0 and closing_ok)

    # ------------------------------------------------------------------
    # Pass 2: duplicates
    # ------------------------------------------------------------------

    def check_duplicates(self, transactions: List[Transaction]) -> PassOutcome:
        """Group transactions by (date, debit, credit, description prefix)."""
        collector = _IssueCollector(AuditPass.DUPLICATE)
        groups: "OrderedDict[tuple, List[Transaction]]" = OrderedDict()

        for txn in transactions:
            signature = (
                txn.date,
                txn.debit if txn.debit is not None else Decimal("0"),
                txn.credit if txn.credit is not None else Decimal("0"),
                (txn.description or "")[:20],
            )
            groups.setdefault(signature, []).append(txn)

        for signature, members in groups.items():
            if len(members) < 2:
                continue
            identical = len({m.description for m in members}) == 1
            collector.add(
                IssueType.DUPLICATE,
                Severity.WARNING if identical else Severity.INFO,
                f"{len(members)} transactions share date, amount and description prefix",
                transaction_ids=[m.id for m in members],
                details={
                    "date": signature[0],
                    "debit": _fmt(signature[1]),
                    "credit": _fmt(signature[2]),
                    "description_prefix": signature[3],
                    "identical_descriptions": identical,
                },
                suggested_fix="Remove the extra line if it was extracted twice",
            )

        return collector.outcome()

    # ------------------------------------------------------------------
    # Pass 3: dates
    # ------------------------------------------------------------------

    def check_dates(self, statement: Statement) -> PassOutcome:
        """Check date format, ordering and statement-period bounds."""
        collector = _IssueCollector(AuditPass.DATE)
        passed = True

        start = statement.period_start if is_canonical_date(statement.period_start) else None
        end = statement.period_end if is_canonical_date(statement.period_end) else None

        previous: Optional[Transaction] = None
        for txn in statement.transactions:
            # Empty dates are counted by the completeness pass
            if not txn.date:
                previous = None
                continue

            if not is_canonical_date(txn.date):
                passed = False
                collector.add(
                    IssueType.DATE_SEQUENCE,
                    Severity.ERROR,
                    f"Date '{txn.date}' is not a valid YYYY-MM-DD date",
                    transaction_ids=[txn.id],
                    details={"date": txn.date},
                    suggested_fix="Re-enter the date as YYYY-MM-DD",
                )
                previous = None
                continue

            if previous is not None and txn.date < previous.date:
                collector.add(
                    IssueType.DATE_SEQUENCE,
                    Severity.WARNING,
                    f"Transaction dated {txn.date} follows one dated {previous.date}",
                    transaction_ids=[previous.id, txn.id],
                    details={"previous_date": previous.date, "date": txn.date},
                )

            if (start and txn.date < start) or (end and txn.date > end):
                collector.add(
                    IssueType.DATE_SEQUENCE,
                    Severity.WARNING,
                    f"Date {txn.date} falls outside the statement period",
                    transaction_ids=[txn.id],
                    details={"date": txn.date, "period_start": start, "period_end": end},
                    suggested_fix="Check the year or the statement period",
                )

            previous = txn

        return collector.outcome(passed=passed)

    # ------------------------------------------------------------------
    # Pass 4: amounts
    # ------------------------------------------------------------------

    def check_amounts(self, transactions: List[Transaction]) -> PassOutcome:
        """Per-transaction amount sanity checks."""
        collector = _IssueCollector(AuditPass.AMOUNT)
        threshold = self.options.large_amount_threshold

        for txn in transactions:
            if not txn.has_amount:
                collector.add(
                    IssueType.AMOUNT_INVALID,
                    Severity.ERROR,
                    "Transaction has neither a debit nor a credit amount",
                    transaction_ids=[txn.id],
                    suggested_fix="Enter the debit or credit amount",
                )
                continue

            if txn.debit and txn.credit:
                collector.add(
                    IssueType.AMOUNT_INVALID,
                    Severity.WARNING,
                    "Transaction has both a debit and a credit amount",
                    transaction_ids=[txn.id],
                    details={"debit": _fmt(txn.debit), "credit": _fmt(txn.credit)},
                    suggested_fix="Keep only the side that applies",
                )

            negative = [
                name for name, amount in (("debit", txn.debit), ("credit", txn.credit))
                if amount is not None and amount < 0
            ]
            if negative:
                collector.add(
                    IssueType.AMOUNT_INVALID,
                    Severity.WARNING,
                    f"Negative {' and '.join(negative)} amount",
                    transaction_ids=[txn.id],
                    details={"fields": negative},
                    suggested_fix="Record the absolute value on the correct side",
                )

            largest = max(abs(a) for a in txn.amounts())
            if largest > threshold:
                collector.add(
                    IssueType.AMOUNT_INVALID,
                    Severity.INFO,
                    f"Unusually large amount {largest}",
                    transaction_ids=[txn.id],
                    details={"amount": _fmt(largest), "threshold": _fmt(threshold)},
                )

            if any((a * 100) % 1 != 0 for a in txn.amounts()):
                collector.add(
                    IssueType.AMOUNT_INVALID,
                    Severity.INFO,
                    "Amount has more than two decimal places",
                    transaction_ids=[txn.id],
                    details={"amounts": [_fmt(a) for a in txn.amounts()]},
                )

        return collector.outcome()

    # ------------------------------------------------------------------
    # Pass 5: completeness
    # ------------------------------------------------------------------

    def check_completeness(self, statement: Statement) -> PassOutcome:
        """Statement-level and aggregate transaction-level completeness."""
        collector = _IssueCollector(AuditPass.COMPLETENESS)
        passed = True

        if (statement.bank_name or "").strip().lower() in PLACEHOLDER_BANK_NAMES:
            collector.add(
                IssueType.MISSING_DATA,
                Severity.INFO,
                "Institution name could not be determined",
                details={"bank_name": statement.bank_name},
                suggested_fix="Select the issuing bank",
            )

        missing_period = [
            name for name, value in (
                ("period_start", statement.period_start),
                ("period_end", statement.period_end),
            )
            if not value
        ]
        if missing_period:
            passed = False
            collector.add(
                IssueType.MISSING_DATA,
                Severity.WARNING,
                "Statement period is incomplete",
                details={"missing": missing_period},
                suggested_fix="Enter the statement period dates",
            )

        transactions = statement.transactions
        missing_dates = [t.id for t in transactions if not (t.date or "").strip()]
        short_descriptions = [t.id for t in transactions if len((t.description or "").strip()) < 3]
        missing_amounts = [t.id for t in transactions if not t.has_amount]

        if missing_dates:
            passed = False
            collector.add(
                IssueType.MISSING_DATA,
                Severity.ERROR,
                f"{len(missing_dates)} transaction(s) missing a date",
                transaction_ids=missing_dates,
                details={"count": len(missing_dates)},
            )

        if short_descriptions:
            collector.add(
                IssueType.MISSING_DATA,
                Severity.WARNING,
                f"{len(short_descriptions)} transaction(s) with a missing or very short description",
                transaction_ids=short_descriptions,
                details={"count": len(short_descriptions)},
            )

        if missing_amounts:
            passed = False
            collector.add(
                IssueType.MISSING_DATA,
                Severity.ERROR,
                f"{len(missing_amounts)} transaction(s) missing both debit and credit",
                transaction_ids=missing_amounts,
                details={"count": len(missing_amounts)},
            )

        return collector.outcome(passed=passed)

    # ------------------------------------------------------------------
    # Pass 6: suspicious patterns
    # ------------------------------------------------------------------

    def check_suspicious_patterns(self, transactions: List[Transaction]) -> PassOutcome:
        """Heuristics for likely OCR misreads and sanity checks."""
        collector = _IssueCollector(AuditPass.SUSPICIOUS)

        for txn in transactions:
            description = txn.description or ""

            if DIGIT_RUN_RE.search(description):
                collector.add(
                    IssueType.SUSPICIOUS_PATTERN,
                    Severity.INFO,
                    "Description contains a long run of digits",
                    transaction_ids=[txn.id],
                    details={"description": description},
                    suggested_fix="Check for a misread account or reference number",
                )

            if len(description) > 10:
                special = sum(1 for c in description if not c.isalnum() and not c.isspace())
                ratio = special / len(description)
                if ratio > 0.3:
                    collector.add(
                        IssueType.SUSPICIOUS_PATTERN,
                        Severity.WARNING,
                        "Description is mostly special characters",
                        transaction_ids=[txn.id],
                        details={"description": description, "ratio": round(ratio, 2)},
                        suggested_fix="Re-read the description from the document",
                    )

            if description.rstrip().endswith(("...", "…")):
                collector.add(
                    IssueType.SUSPICIOUS_PATTERN,
                    Severity.INFO,
                    "Description looks truncated",
                    transaction_ids=[txn.id],
                    details={"description": description},
                )

            round_amounts = [a for a in txn.amounts() if a >= 1000 and a % 1000 == 0]
            if round_amounts:
                collector.add(
                    IssueType.SUSPICIOUS_PATTERN,
                    Severity.INFO,
                    "Large round amount; verify accuracy",
                    transaction_ids=[txn.id],
                    details={"amounts": [_fmt(a) for a in round_amounts]},
                )

        return collector.outcome()

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _aggregate(self, outcomes: List[PassOutcome]) -> AuditResult:
        issues = [issue for outcome in outcomes for issue in outcome.issues]

        summary = AuditSummary(total_checks=len(outcomes))
        summary.passed_checks = sum(1 for o in outcomes if o.passed)
        summary.errors = sum(1 for i in issues if i.severity == Severity.ERROR)
        summary.warnings = sum(1 for i in issues if i.severity == Severity.WARNING)
        summary.info = sum(1 for i in issues if i.severity == Severity.INFO)
        summary.by_pass = {o.audit_pass.value: len(o.issues) for o in outcomes}
        summary.pass_results = {o.audit_pass.value: o.passed for o in outcomes}

        raw_score = (
            summary.passed_checks / summary.total_checks * 100
            - 5 * summary.errors
            - 2 * summary.warnings
        )
        score = round(max(0.0, min(100.0, raw_score)), 2)

        return AuditResult(
            passed=summary.errors == 0,
            score=score,
            issues=issues,
            summary=summary,
            recommendations=self._recommend(issues, summary),
        )

    def _recommend(self, issues: List[AuditIssue], summary: AuditSummary) -> List[str]:
        if not issues:
            return []

        recommendations: List[str] = []
        if summary.errors:
            recommendations.append(
                f"Resolve {summary.errors} error(s) before posting this statement."
            )
        elif summary.warnings:
            recommendations.append(
                f"Review {summary.warnings} warning(s); the statement can be posted once confirmed."
            )

        present = {i.type for i in issues}
        for issue_type, text in RECOMMENDATIONS.items():
            if issue_type in present:
                recommendations.append(text)

        return recommendations


def run_full_audit(statement: Statement, options: Optional[AuditOptions] = None) -> AuditResult:
    """Audit a statement with default (or given) thresholds."""
    return AuditEngine(options).run_full_audit(statement)


def _fmt(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)
