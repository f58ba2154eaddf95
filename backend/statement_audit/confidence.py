"""
Confidence scorers for extracted statements.

Two transaction scorers live side by side on purpose: the learning store
uses a boolean-weighted sum (LearningStore.calculate_transaction_confidence),
while the review screen uses score_transaction_for_review with a stricter
two-tier description rule. They are tuned for different call sites and are
not expected to agree.
"""

from dataclasses import dataclass
from decimal import Decimal

from backend.statement_audit.models import Statement, Transaction, is_canonical_date

PLACEHOLDER_BANK_NAME = "Unknown Bank"
PLACEHOLDER_ACCOUNT_NUMBER = "****"
PLACEHOLDER_ACCOUNT_TYPE = "Unknown"


@dataclass
class ConfidenceWeights:
    """Weights of the five transaction presence checks (sum to 1)."""
    date: float = 0.2
    amount: float = 0.3
    description: float = 0.2
    balance: float = 0.2
    category: float = 0.1


def score_transaction_for_review(transaction: Transaction) -> int:
    """
    Review-screen confidence for one transaction, as a percentage.

    Descriptions longer than 10 characters earn the full description weight,
    longer than 3 earn half.
    """
    score = 0
    if is_canonical_date(transaction.date):
        score += 20
    if transaction.has_amount:
        score += 30

    length = len((transaction.description or "").strip())
    if length > 10:
        score += 20
    elif length > 3:
        score += 10

    if transaction.balance is not None:
        score += 20
    if transaction.category:
        score += 10
    return score


def confidence_band(score: float) -> str:
    """Bucket a 0-100 score into high / medium / low."""
    if score >= 90:
        return "high"
    if score >= 70:
        return "medium"
    return "low"


def calculate_extraction_confidence(statement: Statement) -> int:
    """
    Statement-level completeness score (0-100).

    Points: bank name 10, account number 5, account type 5, period start 5,
    period end 5, any transactions 20, valid-date ratio 10, valid-amount
    ratio 10, non-zero opening/closing 10, non-zero totals 10, totals that
    match the transaction sums 10.
    """
    score = 0.0
    zero = Decimal("0")

    if statement.bank_name and statement.bank_name != PLACEHOLDER_BANK_NAME:
        score += 10
    if statement.account_number and statement.account_number != PLACEHOLDER_ACCOUNT_NUMBER:
        score += 5
    if statement.account_type and statement.account_type != PLACEHOLDER_ACCOUNT_TYPE:
        score += 5
    if statement.period_start:
        score += 5
    if statement.period_end:
        score += 5

    transactions = statement.transactions
    if transactions:
        score += 20
        valid_dates = sum(1 for t in transactions if is_canonical_date(t.date))
        valid_amounts = sum(1 for t in transactions if t.has_amount)
        score += min(10.0, valid_dates / len(transactions) * 10)
        score += min(10.0, valid_amounts / len(transactions) * 10)

    if (statement.opening_balance or zero) != zero or (statement.closing_balance or zero) != zero:
        score += 10

    total_debits = statement.total_debits or zero
    total_credits = statement.total_credits or zero
    if total_debits > zero or total_credits > zero:
        score += 10

    computed_debits, computed_credits = statement.computed_totals()
    tolerance = Decimal("0.01")
    if (
        abs(computed_debits - total_debits) < tolerance
        and abs(computed_credits - total_credits) < tolerance
    ):
        score += 10

    return int(round(score))
