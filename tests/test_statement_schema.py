"""
Unit tests for statement payload schemas.
"""
from decimal import Decimal

import pytest

from backend.exceptions import StatementPayloadError
from backend.schemas.statement import (
    AuditResultSchema,
    CorrectionPayload,
    StatementPayload,
    TransactionFeedbackPayload,
    parse_statement,
)
from backend.statement_audit.audit import AuditEngine


@pytest.fixture
def payload() -> dict:
    """Extraction output in camelCase."""
    return {
        "bankName": "Wells Fargo",
        "accountNumber": "****9876",
        "accountType": "Checking",
        "statementPeriod": {"startDate": "2024-02-01", "endDate": "2024-02-29"},
        "openingBalance": 250.5,
        "closingBalance": 200,
        "transactions": [
            {"date": "2024-02-03", "description": "COFFEE", "debit": 4.25, "balance": 246.25},
            {"id": "custom", "date": "2024-02-04", "description": "REFUND", "credit": "3.75"},
            {"date": "2024-02-05", "description": "GAS", "debit": "N/A"},
        ],
        "totalDebits": 999,
    }


class TestParseStatement:
    """Tests for parse_statement."""

    def test_camel_case_payload(self, payload):
        statement = parse_statement(payload)

        assert statement.bank_name == "Wells Fargo"
        assert statement.period_start == "2024-02-01"
        assert statement.period_end == "2024-02-29"
        assert statement.opening_balance == Decimal("250.5")

    def test_missing_ids_generated(self, payload):
        statement = parse_statement(payload)

        assert [t.id for t in statement.transactions] == ["txn-1", "custom", "txn-3"]

    def test_non_numeric_amount_becomes_none(self, payload):
        statement = parse_statement(payload)

        assert statement.transactions[2].debit is None
        assert statement.transactions[1].credit == Decimal("3.75")

    def test_totals_recomputed(self, payload):
        statement = parse_statement(payload)

        assert statement.total_debits == Decimal("4.25")
        assert statement.total_credits == Decimal("3.75")

    def test_placeholders(self):
        statement = parse_statement({})

        assert statement.bank_name == "Unknown Bank"
        assert statement.account_number == "****"
        assert statement.account_type == "Unknown"
        assert statement.currency == "USD"
        assert statement.opening_balance == Decimal("0")
        assert statement.transactions == []

    def test_snake_case_payload(self):
        statement = parse_statement({
            "bank_name": "PNC Bank",
            "statement_period": {"start_date": "2024-01-01", "end_date": "2024-01-31"},
        })

        assert statement.bank_name == "PNC Bank"
        assert statement.period_end == "2024-01-31"

    def test_non_object_rejected(self):
        with pytest.raises(StatementPayloadError) as exc_info:
            parse_statement(["not", "a", "statement"])

        assert exc_info.value.error_code == "SAE-101"

    def test_bad_transactions_rejected(self):
        with pytest.raises(StatementPayloadError) as exc_info:
            parse_statement({"transactions": "oops"})

        assert exc_info.value.details["errors"]

    def test_model_direct(self, payload):
        model = StatementPayload.model_validate(payload)

        assert model.statement_period.start_date == "2024-02-01"


class TestFeedbackPayloads:
    """Tests for correction payloads."""

    def test_correction_aliases(self):
        correction = CorrectionPayload.model_validate(
            {"field": "category", "originalValue": "AMZN", "correctedValue": "Shopping"}
        )

        assert correction.original_value == "AMZN"
        assert correction.corrected_value == "Shopping"

    def test_bulk_item(self):
        item = TransactionFeedbackPayload.model_validate({
            "transactionId": "txn-4",
            "corrections": [{"field": "date", "originalValue": "02/30", "correctedValue": "2024-02-28"}],
        })

        assert item.transaction_id == "txn-4"
        assert item.corrections[0].field == "date"


class TestAuditResultSchema:
    """Tests for audit serialisation."""

    def test_from_result(self, clean_statement, audit_engine: AuditEngine):
        clean_statement.opening_balance = None
        result = audit_engine.run_full_audit(clean_statement)

        schema = AuditResultSchema.from_result(result)
        data = schema.model_dump(by_alias=True)

        assert data["passed"] is True
        assert data["issues"][0]["pass"] == "balance"
        assert data["summary"]["total_checks"] == 6
