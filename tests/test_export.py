"""
Unit tests for transaction export.
"""
import io
from datetime import date

import pytest
from openpyxl import load_workbook

from backend.exceptions import ExportError
from backend.statement_audit.audit import AuditEngine
from backend.statement_audit.export import (
    ExportFormat,
    MIME_TYPES,
    build_base_filename,
    export_transactions,
)

PERIOD = ("2024-01-01", "2024-01-31")


class TestCsvExport:
    """Tests for CSV export."""

    def test_csv_layout(self, clean_statement):
        artifact = export_transactions(clean_statement.transactions, "csv", "Chase Bank", PERIOD)
        lines = artifact.content.decode("utf-8").split("\n")

        assert lines[0] == "Date,Description,Debit,Credit,Balance,Category,Check #,Reference"
        assert lines[1] == "2024-01-05,PAYROLL DIRECT DEPOSIT,,500.00,1500.00,,,"
        assert lines[4] == ""
        assert lines[5] == ",TOTAL DEBITS,200.00,,,,,"
        assert lines[6] == ",TOTAL CREDITS,,500.00,,,,"
        assert lines[7] == ",NET CHANGE,,,300.00,,,"

    def test_csv_metadata(self, clean_statement):
        artifact = export_transactions(clean_statement.transactions, "CSV", "Chase Bank", PERIOD)

        assert artifact.filename == "chase_bank_statement_2024-01-01_to_2024-01-31.csv"
        assert artifact.mime_type == "text/csv"

    def test_descriptions_with_commas_are_quoted(self, make_transaction):
        txn = make_transaction(description="SMITH, JOHN PAYMENT")

        content = export_transactions([txn], "csv").content.decode("utf-8")

        assert '"SMITH, JOHN PAYMENT"' in content


class TestExcelExport:
    """Tests for Excel export."""

    def test_workbook_layout(self, clean_statement):
        artifact = export_transactions(clean_statement.transactions, "xlsx", "Chase Bank", PERIOD)
        wb = load_workbook(io.BytesIO(artifact.content))
        ws = wb["Bank Statement"]

        assert ws["A1"].value == "Chase Bank Statement"
        assert ws["A2"].value == "Period: 2024-01-01 to 2024-01-31"
        assert ws["A4"].value == "Date"
        assert ws["B5"].value == "PAYROLL DIRECT DEPOSIT"
        assert ws["B9"].value == "TOTAL DEBITS"
        assert ws["C9"].value == pytest.approx(200.0)
        assert ws["D10"].value == pytest.approx(500.0)
        assert ws["E11"].value == pytest.approx(300.0)
        assert ws.freeze_panes == "A5"
        assert artifact.mime_type == MIME_TYPES[ExportFormat.XLSX]

    def test_excel_alias(self, clean_statement):
        artifact = export_transactions(clean_statement.transactions, "excel", "Chase Bank", PERIOD)

        assert artifact.filename.endswith(".xlsx")

    def test_audit_sheet(self, clean_statement, audit_engine: AuditEngine):
        clean_statement.closing_balance = clean_statement.closing_balance + 100
        audit = audit_engine.run_full_audit(clean_statement)

        artifact = export_transactions(
            clean_statement.transactions, "xlsx", "Chase Bank", PERIOD, audit=audit
        )
        ws = load_workbook(io.BytesIO(artifact.content))["Audit"]
        values = [row[0] for row in ws.iter_rows(values_only=True)]

        assert "AUDIT SUMMARY" in values
        assert "ISSUES" in values
        assert "RECOMMENDATIONS" in values
        assert "balance-1" in values


class TestExportErrors:
    """Tests for rejected exports."""

    def test_empty_transactions(self):
        with pytest.raises(ExportError) as exc_info:
            export_transactions([], "csv")

        assert exc_info.value.error_code == "SAE-500"

    def test_unknown_format(self, make_transaction):
        with pytest.raises(ExportError) as exc_info:
            export_transactions([make_transaction()], "pdf")

        assert exc_info.value.details["format"] == "pdf"


class TestFilename:
    """Tests for build_base_filename."""

    def test_without_bank_or_period(self):
        assert build_base_filename(None, None) == f"bank_statement_{date.today().isoformat()}"

    def test_whitespace_collapsed(self):
        assert build_base_filename("Bank  of America", PERIOD) == (
            "bank_of_america_statement_2024-01-01_to_2024-01-31"
        )
