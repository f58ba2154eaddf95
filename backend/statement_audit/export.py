"""
Transaction export to CSV and Excel.

The Excel workbook carries a "Bank Statement" sheet and, when an audit
result is supplied, an "Audit" sheet with the score, issues and
recommendations.
"""

import csv
import io
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import structlog
from openpyxl import Workbook
from openpyxl.cell.cell import MergedCell
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from backend.exceptions import ExportError
from backend.statement_audit.models import AuditResult, Transaction

logger = structlog.get_logger(__name__)

COLUMNS = ["Date", "Description", "Debit", "Credit", "Balance", "Category", "Check #", "Reference"]

CENT = Decimal("0.01")


class ExportFormat(str, Enum):
    """Supported export formats."""
    CSV = "csv"
    XLSX = "xlsx"


MIME_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

FORMAT_ALIASES = {"csv": ExportFormat.CSV, "xlsx": ExportFormat.XLSX, "excel": ExportFormat.XLSX}


@dataclass
class ExportArtifact:
    """Exported file contents."""
    content: bytes
    filename: str
    mime_type: str


def export_transactions(
    transactions: Sequence[Transaction],
    fmt: str,
    bank_name: Optional[str] = None,
    period: Optional[Tuple[str, str]] = None,
    audit: Optional[AuditResult] = None,
) -> ExportArtifact:
    """
    Export transactions as CSV or Excel.

    Args:
        transactions: Transactions to export.
        fmt: "csv", "xlsx" or "excel".
        bank_name: Institution name for the title row and filename.
        period: (start, end) statement period.
        audit: Audit result to include as an extra sheet (Excel only).

    Returns:
        ExportArtifact with bytes, filename and MIME type.

    Raises:
        ExportError: No transactions, or unsupported format.
    """
    if not transactions:
        raise ExportError("No transactions provided")

    export_format = FORMAT_ALIASES.get((fmt or "").lower())
    if export_format is None:
        raise ExportError(
            f"Invalid format '{fmt}'",
            details={"format": fmt, "supported": sorted(FORMAT_ALIASES)},
        )

    filename = f"{build_base_filename(bank_name, period)}.{export_format.value}"

    if export_format == ExportFormat.CSV:
        content = _export_csv(transactions)
    else:
        content = TransactionWorkbookBuilder().build(transactions, bank_name, period, audit)

    logger.info(
        "Transactions exported",
        format=export_format.value,
        transactions=len(transactions),
        filename=filename,
        size=len(content),
    )
    return ExportArtifact(content=content, filename=filename, mime_type=MIME_TYPES[export_format])


def build_base_filename(bank_name: Optional[str], period: Optional[Tuple[str, str]]) -> str:
    """`{bank}_statement_{start}_to_{end}`, or today's date without a period."""
    bank = "_".join(bank_name.lower().split()) if bank_name and bank_name.strip() else "bank"
    if period:
        date_part = f"{period[0]}_to_{period[1]}"
    else:
        date_part = date.today().isoformat()
    return f"{bank}_statement_{date_part}"


def totals(transactions: Sequence[Transaction]) -> Tuple[Decimal, Decimal]:
    debits = sum((t.debit or Decimal("0") for t in transactions), Decimal("0"))
    credits = sum((t.credit or Decimal("0") for t in transactions), Decimal("0"))
    return debits, credits


def _money(value: Optional[Decimal]) -> str:
    if value is None:
        return ""
    return str(value.quantize(CENT, rounding=ROUND_HALF_UP))


def _export_csv(transactions: Sequence[Transaction]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(COLUMNS)

    for txn in transactions:
        writer.writerow([
            txn.date or "",
            txn.description or "",
            _money(txn.debit),
            _money(txn.credit),
            _money(txn.balance),
            txn.category or "",
            txn.check_number or "",
            txn.reference or "",
        ])

    total_debits, total_credits = totals(transactions)
    writer.writerow([])
    writer.writerow(["", "TOTAL DEBITS", _money(total_debits), "", "", "", "", ""])
    writer.writerow(["", "TOTAL CREDITS", "", _money(total_credits), "", "", "", ""])
    writer.writerow(["", "NET CHANGE", "", "", _money(total_credits - total_debits), "", "", ""])

    return buffer.getvalue().encode("utf-8")


class TransactionWorkbookBuilder:
    """Builds the Excel export workbook."""

    HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
    HEADER_FONT = Font(bold=True, color="FFFFFF")
    TOTAL_FILL = PatternFill(start_color="E6E6E6", end_color="E6E6E6", fill_type="solid")
    TOTAL_FONT = Font(bold=True)
    TITLE_FONT = Font(bold=True, size=14)
    SECTION_FILL = PatternFill(start_color="D9E2F3", end_color="D9E2F3", fill_type="solid")
    BORDER = Border(
        left=Side(style='thin'),
        right=Side(style='thin'),
        top=Side(style='thin'),
        bottom=Side(style='thin'),
    )
    MONEY_FORMAT = "#,##0.00"
    SEVERITY_FILLS = {
        "error": PatternFill(start_color="F8CBAD", end_color="F8CBAD", fill_type="solid"),
        "warning": PatternFill(start_color="FFE699", end_color="FFE699", fill_type="solid"),
        "info": PatternFill(start_color="DDEBF7", end_color="DDEBF7", fill_type="solid"),
    }

    def build(
        self,
        transactions: Sequence[Transaction],
        bank_name: Optional[str],
        period: Optional[Tuple[str, str]],
        audit: Optional[AuditResult],
    ) -> bytes:
        wb = Workbook()
        ws = wb.active
        ws.title = "Bank Statement"

        self._write_statement_sheet(ws, transactions, bank_name, period)

        if audit is not None:
            self._write_audit_sheet(wb.create_sheet("Audit"), audit)

        buffer = io.BytesIO()
        wb.save(buffer)
        return buffer.getvalue()

    def _write_statement_sheet(self, ws, transactions, bank_name, period) -> None:
        row = 1
        if bank_name:
            cell = ws.cell(row=row, column=1, value=f"{bank_name} Statement")
            cell.font = self.TITLE_FONT
            ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=len(COLUMNS))
            row += 1
        if period:
            ws.cell(row=row, column=1, value=f"Period: {period[0]} to {period[1]}")
            ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=len(COLUMNS))
            row += 1
        if row > 1:
            row += 1

        for col, header in enumerate(COLUMNS, 1):
            cell = ws.cell(row=row, column=col, value=header)
            cell.font = self.HEADER_FONT
            cell.fill = self.HEADER_FILL
            cell.border = self.BORDER
            cell.alignment = Alignment(horizontal="center")
        ws.freeze_panes = ws.cell(row=row + 1, column=1)
        row += 1

        for txn in transactions:
            values = [
                txn.date or "",
                txn.description or "",
                txn.debit,
                txn.credit,
                txn.balance,
                txn.category or "",
                txn.check_number or "",
                txn.reference or "",
            ]
            for col, value in enumerate(values, 1):
                cell = ws.cell(row=row, column=col, value=value)
                cell.border = self.BORDER
                if col in (3, 4, 5):
                    cell.number_format = self.MONEY_FORMAT
            row += 1

        total_debits, total_credits = totals(transactions)
        row += 1
        for label, column, value in (
            ("TOTAL DEBITS", 3, total_debits),
            ("TOTAL CREDITS", 4, total_credits),
            ("NET CHANGE", 5, total_credits - total_debits),
        ):
            ws.cell(row=row, column=2, value=label)
            ws.cell(row=row, column=column, value=value.quantize(CENT, rounding=ROUND_HALF_UP))
            for col in range(1, len(COLUMNS) + 1):
                cell = ws.cell(row=row, column=col)
                cell.font = self.TOTAL_FONT
                cell.fill = self.TOTAL_FILL
            ws.cell(row=row, column=column).number_format = self.MONEY_FORMAT
            row += 1

        self._auto_fit_columns(ws)

    def _write_audit_sheet(self, ws, audit: AuditResult) -> None:
        summary = audit.summary
        row = self._write_section_header(ws, 1, "AUDIT SUMMARY")
        for label, value in (
            ("Score", audit.score),
            ("Passed", "Yes" if audit.passed else "No"),
            ("Checks Passed", f"{summary.passed_checks}/{summary.total_checks}"),
            ("Errors", summary.errors),
            ("Warnings", summary.warnings),
            ("Info", summary.info),
        ):
            ws.cell(row=row, column=1, value=label).font = Font(bold=True)
            ws.cell(row=row, column=2, value=value)
            row += 1

        row = self._write_section_header(ws, row + 1, "ISSUES")
        headers = ["ID", "Pass", "Severity", "Type", "Transactions", "Message", "Suggested Fix"]
        for col, header in enumerate(headers, 1):
            cell = ws.cell(row=row, column=col, value=header)
            cell.font = self.HEADER_FONT
            cell.fill = self.HEADER_FILL
        row += 1

        for issue in audit.issues:
            values = [
                issue.id,
                issue.audit_pass.value,
                issue.severity.value,
                issue.type.value,
                ", ".join(issue.transaction_ids),
                issue.message,
                issue.suggested_fix or "",
            ]
            for col, value in enumerate(values, 1):
                ws.cell(row=row, column=col, value=value)
            ws.cell(row=row, column=3).fill = self.SEVERITY_FILLS[issue.severity.value]
            row += 1

        if audit.recommendations:
            row = self._write_section_header(ws, row + 1, "RECOMMENDATIONS")
            for text in audit.recommendations:
                ws.cell(row=row, column=1, value=text)
                row += 1

        self._auto_fit_columns(ws)

    def _write_section_header(self, ws, row: int, title: str) -> int:
        cell = ws.cell(row=row, column=1, value=title)
        cell.font = Font(bold=True)
        cell.fill = self.SECTION_FILL
        ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=6)
        return row + 1

    def _auto_fit_columns(self, ws) -> None:
        widths: List[int] = []
        for row in ws.iter_rows():
            for cell in row:
                if cell.value is None or isinstance(cell, MergedCell):
                    continue
                index = cell.column - 1
                while len(widths) <= index:
                    widths.append(0)
                widths[index] = max(widths[index], len(str(cell.value)))

        for index, width in enumerate(widths, 1):
            ws.column_dimensions[get_column_letter(index)].width = min(width + 2, 50)
