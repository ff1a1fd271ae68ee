"""
Excel export of the escalation ledger.

Generates formatted Microsoft Excel reports with:
- A styled ledger sheet, newest escalation first
- A summary sheet with counts per target level and per team
"""

import logging
from pathlib import Path
from typing import Any, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from .config import OutputConfig
from .escalations import summarize
from .models import Escalation, EscalationSummary, status_label


logger = logging.getLogger(__name__)


class ReportGeneratorError(Exception):
    """Error during report generation."""
    pass


COLUMN_CONFIG = [
    {"key": "external_id", "header": "Ticket ID", "width": 14},
    {"key": "title", "header": "Title", "width": 50},
    {"key": "from_level", "header": "From", "width": 8},
    {"key": "to_level", "header": "To", "width": 8},
    {"key": "occurred_at", "header": "Escalated At (UTC)", "width": 20},
    {"key": "escalated_by", "header": "Escalated By", "width": 22},
    {"key": "team", "header": "Team", "width": 22},
    {"key": "status", "header": "Current Status", "width": 20},
]


def sort_escalations(escalations: list[Escalation]) -> list[Escalation]:
    """Newest first; ties broken by ticket id so output is stable."""
    return sorted(escalations, key=lambda e: (e.occurred_at, e.external_id), reverse=True)


def escalation_to_row(escalation: Escalation) -> list[Any]:
    """
    Convert an Escalation to a row of values.

    Returns:
        List of cell values matching COLUMN_CONFIG order.
    """
    return [
        escalation.external_id,
        escalation.title or "",
        escalation.from_level.value,
        escalation.to_level.value,
        # openpyxl cannot write timezone-aware datetimes
        escalation.occurred_at.replace(tzinfo=None),
        escalation.escalated_by or "",
        escalation.team or "Unassigned",
        status_label(escalation.status) if escalation.status is not None else "",
    ]


class EscalationReportGenerator:
    """
    Generator for the escalation ledger workbook.

    Keeps the house style: bold white-on-blue headers, thin grey borders,
    alternating row fills and a frozen header row.
    """

    HEADER_FONT = Font(bold=True, color="FFFFFF", size=11)
    HEADER_FILL = PatternFill(start_color="2F5496", end_color="2F5496", fill_type="solid")
    HEADER_ALIGNMENT = Alignment(horizontal="center", vertical="center", wrap_text=True)

    CELL_ALIGNMENT = Alignment(vertical="top", wrap_text=True)
    CELL_BORDER = Border(
        left=Side(style="thin", color="D0D0D0"),
        right=Side(style="thin", color="D0D0D0"),
        top=Side(style="thin", color="D0D0D0"),
        bottom=Side(style="thin", color="D0D0D0"),
    )

    ROW_FILL_ODD = PatternFill(start_color="F2F2F2", end_color="F2F2F2", fill_type="solid")
    ROW_FILL_EVEN = PatternFill(start_color="FFFFFF", end_color="FFFFFF", fill_type="solid")

    DATE_FORMAT = "yyyy-mm-dd hh:mm"

    def __init__(self, config: OutputConfig):
        self._config = config

    def generate(self, escalations: list[Escalation], path: Optional[Path] = None) -> Path:
        """
        Write the escalation ledger workbook.

        Args:
            escalations: Ledger rows to export.
            path: Target file; defaults to the configured report path.

        Returns:
            Path to the generated Excel file.

        Raises:
            ReportGeneratorError: If report generation fails.
        """
        try:
            rows = sort_escalations(escalations)

            wb = Workbook()
            ws = wb.active
            ws.title = "Escalations"

            self._write_headers(ws, [c["header"] for c in COLUMN_CONFIG])
            self._write_data(ws, rows)
            self._apply_column_widths(ws, [c["width"] for c in COLUMN_CONFIG])
            ws.freeze_panes = "A2"

            self._write_summary(wb.create_sheet("Summary"), summarize(rows))

            output_path = path or self._config.report_path
            output_path.parent.mkdir(parents=True, exist_ok=True)
            wb.save(output_path)

            logger.info(f"Escalation report with {len(rows)} rows saved to: {output_path}")
            return output_path

        except Exception as e:
            logger.error(f"Failed to generate escalation report: {e}")
            raise ReportGeneratorError(f"Report generation failed: {e}") from e

    def _write_headers(self, ws: Worksheet, headers: list[str]) -> None:
        for col_idx, header in enumerate(headers, 1):
            cell = ws.cell(row=1, column=col_idx, value=header)
            cell.font = self.HEADER_FONT
            cell.fill = self.HEADER_FILL
            cell.alignment = self.HEADER_ALIGNMENT
            cell.border = self.CELL_BORDER
        ws.row_dimensions[1].height = 30

    def _write_row(self, ws: Worksheet, row_idx: int, values: list[Any]) -> None:
        fill = self.ROW_FILL_ODD if row_idx % 2 == 0 else self.ROW_FILL_EVEN
        for col_idx, value in enumerate(values, 1):
            cell = ws.cell(row=row_idx, column=col_idx, value=value)
            cell.alignment = self.CELL_ALIGNMENT
            cell.border = self.CELL_BORDER
            cell.fill = fill

    def _write_data(self, ws: Worksheet, escalations: list[Escalation]) -> None:
        date_column = [c["key"] for c in COLUMN_CONFIG].index("occurred_at") + 1
        for row_idx, escalation in enumerate(escalations, 2):
            self._write_row(ws, row_idx, escalation_to_row(escalation))
            ws.cell(row=row_idx, column=date_column).number_format = self.DATE_FORMAT

    def _write_summary(self, ws: Worksheet, summary: EscalationSummary) -> None:
        self._write_headers(ws, ["Group", "Name", "Escalations"])
        rows: list[list[Any]] = [["Total", "", summary.total]]
        rows += [["Target level", level, count] for level, count in summary.by_level.items()]
        rows += [["Team", team, count] for team, count in summary.by_team.items()]
        for row_idx, values in enumerate(rows, 2):
            self._write_row(ws, row_idx, values)
        self._apply_column_widths(ws, [16, 30, 14])

    def _apply_column_widths(self, ws: Worksheet, widths: list[int]) -> None:
        for col_idx, width in enumerate(widths, 1):
            ws.column_dimensions[get_column_letter(col_idx)].width = width


def generate_report(
    escalations: list[Escalation],
    config: OutputConfig,
    path: Optional[Path] = None,
) -> Path:
    """Convenience function to export the escalation ledger."""
    return EscalationReportGenerator(config).generate(escalations, path)
