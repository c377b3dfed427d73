"""
Report Service

Run reports for finance:
- JSON: run summary, discrepancy summary and match rows
- XLSX: Summary, Transactions and Discrepancies sheets (openpyxl)

Match rows are capped at REPORTS_MAX_ROWS; the summary notes truncation.
"""

import io
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from reconciliation.services.reconciliation_store import ReconciliationStore

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

SUMMARY_FIELDS = [
    ("supplier_code", "Supplier"),
    ("file_name", "File"),
    ("file_received_at", "Received"),
    ("status", "Status"),
    ("failure_reason", "Failure reason"),
    ("completed_at", "Completed"),
    ("total_supplier_records", "Supplier records"),
    ("total_platform_records", "Platform records"),
    ("matched_exact", "Exact matches"),
    ("matched_fuzzy", "Fuzzy matches"),
    ("unmatched_supplier", "Unmatched supplier"),
    ("unmatched_platform", "Unmatched platform"),
    ("auto_resolved", "Auto-resolved"),
    ("manual_review_required", "Manual review"),
    ("supplier_total_amount_cents", "Supplier total (cents)"),
    ("platform_total_amount_cents", "Platform total (cents)"),
    ("amount_variance_cents", "Amount variance (cents)"),
    ("commission_variance_cents", "Commission variance (cents)"),
    ("match_rate", "Match rate (%)"),
    ("processing_time_ms", "Processing time (ms)"),
]

TRANSACTION_COLUMNS = [
    "match_index", "match_status", "confidence_score", "match_method",
    "supplier_transaction_id", "platform_transaction_id",
    "supplier_reference", "platform_reference",
    "supplier_amount_cents", "platform_amount_cents",
    "supplier_commission_cents", "platform_commission_cents",
    "supplier_status", "platform_status",
    "supplier_timestamp", "platform_timestamp",
    "has_discrepancy", "discrepancy_type", "severity",
    "resolution_status", "resolution_method", "resolved_by", "resolved_at",
]

DISCREPANCY_COLUMNS = [
    "match_index", "type", "field", "supplier", "platform", "difference", "severity",
    "resolution_status",
]


def _cell(value: Any) -> Any:
    """Excel cells take naive datetimes and scalars only."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, (dict, list)):
        return str(value)
    return value


def discrepancy_rows(matches: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One row per discrepancy entry across all matches."""
    rows = []
    for match in matches:
        for entry in match.get("discrepancy_details") or []:
            rows.append({
                "match_index": match.get("match_index"),
                "type": entry.get("type"),
                "field": entry.get("field"),
                "supplier": entry.get("supplier"),
                "platform": entry.get("platform"),
                "difference": entry.get("difference"),
                "severity": entry.get("severity"),
                "resolution_status": match.get("resolution_status"),
            })
    return rows


class ReportService:
    """Builds run reports from persisted runs and matches."""

    def __init__(self, db: AsyncSession, max_rows: Optional[int] = None):
        self.db = db
        self.store = ReconciliationStore(db)
        self.max_rows = max_rows or settings.REPORTS_MAX_ROWS

    async def build_report(self, run_id: str) -> Dict[str, Any]:
        """
        Collect everything a report needs.

        Raises:
            ValueError: run not found
        """
        run = await self.store.get_run(run_id)
        if run is None:
            raise ValueError(f"Run {run_id} not found")

        total = await self.store.count_matches(run_id)
        matches = await self.store.get_matches(run_id, limit=self.max_rows)

        return {
            "run": run,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_matches": total,
            "truncated": total > len(matches),
            "discrepancy_summary": run.get("discrepancy_summary") or {},
            "matches": matches,
            "discrepancies": discrepancy_rows(matches),
        }

    async def json_report(self, run_id: str) -> Dict[str, Any]:
        report = await self.build_report(run_id)
        report["run"] = {k: _jsonable(v) for k, v in report["run"].items()}
        report["matches"] = [{k: _jsonable(v) for k, v in m.items()} for m in report["matches"]]
        return report

    async def xlsx_report(self, run_id: str) -> bytes:
        report = await self.build_report(run_id)
        return render_xlsx(report)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def render_xlsx(report: Dict[str, Any]) -> bytes:
    """Render a report dict to XLSX bytes."""
    run = report["run"]
    workbook = Workbook()
    bold = Font(bold=True)

    summary_sheet = workbook.active
    summary_sheet.title = "Summary"
    summary_sheet.append(["Reconciliation run", str(run.get("id"))])
    summary_sheet["A1"].font = bold
    for key, label in SUMMARY_FIELDS:
        summary_sheet.append([label, _cell(run.get(key))])
    summary_sheet.append(["Generated", report["generated_at"]])
    if report["truncated"]:
        summary_sheet.append([
            "Note",
            f"Transactions truncated to {len(report['matches'])} of {report['total_matches']} rows",
        ])
    file_level = (report.get("discrepancy_summary") or {}).get("file_level") or []
    if file_level:
        summary_sheet.append([])
        summary_sheet.append(["File-level discrepancies"])
        summary_sheet.cell(row=summary_sheet.max_row, column=1).font = bold
        summary_sheet.append(["Section", "Field", "Declared", "Calculated"])
        for entry in file_level:
            summary_sheet.append([
                entry.get("section"), entry.get("field"),
                _cell(entry.get("declared")), _cell(entry.get("calculated")),
            ])
    summary_sheet.column_dimensions["A"].width = 30
    summary_sheet.column_dimensions["B"].width = 40

    transactions = workbook.create_sheet("Transactions")
    transactions.append(TRANSACTION_COLUMNS)
    for cell in transactions[1]:
        cell.font = bold
    for match in report["matches"]:
        transactions.append([_cell(match.get(column)) for column in TRANSACTION_COLUMNS])

    discrepancies = workbook.create_sheet("Discrepancies")
    discrepancies.append(DISCREPANCY_COLUMNS)
    for cell in discrepancies[1]:
        cell.font = bold
    for row in report["discrepancies"]:
        discrepancies.append([_cell(row.get(column)) for column in DISCREPANCY_COLUMNS])

    buffer = io.BytesIO()
    workbook.save(buffer)
    logger.info(
        f"Rendered XLSX report for run {run.get('id')}",
        extra={"run_id": str(run.get("id")), "rows": len(report["matches"])}
    )
    return buffer.getvalue()
