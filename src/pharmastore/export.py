"""Spreadsheet export of the PharmaStore documents.

Produces an ``.xlsx`` backup with one sheet per stored document so the
inventory and sale history can be reviewed or archived outside the
application.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import audit, data_manager, log
from .constants import AuditAction

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    "Drugs": ["ID", "Name", "Category", "Quantity", "Price", "Expiry", "Supplier"],
    "Sales": [
        "SaleID",
        "Date",
        "Time",
        "DrugID",
        "DrugName",
        "Quantity",
        "UnitPrice",
        "LineTotal",
        "CustomerName",
        "PaymentMethod",
        "SoldBy",
    ],
    "StockAdjustments": [
        "AdjustmentID",
        "Timestamp",
        "DrugID",
        "DrugName",
        "Type",
        "OldQuantity",
        "NewQuantity",
        "Delta",
        "Reason",
        "AdjustedBy",
    ],
    "AuditLog": ["Timestamp", "Action", "Details", "User"],
}


def drug_row(record: data_manager.Drug) -> List[object]:
    return [
        record.id,
        record.name,
        record.category,
        record.quantity,
        record.price,
        record.expiry,
        record.supplier,
    ]


def sale_row(record: data_manager.SaleRecord) -> List[object]:
    return [
        record.id,
        record.date,
        record.time,
        record.drug_id,
        record.drug_name,
        record.quantity,
        record.unit_price,
        record.line_total,
        record.customer_name,
        record.payment_method,
        record.sold_by,
    ]


def adjustment_row(record: data_manager.StockAdjustment) -> List[object]:
    return [
        record.id,
        record.timestamp,
        record.drug_id,
        record.drug_name,
        record.adjustment_type,
        record.old_quantity,
        record.new_quantity,
        record.delta,
        record.reason,
        record.adjusted_by,
    ]


def audit_row(record: data_manager.AuditEvent) -> List[object]:
    return [record.timestamp, record.action, record.details, record.user]


def _write_sheet(
    workbook: openpyxl.Workbook,
    title: str,
    rows: Iterable[object],
    to_row: Callable[[object], List[object]],
) -> int:
    worksheet = workbook.create_sheet(title=title)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(SHEET_COLUMNS[title], start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    count = 0
    for record in rows:
        worksheet.append(to_row(record))
        count += 1
    return count


def export_workbook(
    context: "RuntimeContext",
    destination: Path,
    *,
    overwrite: bool = False,
    actor: Optional[str] = None,
) -> Path:
    """Write drugs, sales, stock adjustments and the audit log to ``destination``.

    The audit sheet is written before the export itself is audited, so it
    reflects the log as it was when the export started.

    Args:
        context (RuntimeContext): Runtime state to export.
        destination (Path): Target ``.xlsx`` path; parent folders are
            created on demand.
        overwrite (bool): Replace an existing file when ``True``.
        actor (str | None): Who requested the export.

    Returns:
        Path: Resolved path of the written workbook.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is
            ``False``.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing export: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    with context.lock:
        counts = {
            "Drugs": _write_sheet(workbook, "Drugs", context.drugs, drug_row),
            "Sales": _write_sheet(workbook, "Sales", context.sales, sale_row),
            "StockAdjustments": _write_sheet(
                workbook, "StockAdjustments", context.stock_adjustments, adjustment_row
            ),
            "AuditLog": _write_sheet(workbook, "AuditLog", context.audit_log, audit_row),
        }

    workbook.save(destination)
    summary = ", ".join(f"{count} {name}" for name, count in counts.items())
    log.info("Exported workbook '%s' (%s)", destination, summary)
    audit.record(context, AuditAction.EXPORT, f"Exported {summary} to {destination.name}", actor=actor)
    return destination


__all__ = ["SHEET_COLUMNS", "export_workbook"]
