"""Tests for the spreadsheet export."""

from __future__ import annotations

from decimal import Decimal

import openpyxl
import pytest

from pharmastore import core_logic, export
from pharmastore.constants import AdjustmentType, AuditAction
from pharmastore.validation import SaleLineItem


@pytest.fixture
def populated_context(runtime_context, make_drug):
    """Runtime context with one drug, one sale and one adjustment."""

    core_logic.add_drug(runtime_context, make_drug("d1", name="Cetirizine", quantity=10, price="2.40"))
    core_logic.process_sale(runtime_context, [SaleLineItem(drug_id="d1", qty=2)])
    core_logic.adjust_stock(
        runtime_context,
        core_logic.StockAdjustmentCommand(
            drug_id="d1",
            adjustment_type=AdjustmentType.DECREASE,
            quantity=1,
            reason="Broken blister",
        ),
    )
    return runtime_context


def test_export_workbook_writes_one_sheet_per_document(populated_context, tmp_path):
    """Every stored document is exported to its own sheet with a header row."""

    audit_events_before = len(populated_context.audit_log)

    destination = export.export_workbook(populated_context, tmp_path / "out" / "backup.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == ["Drugs", "Sales", "StockAdjustments", "AuditLog"]

    drugs = list(workbook["Drugs"].iter_rows(values_only=True))
    assert drugs[0] == tuple(export.SHEET_COLUMNS["Drugs"])
    assert drugs[1][:4] == ("d1", "Cetirizine", "Analgesic", 7)
    assert Decimal(str(drugs[1][4])) == Decimal("2.4")

    sales = list(workbook["Sales"].iter_rows(values_only=True))
    assert len(sales) == 2
    assert sales[1][4] == "Cetirizine"
    assert Decimal(str(sales[1][7])) == Decimal("4.8")

    adjustments = list(workbook["StockAdjustments"].iter_rows(values_only=True))
    assert adjustments[1][4] == "decrease"
    assert adjustments[1][8] == "Broken blister"

    audit_rows = list(workbook["AuditLog"].iter_rows(values_only=True))
    assert len(audit_rows) == audit_events_before + 1
    assert workbook["Drugs"].cell(row=1, column=1).font.bold is True


def test_export_workbook_audits_the_export(populated_context, tmp_path):
    """The export itself is recorded in the audit log."""

    export.export_workbook(populated_context, tmp_path / "backup.xlsx", actor="manager")

    event = populated_context.audit_log[-1]
    assert event.action == AuditAction.EXPORT.value
    assert event.user == "manager"
    assert "backup.xlsx" in event.details


def test_export_workbook_refuses_to_overwrite(populated_context, tmp_path):
    """Existing files are kept unless overwrite is requested."""

    target = tmp_path / "backup.xlsx"
    target.write_bytes(b"keep me")

    with pytest.raises(FileExistsError):
        export.export_workbook(populated_context, target)

    assert target.read_bytes() == b"keep me"

    export.export_workbook(populated_context, target, overwrite=True)
    assert openpyxl.load_workbook(target).sheetnames[0] == "Drugs"
