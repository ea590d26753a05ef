"""Unit tests for the pre-flight sale validator."""

from __future__ import annotations

import copy
from decimal import Decimal

import pytest

from pharmastore.validation import SaleLineItem, coerce_line_items, validate_sale_request


# ---------------------------------------------------------------------------
# Line item coercion
# ---------------------------------------------------------------------------


def test_from_mapping_accepts_camel_and_snake_case_keys():
    """Both storage-style and Python-style keys should be understood."""

    camel = SaleLineItem.from_mapping({"drugId": 7, "qty": 2, "drugName": "Ibuprofen", "price": "3.50"})
    snake = SaleLineItem.from_mapping({"drug_id": "7", "quantity": "2", "drug_name": "Ibuprofen", "unit_price": 3.5})

    assert camel == snake
    assert camel.drug_id == "7"
    assert camel.unit_price == Decimal("3.50")


def test_from_mapping_leaves_price_unset_when_absent():
    """A missing price means the catalogue price applies later."""

    item = SaleLineItem.from_mapping({"drugId": "d1", "qty": 1})

    assert item.unit_price is None


@pytest.mark.parametrize("raw_qty", [None, "abc", 1.5, ""])
def test_from_mapping_turns_unusable_quantity_into_zero(raw_qty):
    """Quantities that are not whole numbers become zero."""

    item = SaleLineItem.from_mapping({"drugId": "d1", "qty": raw_qty})

    assert item.qty == 0


def test_coerce_line_items_passes_line_items_through():
    """Existing SaleLineItem objects are returned unchanged."""

    existing = SaleLineItem(drug_id="d1", qty=1)

    result = coerce_line_items([existing, {"drugId": "d2", "qty": 3}])

    assert result[0] is existing
    assert result[1] == SaleLineItem(drug_id="d2", qty=3)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_validate_reports_unknown_drug_by_name():
    """A line for an unknown drug is reported by its display name."""

    drugs = [{"id": "1", "quantity": 5, "name": "Drug A"}]
    items = [
        {"drugId": "1", "qty": 3},
        {"drugId": "2", "qty": 1, "drugName": "Missing Drug"},
    ]

    result = validate_sale_request(drugs, items)

    assert result.ok is False
    assert result.issues == ["Drug not found: Missing Drug"]


def test_validate_accepts_sale_within_stock(make_drug):
    """A sale that fits the available stock is valid."""

    result = validate_sale_request([make_drug("d1", quantity=5)], [SaleLineItem(drug_id="d1", qty=5)])

    assert result.ok is True
    assert result.issues == []


def test_validate_reports_insufficient_stock(make_drug):
    """Requesting more than is on hand names both quantities."""

    drugs = [make_drug("d1", name="Amoxicillin", quantity=5)]

    result = validate_sale_request(drugs, [{"drugId": "d1", "qty": 10, "drugName": "Amoxicillin"}])

    assert result.issues == ["Insufficient stock for Amoxicillin (have 5, need 10)"]


def test_validate_sums_quantities_across_lines_for_same_drug(make_drug):
    """Two lines that each fit but together oversell are rejected once."""

    drugs = [make_drug("d1", quantity=5)]
    items = [
        SaleLineItem(drug_id="d1", qty=3),
        SaleLineItem(drug_id="d1", qty=3),
        SaleLineItem(drug_id="d1", qty=1),
    ]

    result = validate_sale_request(drugs, items)

    assert result.ok is False
    assert result.issues == ["Insufficient stock for d1 (have 5, need 6)"]


def test_validate_reports_invalid_entries():
    """Lines without a drug id or with a non-positive quantity are invalid."""

    items = [
        {"drugId": "", "qty": 1, "drugName": "Blank"},
        {"drugId": "d1", "qty": 0},
        {"drugId": "d1", "qty": -2, "drugName": "Negative"},
    ]

    result = validate_sale_request([{"id": "d1", "quantity": 10}], items)

    assert result.issues == [
        "Invalid entry for Blank",
        "Invalid entry for Unknown item",
        "Invalid entry for Negative",
    ]


def test_validate_rejects_fractional_and_boolean_quantities_on_line_items():
    """Directly built line items must carry a whole, positive unit count."""

    items = [
        SaleLineItem(drug_id="d1", qty=2.5, drug_name="Half box"),
        SaleLineItem(drug_id="d1", qty=True, drug_name="Flag"),
        SaleLineItem(drug_id="d1", qty="3", drug_name="Text"),
    ]

    result = validate_sale_request([{"id": "d1", "quantity": 10}], items)

    assert result.issues == [
        "Invalid entry for Half box",
        "Invalid entry for Flag",
        "Invalid entry for Text",
    ]


def test_validate_collects_every_issue_without_short_circuit(make_drug):
    """One bad line does not hide problems on the others."""

    drugs = [make_drug("d1", name="Drug A", quantity=1)]
    items = [
        {"drugId": "", "qty": 1},
        {"drugId": "zz", "qty": 1},
        {"drugId": "d1", "qty": 2, "drugName": "Drug A"},
    ]

    result = validate_sale_request(drugs, items)

    assert len(result.issues) == 3
    assert result.issues[1] == "Drug not found: zz"
    assert result.issues[2].startswith("Insufficient stock for Drug A")


def test_validate_matches_legacy_numeric_ids():
    """Numeric ids stored by older versions match string ids on line items."""

    drugs = [{"id": 12, "quantity": 4}, {"id": 13.0, "quantity": 1}]
    items = [{"drugId": "12", "qty": 4}, {"drugId": 13, "qty": 1}]

    assert validate_sale_request(drugs, items).ok is True


def test_validate_does_not_mutate_inputs():
    """The validator is safe to call while a sale is being composed."""

    drugs = [{"id": "d1", "quantity": 2}]
    items = [{"drugId": "d1", "qty": 3}]
    drugs_before = copy.deepcopy(drugs)
    items_before = copy.deepcopy(items)

    validate_sale_request(drugs, items)

    assert drugs == drugs_before
    assert items == items_before
