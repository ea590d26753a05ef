"""Pre-flight validation of proposed sales.

The validator never mutates anything, so front-ends may call it while a sale
is still being composed. The sale engine calls it again, under its lock,
right before committing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from .data_manager import Drug, normalize_id
from .money import line_total, to_decimal


@dataclass(frozen=True)
class SaleLineItem:
    """One drug, quantity and price entry of a sale that is not yet committed.

    ``unit_price`` of ``None`` means the drug's catalogue price applies when
    the sale is processed.
    """

    drug_id: Optional[str]
    qty: int
    drug_name: Optional[str] = None
    unit_price: Optional[Decimal] = None

    @property
    def line_total(self) -> Decimal:
        return line_total(self.qty, self.unit_price)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "SaleLineItem":
        """Build a line item from a loosely shaped mapping.

        Accepts ``drugId``/``drug_id``, ``qty``/``quantity``,
        ``drugName``/``drug_name`` and ``price``/``unitPrice``/``unit_price``.
        Quantities that are not positive whole numbers become ``0`` so the
        validator reports them as invalid entries.
        """

        qty_raw = raw.get("qty") or raw.get("quantity")
        qty_value = to_decimal(qty_raw)
        qty = int(qty_value) if qty_value == qty_value.to_integral_value() else 0

        price_raw = raw.get("price", raw.get("unitPrice", raw.get("unit_price")))
        unit_price = to_decimal(price_raw) if price_raw not in (None, "") else None

        drug_name = raw.get("drugName") or raw.get("drug_name")
        return cls(
            drug_id=normalize_id(raw.get("drugId", raw.get("drug_id"))),
            qty=qty,
            drug_name=str(drug_name) if drug_name else None,
            unit_price=unit_price,
        )


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of :func:`validate_sale_request`."""

    ok: bool
    issues: List[str] = field(default_factory=list)


def coerce_line_items(items: Iterable[Union[SaleLineItem, Mapping[str, Any]]]) -> List[SaleLineItem]:
    """Convert mappings to :class:`SaleLineItem` and pass line items through."""

    return [item if isinstance(item, SaleLineItem) else SaleLineItem.from_mapping(item) for item in items]


def _stock_levels(drugs: Iterable[Union[Drug, Mapping[str, Any]]]) -> Dict[str, int]:
    levels: Dict[str, int] = {}
    for drug in drugs:
        if isinstance(drug, Drug):
            levels[drug.id] = drug.quantity
            continue
        drug_id = normalize_id(drug.get("id"))
        if drug_id is not None:
            levels[drug_id] = int(to_decimal(drug.get("quantity")))
    return levels


def _is_positive_count(qty: Any) -> bool:
    # Units are whole numbers; bool is an int subclass but never a count.
    return isinstance(qty, int) and not isinstance(qty, bool) and qty > 0


def validate_sale_request(
    drugs: Iterable[Union[Drug, Mapping[str, Any]]],
    items: Iterable[Union[SaleLineItem, Mapping[str, Any]]],
) -> ValidationResult:
    """Check every line of a proposed sale against current stock.

    Each line is checked on its own, so one bad line does not hide problems
    on the others. Quantities requested for the same drug on several lines
    are added up before comparing with stock; a drug that is over-committed
    is reported once, on the line where the running total first exceeds the
    stock on hand.

    Args:
        drugs (Iterable[Drug | Mapping]): Current inventory.
        items (Iterable[SaleLineItem | Mapping]): Proposed sale lines.

    Returns:
        ValidationResult: ``ok`` is ``True`` only when no issue was found.
            Any issue rejects the whole sale.
    """

    levels = _stock_levels(drugs)
    requested: Dict[str, int] = {}
    reported: Set[str] = set()
    issues: List[str] = []

    for item in coerce_line_items(items):
        drug_id = item.drug_id
        if not drug_id or not _is_positive_count(item.qty):
            issues.append(f"Invalid entry for {item.drug_name or 'Unknown item'}")
            continue

        label = item.drug_name or drug_id
        if drug_id not in levels:
            issues.append(f"Drug not found: {label}")
            continue

        requested[drug_id] = requested.get(drug_id, 0) + item.qty
        current_stock = levels[drug_id]
        if requested[drug_id] > current_stock and drug_id not in reported:
            reported.add(drug_id)
            issues.append(
                f"Insufficient stock for {label} (have {current_stock}, need {requested[drug_id]})"
            )

    return ValidationResult(ok=not issues, issues=issues)


__all__ = [
    "SaleLineItem",
    "ValidationResult",
    "coerce_line_items",
    "validate_sale_request",
]
