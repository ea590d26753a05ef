"""Money and quantity arithmetic for sales.

Everything here is pure: no logging, no storage access, no exceptions for
malformed input. Values that cannot be interpreted as finite numbers simply
contribute zero, which keeps the running total shown while a sale is being
composed stable even when a line is half-typed.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from decimal import (
    ROUND_HALF_UP,
    Decimal,
    InvalidOperation,
    Overflow,
    localcontext,
)
from typing import Any, Iterable, Iterator, Mapping

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class SaleSummary:
    """Totals derived from the line items of an in-progress sale."""

    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    grand_total: Decimal
    change_due: Decimal
    total_units: Decimal


def to_decimal(value: Any) -> Decimal:
    """Coerce ``value`` into a finite :class:`~decimal.Decimal`.

    ``None``, booleans, non-numeric strings, NaN and infinities all become
    zero. Floats go through ``str`` so ``0.1`` stays ``Decimal("0.1")``.

    Args:
        value (Any): Raw value from a line item, a form field, or a stored
            document.

    Returns:
        Decimal: The numeric value, or ``Decimal("0")`` when it is unusable.
    """

    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        candidate = value
    elif isinstance(value, (int, float)):
        candidate = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return ZERO
        try:
            candidate = Decimal(text)
        except InvalidOperation:
            return ZERO
    else:
        return ZERO
    return candidate if candidate.is_finite() else ZERO


@contextmanager
def _lenient_context() -> Iterator[None]:
    # Overflow and invalid results become infinities or NaN, which round2
    # and to_decimal map to zero.
    with localcontext() as ctx:
        ctx.traps[Overflow] = False
        ctx.traps[InvalidOperation] = False
        yield


def round2(value: Any) -> Decimal:
    """Round to cents, half away from zero.

    Precision is widened to fit every integer digit of ``value``, so large
    amounts are rounded instead of raising. Amounts at or beyond the context
    exponent limit come back as zero, like any other unusable value.
    """

    amount = to_decimal(value)
    with localcontext() as ctx:
        if amount.adjusted() >= ctx.Emax:
            return ZERO
        ctx.prec = max(ctx.prec, amount.adjusted() + 3)
        try:
            rounded = amount.quantize(CENT, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            return ZERO
    return rounded if rounded.is_finite() else ZERO


def line_total(quantity: Any, unit_price: Any) -> Decimal:
    """Return ``round2(quantity * unit_price)`` for a single sale line."""

    with _lenient_context():
        return round2(to_decimal(quantity) * to_decimal(unit_price))


def _read_field(item: Any, *names: str) -> Any:
    # First truthy field wins, matching how stored line items name totals.
    for name in names:
        if isinstance(item, Mapping):
            value = item.get(name)
        else:
            value = getattr(item, name, None)
        if value:
            return value
    return None


def _normalize_tax_rate(tax_rate_percent: Any) -> Decimal:
    return max(ZERO, to_decimal(tax_rate_percent)) / HUNDRED


def _normalize_discount_rate(discount_rate_percent: Any) -> Decimal:
    return min(max(ZERO, to_decimal(discount_rate_percent)), HUNDRED) / HUNDRED


def calculate_sale_summary(
    items: Iterable[Any],
    tax_rate_percent: Any = 0,
    discount_rate_percent: Any = 0,
    cash_received: Any = 0,
) -> SaleSummary:
    """Compute subtotal, tax, discount, grand total and change for a sale.

    Each line contributes its total (``total``, ``lineTotal`` or
    ``line_total``) and its unit count (``quantity`` or ``qty``); mappings and
    objects such as :class:`~pharmastore.validation.SaleLineItem` are both
    accepted. Tax and discount are each rounded from the unrounded subtotal,
    and the grand total is rounded from those rounded parts.

    Args:
        items (Iterable[Any]): Line items of the sale being composed.
        tax_rate_percent (Any): Tax rate in percent; negatives count as zero.
        discount_rate_percent (Any): Discount rate in percent, clamped to
            ``[0, 100]``.
        cash_received (Any): Cash tendered by the customer.

    Returns:
        SaleSummary: Totals rounded to cents. ``change_due`` is negative when
            the customer still owes money.
    """

    tax_rate = _normalize_tax_rate(tax_rate_percent)
    discount_rate = _normalize_discount_rate(discount_rate_percent)

    with _lenient_context():
        subtotal = ZERO
        total_units = ZERO
        for item in items:
            subtotal += to_decimal(_read_field(item, "total", "lineTotal", "line_total"))
            total_units += to_decimal(_read_field(item, "quantity", "qty"))

        tax_amount = round2(subtotal * tax_rate)
        discount_amount = round2(subtotal * discount_rate)
        grand_total = round2(subtotal + tax_amount - discount_amount)
        change_due = round2(to_decimal(cash_received) - grand_total)

        return SaleSummary(
            subtotal=round2(subtotal),
            tax_amount=tax_amount,
            discount_amount=discount_amount,
            grand_total=grand_total,
            change_due=change_due,
            total_units=to_decimal(total_units),
        )


__all__ = [
    "SaleSummary",
    "calculate_sale_summary",
    "line_total",
    "round2",
    "to_decimal",
]
