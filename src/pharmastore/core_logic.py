"""Business logic layer for PharmaStore.

This module contains the sale engine: the inventory ledger, the sale
processor, sale reversal, and manual stock adjustments. It consumes the data
access layer for all I/O while ensuring every mutation passes through the
domain rules: stock never goes negative, a sale is applied entirely or not at
all, and deleting a sale gives back the stock it consumed.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from . import audit, data_manager, log, set_log_directory
from .constants import (
    DEFAULT_CUSTOMER_NAME,
    EXPECTED_SCHEMA_VERSION,
    UNKNOWN_ACTOR,
    AdjustmentType,
    AuditAction,
    PaymentMethod,
)
from .data_manager import Drug, SaleRecord, StockAdjustment
from .money import ZERO, line_total, round2
from .validation import SaleLineItem, coerce_line_items, validate_sale_request


STORAGE_WARNING = (
    "Changes were applied but could not be saved ({error}). "
    "Local state is ahead of storage; retry the save before closing."
)
EDITABLE_DRUG_FIELDS = ("name", "category", "quantity", "price", "expiry", "supplier")
DRUG_EDIT_REASON = "Drug record edited"


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced drug or sale is unknown."""


class ValidationRejected(BusinessRuleViolation):
    """Raised when a sale is rejected before any state is touched."""

    def __init__(self, issues: Iterable[str]) -> None:
        self.issues: List[str] = list(issues)
        super().__init__("; ".join(self.issues) or "Sale rejected")


@dataclass
class RuntimeContext:
    """Container for settings, the store, and the in-memory ledgers.

    ``lock`` guards the drug and sale lists: validation, mutation and
    persistence of one sale, reversal or adjustment happen while holding it.
    """

    settings: data_manager.ConfigSettings
    store: data_manager.JsonFileStore
    drugs: List[Drug] = field(default_factory=list)
    sales: List[SaleRecord] = field(default_factory=list)
    audit_log: List[data_manager.AuditEvent] = field(default_factory=list)
    stock_adjustments: List[StockAdjustment] = field(default_factory=list)
    actor: Optional[str] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class SaleOptions:
    """Sale-wide details shared by every line of one sale."""

    customer_name: Optional[str] = None
    payment_method: Optional[Union[PaymentMethod, str]] = None
    sold_by: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class StockAdjustmentCommand:
    """User intent for a manual stock correction."""

    drug_id: str
    adjustment_type: AdjustmentType
    quantity: int
    reason: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleResult:
    """Records created by :func:`process_sale` and whether they were saved."""

    records: List[SaleRecord]
    persisted: bool = True
    warning: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return round2(sum((record.line_total for record in self.records), ZERO))


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of :func:`delete_sale`."""

    record: SaleRecord
    stock_restored: bool
    persisted: bool = True
    warning: Optional[str] = None


@dataclass(frozen=True)
class AdjustmentResult:
    """Outcome of :func:`adjust_stock`."""

    adjustment: StockAdjustment
    drug: Drug
    persisted: bool = True
    warning: Optional[str] = None


@dataclass(frozen=True)
class DrugResult:
    """Outcome of the drug maintenance operations."""

    drug: Drug
    persisted: bool = True
    warning: Optional[str] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _persist(context: RuntimeContext, *steps: Callable[[], None]) -> Tuple[bool, Optional[str]]:
    """Run persistence steps in order, converting a storage failure to a warning.

    The in-memory state is already updated when this runs and is not rolled
    back; the caller reports the warning so the operator can retry with
    :func:`persist_context`.

    Args:
        context (RuntimeContext): Runtime context being persisted.
        *steps (Callable[[], None]): Writers executed in the given order. The
            first failure stops the remaining writes.

    Returns:
        tuple[bool, str | None]: ``(True, None)`` on success, otherwise
            ``(False, warning)``.
    """

    try:
        for step in steps:
            step()
    except data_manager.StorageError as exc:
        warning = STORAGE_WARNING.format(error=exc)
        log.error("Persisting to '%s' failed: %s", context.store.data_dir, exc)
        return False, warning
    return True, None


def _save_drugs(context: RuntimeContext) -> Callable[[], None]:
    return lambda: data_manager.save_drugs(context.store, context.drugs)


def _save_sales(context: RuntimeContext) -> Callable[[], None]:
    return lambda: data_manager.save_sales(context.store, context.sales)


def _save_adjustments(context: RuntimeContext) -> Callable[[], None]:
    return lambda: data_manager.save_stock_adjustments(context.store, context.stock_adjustments)


def load_runtime_context(config_path: Optional[Path] = None, *, actor: Optional[str] = None) -> RuntimeContext:
    """Load configuration settings and every stored document.

    The helper resolves ``config.ini``, parses settings, opens the document
    store in the configured data directory and loads drugs, sales, audit
    events and stock adjustments into memory. A configured ``LogDir`` moves
    the package log file before anything is loaded.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the
            current working directory.
        actor (str | None): Who is operating this session. Defaults to
            ``DefaultActor`` from the configuration.

    Returns:
        RuntimeContext: Fully populated context.

    Raises:
        FileNotFoundError: If the configuration file or data directory cannot
            be located.
        KeyError: When mandatory configuration options are missing.
        data_manager.StorageError: If a stored document is unreadable.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    if settings.log_dir is not None:
        set_log_directory(settings.log_dir)
    if not settings.data_dir.is_dir():
        raise FileNotFoundError(f"Data directory not found: {settings.data_dir}")
    store = data_manager.JsonFileStore(settings.data_dir)
    context = _load_documents(settings, store, actor=actor or settings.default_actor)
    log.info("Loaded runtime context for data directory '%s'", settings.data_dir)
    return context


def _load_documents(
    settings: data_manager.ConfigSettings,
    store: data_manager.JsonFileStore,
    *,
    actor: Optional[str],
) -> RuntimeContext:
    context = RuntimeContext(
        settings=settings,
        store=store,
        drugs=data_manager.load_drugs(store),
        sales=data_manager.load_sales(store),
        audit_log=data_manager.load_audit_log(store),
        stock_adjustments=data_manager.load_stock_adjustments(store),
        actor=actor,
    )
    log.debug(
        "Loaded %d drugs, %d sales, %d audit events, %d adjustments",
        len(context.drugs),
        len(context.sales),
        len(context.audit_log),
        len(context.stock_adjustments),
    )
    return context


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate stored data compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write every in-memory document back to the store.

    This is the retry path after an operation reported ``persisted=False``.
    Drugs are written first so a partial failure never leaves recorded sales
    without the stock movement that produced them.

    Raises:
        data_manager.StorageError: If any document cannot be written.
    """
    with context.lock:
        data_manager.save_drugs(context.store, context.drugs)
        data_manager.save_sales(context.store, context.sales)
        data_manager.save_stock_adjustments(context.store, context.stock_adjustments)
        data_manager.save_audit_log(context.store, context.audit_log)
    log.info("Persisted all documents to '%s'", context.store.data_dir)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload every document, discarding unsaved in-memory changes.

    Returns:
        RuntimeContext: Fresh context sharing settings, store and actor.
    """
    fresh = _load_documents(context.settings, context.store, actor=context.actor)
    log.info("Reloaded documents from '%s'", context.store.data_dir)
    return fresh


def set_actor(context: RuntimeContext, actor: Optional[str]) -> None:
    """Set who is operating the session; ``None`` signs the actor out."""

    context.actor = actor
    log.info("Session actor set to '%s'", actor)


def generate_record_id(*, prefix: str = "S", when: Optional[datetime] = None) -> str:
    """Generate a sortable, unique record identifier.

    Args:
        prefix (str): Designator prepended to the identifier (``"S"`` for
            sales, ``"A"`` for stock adjustments).
        when (datetime | None): Timestamp used for the sortable part. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{random}``.

    All lines of one sale share a timestamp, so a random suffix keeps their
    identifiers distinct.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def require_whole_quantity(quantity: Any) -> int:
    """Validate that ``quantity`` is an integer (booleans excluded).

    Raises:
        ValueError: If ``quantity`` is not an ``int``.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not a whole number", quantity)
        raise ValueError("Quantity must be a whole number")
    return quantity


def require_positive_quantity(quantity: Any) -> int:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is zero, negative, or not an integer.
    """
    require_whole_quantity(quantity)
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")
    return quantity


def require_nonnegative_quantity(quantity: Any) -> int:
    """Validate that a quantity is a non-negative integer.

    Raises:
        ValueError: If ``quantity`` is negative or not an integer.
    """
    require_whole_quantity(quantity)
    if quantity < 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be zero or positive")
    return quantity


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def resolve_customer_name(value: Optional[str]) -> str:
    """Return the trimmed customer name or the walk-in default."""

    name = (value or "").strip()
    return name or DEFAULT_CUSTOMER_NAME


def resolve_payment_method(value: Optional[Union[PaymentMethod, str]]) -> str:
    """Return the stored text for a payment method, defaulting to cash.

    Raises:
        BusinessRuleViolation: If ``value`` names an unsupported method.
    """

    if value is None or value == "":
        return PaymentMethod.CASH.value
    if isinstance(value, PaymentMethod):
        return value.value
    for member in PaymentMethod:
        if value.strip().lower() == member.value.lower():
            return member.value
    log.error("Unsupported payment method provided: %s", value)
    raise BusinessRuleViolation(f"Unsupported payment method: {value}")


def resolve_actor(context: RuntimeContext, explicit: Optional[str] = None) -> str:
    """Return the acting user: explicit, then the session actor, then ``unknown``."""

    return explicit or context.actor or UNKNOWN_ACTOR


# ---------------------------------------------------------------------------
# Inventory ledger
# ---------------------------------------------------------------------------


def _drug_index(context: RuntimeContext, drug_id: Any) -> Optional[int]:
    key = data_manager.normalize_id(drug_id)
    if key is None:
        return None
    for index, drug in enumerate(context.drugs):
        if drug.id == key:
            return index
    return None


def find_drug(context: RuntimeContext, drug_id: Any) -> Optional[Drug]:
    """Return the drug with ``drug_id`` or ``None``.

    Identifiers are compared in canonical form, so a legacy numeric id such
    as ``7`` finds the drug stored as ``"7"`` and vice versa.
    """
    index = _drug_index(context, drug_id)
    return context.drugs[index] if index is not None else None


def get_drug(context: RuntimeContext, drug_id: Any) -> Drug:
    """Resolve a drug by identifier.

    Raises:
        MissingReferenceError: If no drug carries ``drug_id``.
    """
    drug = find_drug(context, drug_id)
    if drug is None:
        log.warning("Drug lookup failed for id '%s'", drug_id)
        raise MissingReferenceError(f"Drug not found: {drug_id}")
    return drug


def list_drugs(context: RuntimeContext) -> List[Drug]:
    """Return a snapshot of the inventory in stored order."""

    return list(context.drugs)


def adjust_quantity(context: RuntimeContext, drug_id: Any, delta: int) -> Optional[Drug]:
    """Apply ``delta`` to a drug's stock, clamping the result at zero.

    This is the only function that changes stock levels. It never raises:
    an unknown drug is a no-op that returns ``None``.

    Args:
        context (RuntimeContext): Runtime context holding the inventory.
        drug_id (Any): Identifier of the drug to update.
        delta (int): Signed change in units.

    Returns:
        Drug | None: The updated record, or ``None`` if the drug is absent.
    """
    index = _drug_index(context, drug_id)
    if index is None:
        log.debug("Skipping stock change for unknown drug '%s'", drug_id)
        return None
    current = context.drugs[index]
    updated = replace(current, quantity=max(0, current.quantity + delta))
    context.drugs[index] = updated
    log.debug("Stock of '%s' changed %d -> %d", current.id, current.quantity, updated.quantity)
    return updated


# ---------------------------------------------------------------------------
# Sale processing and reversal
# ---------------------------------------------------------------------------


def _price_issues(line_items: Iterable[SaleLineItem]) -> List[str]:
    return [
        f"Invalid price for {item.drug_name or item.drug_id or 'Unknown item'}"
        for item in line_items
        if item.unit_price is not None and item.unit_price < ZERO
    ]


def build_sale_record(
    item: SaleLineItem,
    drug: Drug,
    *,
    record_id: str,
    sale_date: str,
    sale_time: str,
    customer_name: str,
    payment_method: str,
    sold_by: str,
) -> SaleRecord:
    """Materialise one committed line of a sale.

    The drug name and id are copied into the record so it stays readable
    after the drug is deleted. An explicit line price wins over the
    catalogue price.
    """
    unit_price = item.unit_price if item.unit_price is not None else drug.price
    return SaleRecord(
        id=record_id,
        drug_id=drug.id,
        drug_name=drug.name or item.drug_name or drug.id,
        quantity=item.qty,
        unit_price=unit_price,
        line_total=line_total(item.qty, unit_price),
        customer_name=customer_name,
        payment_method=payment_method,
        date=sale_date,
        time=sale_time,
        sold_by=sold_by,
    )


def process_sale(
    context: RuntimeContext,
    items: Iterable[Union[SaleLineItem, Mapping[str, Any]]],
    options: Optional[SaleOptions] = None,
) -> SaleResult:
    """Validate, commit and persist a multi-line sale as one unit.

    Under the context lock the request is validated against current stock
    (quantities for the same drug are summed across lines). Any issue
    rejects the whole sale before anything changes. Otherwise every line, in
    order, decrements stock, produces a :class:`SaleRecord` and one ``sale``
    audit event. All lines share one date and time. Drugs are saved before
    sales.

    Args:
        context (RuntimeContext): Runtime context holding inventory and sales.
        items (Iterable[SaleLineItem | Mapping]): Lines of the sale.
        options (SaleOptions | None): Customer, payment method, seller and
            timestamp. Missing values fall back to ``"Walk-in Customer"``,
            cash, the session actor (or ``"unknown"``), and now.

    Returns:
        SaleResult: Created records. ``persisted`` is ``False`` and
            ``warning`` is set when storage failed after the commit.

    Raises:
        ValidationRejected: If the sale is empty or any line fails
            validation. ``issues`` lists every problem found.
        BusinessRuleViolation: If the payment method is unsupported.
    """
    options = options or SaleOptions()
    line_items = coerce_line_items(items)
    customer_name = resolve_customer_name(options.customer_name)
    payment_method = resolve_payment_method(options.payment_method)

    with context.lock:
        if not line_items:
            log.warning("Rejected sale without line items")
            raise ValidationRejected(["Sale has no line items"])

        validation = validate_sale_request(context.drugs, line_items)
        issues = validation.issues + _price_issues(line_items)
        if issues:
            log.warning("Rejected sale: %s", "; ".join(issues))
            raise ValidationRejected(issues)

        now = _resolve_timestamp(options.timestamp)
        sale_date = now.date().isoformat()
        sale_time = now.strftime("%H:%M:%S")
        sold_by = resolve_actor(context, options.sold_by)

        records: List[SaleRecord] = []
        for item in line_items:
            # Re-read each time: an earlier line may have sold the same drug.
            drug = get_drug(context, item.drug_id)
            adjust_quantity(context, drug.id, -item.qty)
            record = build_sale_record(
                item,
                drug,
                record_id=generate_record_id(prefix="S", when=now),
                sale_date=sale_date,
                sale_time=sale_time,
                customer_name=customer_name,
                payment_method=payment_method,
                sold_by=sold_by,
            )
            context.sales.append(record)
            records.append(record)
            audit.record(
                context,
                AuditAction.SALE,
                f"Sold {record.quantity} of {record.drug_name} for ${record.line_total}",
                actor=sold_by,
                timestamp=now,
            )

        persisted, warning = _persist(context, _save_drugs(context), _save_sales(context))

    log.info(
        "Processed sale of %d line(s) for '%s' (total=%s, persisted=%s)",
        len(records),
        customer_name,
        round2(sum((record.line_total for record in records), ZERO)),
        persisted,
    )
    return SaleResult(records=records, persisted=persisted, warning=warning)


def _sale_index(context: RuntimeContext, sale_id: Any) -> Optional[int]:
    key = data_manager.normalize_id(sale_id)
    if key is None:
        return None
    for index, record in enumerate(context.sales):
        if record.id == key:
            return index
    return None


def find_sale(context: RuntimeContext, sale_id: Any) -> Optional[SaleRecord]:
    """Return the sale record with ``sale_id`` or ``None``."""

    index = _sale_index(context, sale_id)
    return context.sales[index] if index is not None else None


def delete_sale(context: RuntimeContext, sale_id: Any, *, actor: Optional[str] = None) -> ReversalResult:
    """Delete a sale record and give its quantity back to stock.

    If the drug was removed since the sale, only the record is deleted.
    The sale list is saved before the inventory, and one ``delete_sale``
    audit event is written. There is no undo.

    Args:
        context (RuntimeContext): Runtime context holding inventory and sales.
        sale_id (Any): Identifier of the sale record.
        actor (str | None): Who requested the deletion.

    Returns:
        ReversalResult: The removed record and whether stock was restored.

    Raises:
        MissingReferenceError: If no sale carries ``sale_id``; nothing changes.
    """
    with context.lock:
        index = _sale_index(context, sale_id)
        if index is None:
            log.warning("Sale lookup failed for id '%s'", sale_id)
            raise MissingReferenceError(f"Sale not found: {sale_id}")

        record = context.sales[index]
        restored = adjust_quantity(context, record.drug_id, record.quantity) is not None
        del context.sales[index]
        persisted, warning = _persist(context, _save_sales(context), _save_drugs(context))

        if restored:
            details = f"Deleted sale {record.id}: restored {record.quantity} of {record.drug_name} to stock"
        else:
            details = f"Deleted sale {record.id} of {record.drug_name}; drug no longer in inventory"
        audit.record(context, AuditAction.DELETE_SALE, details, actor=resolve_actor(context, actor))

    log.info("Deleted sale '%s' (stock restored=%s, persisted=%s)", record.id, restored, persisted)
    return ReversalResult(record=record, stock_restored=restored, persisted=persisted, warning=warning)


def list_sales(context: RuntimeContext, *, on_date: Optional[date] = None) -> List[SaleRecord]:
    """Return sale records in stored order, optionally for a single day."""

    if on_date is None:
        return list(context.sales)
    wanted = on_date.isoformat()
    return [record for record in context.sales if record.date == wanted]


# ---------------------------------------------------------------------------
# Stock adjustments
# ---------------------------------------------------------------------------


def describe_delta(adjustment_type: AdjustmentType, quantity: int) -> str:
    """Return the human-readable delta stored with an adjustment."""

    if adjustment_type is AdjustmentType.INCREASE:
        return f"+{quantity}"
    if adjustment_type is AdjustmentType.DECREASE:
        return f"-{quantity}"
    return f"set to {quantity}"


def adjust_stock(
    context: RuntimeContext,
    command: StockAdjustmentCommand,
    *,
    actor: Optional[str] = None,
) -> AdjustmentResult:
    """Apply a manual increase, decrease, or set-to correction.

    Decreases larger than the stock on hand are rejected rather than clamped
    so that the adjustment history explains every unit. The adjustment is
    stored with the old and new quantity, the delta description, the reason
    and the actor, and one ``stock_adjustment`` audit event is written.

    Args:
        context (RuntimeContext): Runtime context holding the inventory.
        command (StockAdjustmentCommand): Requested correction.
        actor (str | None): Who performed the adjustment.

    Returns:
        AdjustmentResult: Stored adjustment and the updated drug.

    Raises:
        MissingReferenceError: If the drug is unknown.
        BusinessRuleViolation: For a blank reason, an unsupported type, or a
            decrease below zero.
        ValueError: If the quantity is invalid for the adjustment type.
    """
    if not isinstance(command.adjustment_type, AdjustmentType):
        log.error("Unsupported adjustment type provided: %s", command.adjustment_type)
        raise BusinessRuleViolation(f"Unsupported adjustment type: {command.adjustment_type}")
    reason = (command.reason or "").strip()
    if not reason:
        raise BusinessRuleViolation("A reason is required for stock adjustments")
    if command.adjustment_type is AdjustmentType.SET:
        require_nonnegative_quantity(command.quantity)
    else:
        require_positive_quantity(command.quantity)

    with context.lock:
        drug = get_drug(context, command.drug_id)
        old_quantity = drug.quantity
        if command.adjustment_type is AdjustmentType.INCREASE:
            new_quantity = old_quantity + command.quantity
        elif command.adjustment_type is AdjustmentType.DECREASE:
            if command.quantity > old_quantity:
                log.warning(
                    "Rejected decrease of %d for '%s' with only %d in stock",
                    command.quantity,
                    drug.id,
                    old_quantity,
                )
                raise BusinessRuleViolation(
                    f"Cannot decrease {drug.name} by {command.quantity}; only {old_quantity} in stock"
                )
            new_quantity = old_quantity - command.quantity
        else:
            new_quantity = command.quantity

        updated = adjust_quantity(context, drug.id, new_quantity - old_quantity)
        when = _resolve_timestamp(command.timestamp)
        adjusted_by = resolve_actor(context, actor)
        delta = describe_delta(command.adjustment_type, command.quantity)
        adjustment = StockAdjustment(
            id=generate_record_id(prefix="A", when=when),
            drug_id=drug.id,
            drug_name=drug.name,
            adjustment_type=command.adjustment_type.value,
            old_quantity=old_quantity,
            new_quantity=new_quantity,
            delta=delta,
            reason=reason,
            adjusted_by=adjusted_by,
            timestamp=when.isoformat(),
        )
        context.stock_adjustments.append(adjustment)
        persisted, warning = _persist(context, _save_drugs(context), _save_adjustments(context))
        audit.record(
            context,
            AuditAction.STOCK_ADJUSTMENT,
            f"Adjusted stock of {drug.name}: {old_quantity} -> {new_quantity} ({delta}). Reason: {reason}",
            actor=adjusted_by,
            timestamp=when,
        )

    log.info("Adjusted stock of '%s' %d -> %d (%s)", drug.id, old_quantity, new_quantity, delta)
    return AdjustmentResult(adjustment=adjustment, drug=updated, persisted=persisted, warning=warning)


def list_stock_adjustments(context: RuntimeContext, *, drug_id: Any = None) -> List[StockAdjustment]:
    """Return the adjustment history, optionally for one drug."""

    if drug_id is None:
        return list(context.stock_adjustments)
    key = data_manager.normalize_id(drug_id)
    return [entry for entry in context.stock_adjustments if entry.drug_id == key]


# ---------------------------------------------------------------------------
# Drug maintenance
# ---------------------------------------------------------------------------


def _validate_drug_fields(name: str, quantity: Any, price: Decimal) -> None:
    if not (name or "").strip():
        raise ValueError("Drug name is required")
    require_nonnegative_quantity(quantity)
    require_nonnegative_money(price)


def add_drug(context: RuntimeContext, drug: Drug, *, actor: Optional[str] = None) -> DrugResult:
    """Register a new drug in the inventory.

    Raises:
        BusinessRuleViolation: If a drug with the same id already exists.
        ValueError: If the id or name is blank, or quantity/price is invalid.
    """
    drug_id = data_manager.normalize_id(drug.id)
    if drug_id is None:
        raise ValueError("Drug id is required")
    _validate_drug_fields(drug.name, drug.quantity, drug.price)

    with context.lock:
        if _drug_index(context, drug_id) is not None:
            log.warning("Attempted to add duplicate drug id '%s'", drug_id)
            raise BusinessRuleViolation(f"Drug id already exists: {drug_id}")
        record = replace(drug, id=drug_id, name=drug.name.strip())
        context.drugs.append(record)
        persisted, warning = _persist(context, _save_drugs(context))
        audit.record(
            context,
            AuditAction.ADD_DRUG,
            f"Added {record.name} ({record.quantity} units at ${round2(record.price)})",
            actor=resolve_actor(context, actor),
        )

    log.info("Added drug '%s' (%s)", record.id, record.name)
    return DrugResult(drug=record, persisted=persisted, warning=warning)


def update_drug(
    context: RuntimeContext,
    drug_id: Any,
    *,
    actor: Optional[str] = None,
    **changes: Any,
) -> DrugResult:
    """Edit selected fields of an existing drug.

    Only ``name``, ``category``, ``quantity``, ``price``, ``expiry`` and
    ``supplier`` may change; the id is stable.
    A quantity change is also recorded as a ``set`` stock adjustment so the
    adjustment history explains every unit.

    Raises:
        MissingReferenceError: If the drug is unknown.
        KeyError: If ``changes`` names a field that cannot be edited.
        ValueError: If the resulting name, quantity or price is invalid.
    """
    for field_name in changes:
        if field_name not in EDITABLE_DRUG_FIELDS:
            raise KeyError(f"Unknown drug field: {field_name}")
    if "price" in changes and not isinstance(changes["price"], Decimal):
        try:
            changes["price"] = Decimal(str(changes["price"]))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid price: {changes['price']}") from exc
    if isinstance(changes.get("expiry"), str):
        changes["expiry"] = date.fromisoformat(changes["expiry"])

    with context.lock:
        index = _drug_index(context, drug_id)
        if index is None:
            log.warning("Drug lookup failed for id '%s'", drug_id)
            raise MissingReferenceError(f"Drug not found: {drug_id}")
        current = context.drugs[index]
        updated = replace(current, **changes)
        _validate_drug_fields(updated.name, updated.quantity, updated.price)
        context.drugs[index] = updated
        edited_by = resolve_actor(context, actor)
        steps = [_save_drugs(context)]
        if updated.quantity != current.quantity:
            when = _resolve_timestamp(None)
            context.stock_adjustments.append(
                StockAdjustment(
                    id=generate_record_id(prefix="A", when=when),
                    drug_id=updated.id,
                    drug_name=updated.name,
                    adjustment_type=AdjustmentType.SET.value,
                    old_quantity=current.quantity,
                    new_quantity=updated.quantity,
                    delta=describe_delta(AdjustmentType.SET, updated.quantity),
                    reason=DRUG_EDIT_REASON,
                    adjusted_by=edited_by,
                    timestamp=when.isoformat(),
                )
            )
            steps.append(_save_adjustments(context))
        persisted, warning = _persist(context, *steps)
        changed = ", ".join(
            f"quantity {current.quantity} -> {updated.quantity}" if name == "quantity" else name
            for name in sorted(changes)
        ) or "nothing"
        audit.record(
            context,
            AuditAction.EDIT_DRUG,
            f"Edited {updated.name}: {changed}",
            actor=edited_by,
        )

    log.info("Updated drug '%s' fields: %s", updated.id, changed)
    return DrugResult(drug=updated, persisted=persisted, warning=warning)


def delete_drug(context: RuntimeContext, drug_id: Any, *, actor: Optional[str] = None) -> DrugResult:
    """Remove a drug from the inventory; sale history is left untouched.

    Raises:
        MissingReferenceError: If the drug is unknown.
    """
    with context.lock:
        index = _drug_index(context, drug_id)
        if index is None:
            log.warning("Drug lookup failed for id '%s'", drug_id)
            raise MissingReferenceError(f"Drug not found: {drug_id}")
        removed = context.drugs.pop(index)
        persisted, warning = _persist(context, _save_drugs(context))
        audit.record(
            context,
            AuditAction.DELETE_DRUG,
            f"Deleted {removed.name} ({removed.quantity} units on hand)",
            actor=resolve_actor(context, actor),
        )

    log.info("Deleted drug '%s'", removed.id)
    return DrugResult(drug=removed, persisted=persisted, warning=warning)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def calculate_sales_totals(context: RuntimeContext, *, on_date: Optional[date] = None) -> Dict[str, Any]:
    """Aggregate revenue, units sold and line count.

    Returns:
        dict[str, Any]: ``revenue`` (Decimal), ``units`` (int) and ``lines``
            (int) over all sales, or over the sales of ``on_date``.
    """
    records = list_sales(context, on_date=on_date)
    revenue = round2(sum((record.line_total for record in records), ZERO))
    units = sum(record.quantity for record in records)
    log.debug("Calculated sales totals: revenue=%s units=%d lines=%d", revenue, units, len(records))
    return {"revenue": revenue, "units": units, "lines": len(records)}


def calculate_inventory_value(context: RuntimeContext) -> Decimal:
    """Return the catalogue value of all stock on hand."""

    return round2(sum((line_total(drug.quantity, drug.price) for drug in context.drugs), ZERO))


def find_low_stock(context: RuntimeContext, threshold: Optional[int] = None) -> List[Drug]:
    """Return drugs whose quantity is at or below ``threshold``.

    The threshold defaults to ``LowStockThreshold`` from the configuration.
    """
    limit = context.settings.low_stock_threshold if threshold is None else threshold
    return [drug for drug in context.drugs if drug.quantity <= limit]


def find_expiring(
    context: RuntimeContext,
    *,
    within_days: int = 30,
    today: Optional[date] = None,
) -> List[Drug]:
    """Return drugs that are expired or expire within ``within_days``.

    Drugs without an expiry date are never included. Results are ordered by
    expiry date.
    """
    today = today or _resolve_timestamp(None).date()
    horizon = today + timedelta(days=within_days)
    expiring = [drug for drug in context.drugs if drug.expiry is not None and drug.expiry <= horizon]
    return sorted(expiring, key=lambda drug: drug.expiry)
