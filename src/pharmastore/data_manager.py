"""Data access layer for PharmaStore.

This module provides low-level helpers that read from and write to the
key-value document store backing the application. Business logic belongs
elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: loading and atomically saving one JSON document per key.
3. Record mapping: converting stored documents to typed records and back,
   including the migration of legacy numeric identifiers.
"""


from __future__ import annotations

import configparser
import json
import os
import tempfile
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, TypeVar

from . import log
from .constants import StorageKey
from .money import to_decimal


CONFIG_FILE_NAME = "config.ini"
DRUGS_KEY = StorageKey.DRUGS.value
SALES_KEY = StorageKey.SALES.value
AUDIT_LOG_KEY = StorageKey.AUDIT_LOG.value
STOCK_ADJUSTMENTS_KEY = StorageKey.STOCK_ADJUSTMENTS.value

DEFAULT_TAX_RATE = Decimal("0")
DEFAULT_DISCOUNT_RATE = Decimal("0")
DEFAULT_LOW_STOCK_THRESHOLD = 10

T = TypeVar("T")


class StorageError(Exception):
    """Raised when a document cannot be durably read or written."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_dir: Path
    store_name: str
    schema_version: str
    default_actor: str
    tax_rate: Decimal = DEFAULT_TAX_RATE
    discount_rate: Decimal = DEFAULT_DISCOUNT_RATE
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    log_dir: Optional[Path] = None


@dataclass(frozen=True)
class Drug:
    """In-memory view of one entry of the ``drugs`` document."""

    id: str
    name: str
    category: str
    quantity: int
    price: Decimal
    expiry: Optional[date]
    supplier: str


@dataclass(frozen=True)
class SaleRecord:
    """In-memory view of one entry of the ``sales`` document."""

    id: str
    drug_id: str
    drug_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    customer_name: str
    payment_method: str
    date: str
    time: str
    sold_by: str


@dataclass(frozen=True)
class AuditEvent:
    """In-memory view of one entry of the ``auditLog`` document."""

    action: str
    details: str
    timestamp: str
    user: str


@dataclass(frozen=True)
class StockAdjustment:
    """In-memory view of one entry of the ``stockAdjustments`` document."""

    id: str
    drug_id: str
    drug_name: str
    adjustment_type: str
    old_quantity: int
    new_quantity: int
    delta: str
    reason: str
    adjusted_by: str
    timestamp: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _anchor_path(raw: str, base_path: Path) -> Path:
    path = Path(raw).expanduser()
    return path if path.is_absolute() else (base_path / path).resolve()


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` are mandatory. ``[Sales]`` is optional and
    falls back to a zero tax rate, zero discount, and a low stock threshold of
    ten units. The optional ``[System] LogDir`` moves the package log file.
    Relative ``DataDir`` and ``LogDir`` entries are anchored at ``base_path``
    (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative
            ``DataDir`` and ``LogDir`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If one of the ``[Sales]`` values is not numeric.
    """

    try:
        data_dir_raw = parser.get("System", "DataDir")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_actor = parser.get("Defaults", "DefaultActor")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        tax_rate = Decimal(parser.get("Sales", "TaxRate", fallback=str(DEFAULT_TAX_RATE)))
        discount_rate = Decimal(parser.get("Sales", "DiscountRate", fallback=str(DEFAULT_DISCOUNT_RATE)))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid [Sales] rate in configuration: {exc}") from exc
    low_stock_threshold = parser.getint("Sales", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)

    if base_path is None:
        base_path = Path.cwd()
    data_dir = _anchor_path(data_dir_raw, base_path)
    log_dir_raw = parser.get("System", "LogDir", fallback="").strip()
    log_dir = _anchor_path(log_dir_raw, base_path) if log_dir_raw else None

    return ConfigSettings(
        data_dir=data_dir,
        store_name=store_name,
        schema_version=schema_version,
        default_actor=default_actor,
        tax_rate=tax_rate,
        discount_rate=discount_rate,
        low_stock_threshold=low_stock_threshold,
        log_dir=log_dir,
    )


class JsonFileStore:
    """Synchronous key to JSON document store, one file per key.

    Writes replace the target file atomically, so a crash leaves either the
    previous or the new document on disk. There is no transaction spanning
    several keys; callers order their writes instead.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir).expanduser().resolve()

    def path_for(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def load(self, key: str) -> Any:
        """Return the decoded document stored under ``key``.

        Returns:
            Any: Decoded JSON value, or ``None`` when the key is absent.

        Raises:
            StorageError: If the file cannot be read or is not valid JSON.
        """

        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, ValueError) as exc:
            log.error("Failed to load document '%s' from %s: %s", key, path, exc)
            raise StorageError(f"Unable to load '{key}': {exc}") from exc

    def save(self, key: str, value: Any) -> None:
        """Durably write ``value`` under ``key``.

        Raises:
            StorageError: If the document cannot be serialised or written.
        """

        path = self.path_for(key)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(value, indent=2, ensure_ascii=False)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            log.error("Failed to save document '%s' to %s: %s", key, path, exc)
            raise StorageError(f"Unable to save '{key}': {exc}") from exc
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
        log.debug("Saved document '%s' to %s", key, path)


def normalize_id(raw: Any) -> Optional[str]:
    """Resolve a stored identifier into its canonical string form.

    Older data saved some identifiers as JSON numbers. Integral numbers map to
    their decimal digits (``12`` and ``12.0`` both become ``"12"``) so they
    match the string ids written today.

    Args:
        raw (Any): Identifier as found in a document or supplied by a caller.

    Returns:
        str | None: Canonical identifier, or ``None`` for missing/blank ids.
    """

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, float):
        if raw != raw or raw in (float("inf"), float("-inf")):
            return None
        if raw.is_integer():
            return str(int(raw))
        return repr(raw)
    if isinstance(raw, Decimal):
        if not raw.is_finite():
            return None
        if raw == raw.to_integral_value():
            return str(int(raw))
        return str(raw)
    text = str(raw).strip()
    return text or None


def _to_int(raw: Any) -> int:
    return int(to_decimal(raw))


def _to_text(raw: Any, default: str = "") -> str:
    return str(raw) if raw is not None else default


def _parse_expiry(raw: Any) -> Optional[date]:
    if isinstance(raw, date):
        return raw
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        log.warning("Ignoring unparseable expiry date '%s'", raw)
        return None


def _money_out(value: Decimal) -> float:
    return float(value)


def serialize_drug(record: Drug) -> dict[str, Any]:
    """Convert a drug into the JSON shape stored under ``drugs``."""

    return {
        "id": record.id,
        "name": record.name,
        "category": record.category,
        "quantity": record.quantity,
        "price": _money_out(record.price),
        "expiry": record.expiry.isoformat() if record.expiry else None,
        "supplier": record.supplier,
    }


def deserialize_drug(raw: Mapping[str, Any]) -> Drug:
    """Convert a stored drug document into a :class:`Drug`.

    Legacy numeric ids are normalised, quantities are coerced to
    non-negative integers, and prices become :class:`~decimal.Decimal`.

    Raises:
        ValueError: If the document has no usable ``id``.
    """

    drug_id = normalize_id(raw.get("id"))
    if drug_id is None:
        raise ValueError(f"Drug document without id: {raw!r}")
    return Drug(
        id=drug_id,
        name=_to_text(raw.get("name")),
        category=_to_text(raw.get("category")),
        quantity=max(0, _to_int(raw.get("quantity"))),
        price=to_decimal(raw.get("price")),
        expiry=_parse_expiry(raw.get("expiry")),
        supplier=_to_text(raw.get("supplier")),
    )


def serialize_sale(record: SaleRecord) -> dict[str, Any]:
    """Convert a sale record into the JSON shape stored under ``sales``."""

    return {
        "id": record.id,
        "drugId": record.drug_id,
        "drugName": record.drug_name,
        "quantity": record.quantity,
        "unitPrice": _money_out(record.unit_price),
        "lineTotal": _money_out(record.line_total),
        "customerName": record.customer_name,
        "paymentMethod": record.payment_method,
        "date": record.date,
        "time": record.time,
        "soldBy": record.sold_by,
    }


def deserialize_sale(raw: Mapping[str, Any]) -> SaleRecord:
    """Convert a stored sale document into a :class:`SaleRecord`.

    Older documents used ``total`` and ``price`` for the line total and unit
    price; both spellings are read.

    Raises:
        ValueError: If the document has no usable ``id``.
    """

    sale_id = normalize_id(raw.get("id"))
    if sale_id is None:
        raise ValueError(f"Sale document without id: {raw!r}")
    unit_price = raw.get("unitPrice", raw.get("price"))
    line_total = raw.get("lineTotal", raw.get("total"))
    return SaleRecord(
        id=sale_id,
        drug_id=normalize_id(raw.get("drugId")) or "",
        drug_name=_to_text(raw.get("drugName")),
        quantity=_to_int(raw.get("quantity")),
        unit_price=to_decimal(unit_price),
        line_total=to_decimal(line_total),
        customer_name=_to_text(raw.get("customerName")),
        payment_method=_to_text(raw.get("paymentMethod")),
        date=_to_text(raw.get("date")),
        time=_to_text(raw.get("time")),
        sold_by=_to_text(raw.get("soldBy")),
    )


def serialize_audit_event(record: AuditEvent) -> dict[str, Any]:
    """Convert an audit event into the JSON shape stored under ``auditLog``."""

    return {
        "action": record.action,
        "details": record.details,
        "timestamp": record.timestamp,
        "user": record.user,
    }


def deserialize_audit_event(raw: Mapping[str, Any]) -> AuditEvent:
    """Convert a stored audit document into an :class:`AuditEvent`."""

    return AuditEvent(
        action=_to_text(raw.get("action")),
        details=_to_text(raw.get("details")),
        timestamp=_to_text(raw.get("timestamp")),
        user=_to_text(raw.get("user")),
    )


def serialize_stock_adjustment(record: StockAdjustment) -> dict[str, Any]:
    """Convert a stock adjustment into its stored JSON shape."""

    return {
        "id": record.id,
        "drugId": record.drug_id,
        "drugName": record.drug_name,
        "adjustmentType": record.adjustment_type,
        "oldQuantity": record.old_quantity,
        "newQuantity": record.new_quantity,
        "delta": record.delta,
        "reason": record.reason,
        "adjustedBy": record.adjusted_by,
        "timestamp": record.timestamp,
    }


def deserialize_stock_adjustment(raw: Mapping[str, Any]) -> StockAdjustment:
    """Convert a stored stock adjustment document into a record."""

    return StockAdjustment(
        id=normalize_id(raw.get("id")) or "",
        drug_id=normalize_id(raw.get("drugId")) or "",
        drug_name=_to_text(raw.get("drugName")),
        adjustment_type=_to_text(raw.get("adjustmentType")),
        old_quantity=_to_int(raw.get("oldQuantity")),
        new_quantity=_to_int(raw.get("newQuantity")),
        delta=_to_text(raw.get("delta")),
        reason=_to_text(raw.get("reason")),
        adjusted_by=_to_text(raw.get("adjustedBy")),
        timestamp=_to_text(raw.get("timestamp")),
    )


def _load_list(store: JsonFileStore, key: str) -> List[Mapping[str, Any]]:
    document = store.load(key)
    if document is None:
        return []
    if not isinstance(document, list):
        raise StorageError(f"Document '{key}' is not a list")
    return [entry for entry in document if isinstance(entry, Mapping)]


def _load_records(
    store: JsonFileStore,
    key: str,
    deserialize: Callable[[Mapping[str, Any]], T],
) -> List[T]:
    records: List[T] = []
    for position, raw in enumerate(_load_list(store, key)):
        try:
            records.append(deserialize(raw))
        except ValueError as exc:
            log.warning("Skipping entry %d of '%s': %s", position, key, exc)
    return records


def load_drugs(store: JsonFileStore) -> List[Drug]:
    """Load every drug stored under ``drugs``.

    Documents without a usable id are skipped with a warning. They are not
    written back by the next :func:`save_drugs`.
    """

    return _load_records(store, DRUGS_KEY, deserialize_drug)


def load_sales(store: JsonFileStore) -> List[SaleRecord]:
    """Load every sale record stored under ``sales``, skipping id-less ones."""

    return _load_records(store, SALES_KEY, deserialize_sale)


def load_audit_log(store: JsonFileStore) -> List[AuditEvent]:
    """Load the audit trail in insertion order."""

    return [deserialize_audit_event(raw) for raw in _load_list(store, AUDIT_LOG_KEY)]


def load_stock_adjustments(store: JsonFileStore) -> List[StockAdjustment]:
    """Load the stock adjustment history."""

    return [deserialize_stock_adjustment(raw) for raw in _load_list(store, STOCK_ADJUSTMENTS_KEY)]


def save_drugs(store: JsonFileStore, records: Iterable[Drug]) -> None:
    store.save(DRUGS_KEY, [serialize_drug(record) for record in records])


def save_sales(store: JsonFileStore, records: Iterable[SaleRecord]) -> None:
    store.save(SALES_KEY, [serialize_sale(record) for record in records])


def save_audit_log(store: JsonFileStore, records: Iterable[AuditEvent]) -> None:
    store.save(AUDIT_LOG_KEY, [serialize_audit_event(record) for record in records])


def save_stock_adjustments(store: JsonFileStore, records: Iterable[StockAdjustment]) -> None:
    store.save(STOCK_ADJUSTMENTS_KEY, [serialize_stock_adjustment(record) for record in records])
