"""Enumerations shared across PharmaStore modules.

Centralises domain constants so that the persistence layer, the sale engine,
and presentation layers such as the CLI rely on a single source of truth for
storage keys, audit action names, and payment methods.
"""

from __future__ import annotations

from enum import Enum


# Version of the stored document layout expected by all layers.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_CUSTOMER_NAME = "Walk-in Customer"
UNKNOWN_ACTOR = "unknown"
SYSTEM_ACTOR = "system"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "Cash"
    CARD = "Card"
    MOBILE_MONEY = "Mobile Money"
    INSURANCE = "Insurance"


class AdjustmentType(str, Enum):
    """Enumerate the manual stock adjustment operations."""

    INCREASE = "increase"
    DECREASE = "decrease"
    SET = "set"


class AuditAction(str, Enum):
    """Enumerate the action names written to the audit log."""

    SALE = "sale"
    DELETE_SALE = "delete_sale"
    STOCK_ADJUSTMENT = "stock_adjustment"
    ADD_DRUG = "add_drug"
    EDIT_DRUG = "edit_drug"
    DELETE_DRUG = "delete_drug"
    EXPORT = "export"
    CLEAR_AUDIT = "clear_audit"


class StorageKey(str, Enum):
    """Enumerate the document keys managed by the persistent store."""

    DRUGS = "drugs"
    SALES = "sales"
    AUDIT_LOG = "auditLog"
    STOCK_ADJUSTMENTS = "stockAdjustments"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_CUSTOMER_NAME",
    "UNKNOWN_ACTOR",
    "SYSTEM_ACTOR",
    "PaymentMethod",
    "AdjustmentType",
    "AuditAction",
    "StorageKey",
]
