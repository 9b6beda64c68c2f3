"""Enumerations shared across the snack-bar ledger modules.

Centralises domain constants so that the store boundary, the ledgers, and the
sale coordinator rely on a single source of truth for collection names,
movement kinds, and lifecycle states.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Fixed page size for bulk reloads when config.ini does not override it.
DEFAULT_PAGE_SIZE = 500

# OPEN sales younger than this are assumed to still be in flight.
DEFAULT_ORPHAN_GRACE_SECONDS = 300


class CollectionName(str, Enum):
    """Enumerate the collections (worksheets) managed by the store."""

    PRODUCTS = "products"
    EMPLOYEES = "employees"
    STOCK_MOVEMENTS = "stock_movements"
    SALES = "sales"
    SALE_ITEMS = "sale_items"
    EMPLOYEE_MEALS = "employee_meals"
    EXPENSES = "expenses"


class MovementKind(str, Enum):
    """Enumerate the stock-change events recorded in the movement ledger."""

    PURCHASE_ENTRY = "PURCHASE_ENTRY"
    MANUAL_ENTRY_ADJUSTMENT = "MANUAL_ENTRY_ADJUSTMENT"
    PRODUCTION_ENTRY = "PRODUCTION_ENTRY"
    SALE_REVERSAL_ENTRY = "SALE_REVERSAL_ENTRY"
    SALE_EXIT = "SALE_EXIT"
    LOSS_EXIT = "LOSS_EXIT"
    INTERNAL_CONSUMPTION_EXIT = "INTERNAL_CONSUMPTION_EXIT"
    INVENTORY_ADJUSTMENT = "INVENTORY_ADJUSTMENT"


class MovementClass(str, Enum):
    """Coarse classification of a movement kind."""

    ENTRY = "ENTRY"
    EXIT = "EXIT"
    ADJUSTMENT = "ADJUSTMENT"


MOVEMENT_CLASSIFICATION: Mapping[MovementKind, MovementClass] = MappingProxyType(
    {
        MovementKind.PURCHASE_ENTRY: MovementClass.ENTRY,
        MovementKind.MANUAL_ENTRY_ADJUSTMENT: MovementClass.ENTRY,
        MovementKind.PRODUCTION_ENTRY: MovementClass.ENTRY,
        MovementKind.SALE_REVERSAL_ENTRY: MovementClass.ENTRY,
        MovementKind.SALE_EXIT: MovementClass.EXIT,
        MovementKind.LOSS_EXIT: MovementClass.EXIT,
        MovementKind.INTERNAL_CONSUMPTION_EXIT: MovementClass.EXIT,
        MovementKind.INVENTORY_ADJUSTMENT: MovementClass.ADJUSTMENT,
    }
)

_UNMAPPED_KINDS = set(MovementKind) - set(MOVEMENT_CLASSIFICATION)
if _UNMAPPED_KINDS:
    raise RuntimeError(f"Movement kinds without a classification: {sorted(_UNMAPPED_KINDS)}")


class SaleStatus(str, Enum):
    """Lifecycle states of a sale header."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    CANCELED = "CANCELED"


class SaleOrigin(str, Enum):
    """Who the sale was made to."""

    CUSTOMER = "customer"
    EMPLOYEE = "employee"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales and expenses."""

    CASH = "Cash"
    DEBIT = "Debit"
    CREDIT = "Credit"
    PIX = "Pix"
    MEAL_VOUCHER = "Meal Voucher"
    EMPLOYEE = "Employee"


class ExpenseCategory(str, Enum):
    """Enumerate the expense categories used for reporting."""

    RENT = "Rent"
    ENERGY = "Energy"
    SUPPLIES = "Supplies"
    PAYROLL = "Payroll"
    OTHER = "Other"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_ORPHAN_GRACE_SECONDS",
    "CollectionName",
    "MovementKind",
    "MovementClass",
    "MOVEMENT_CLASSIFICATION",
    "SaleStatus",
    "SaleOrigin",
    "PaymentMethod",
    "ExpenseCategory",
]
