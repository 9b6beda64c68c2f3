"""Expense ledger: cash outflows that are either active or canceled."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from . import data_manager, log
from .constants import CollectionName, ExpenseCategory, PaymentMethod
from .exceptions import ConsistencyError, ValidationError
from .store import WorkbookStore
from .validation import as_iso_date, require_positive

DateLike = Union[date, datetime, str]


def _in_range(iso_date: str, start: Optional[str], end: Optional[str]) -> bool:
    day = iso_date[:10]
    if start is not None and day < start:
        return False
    if end is not None and day > end:
        return False
    return True


class ExpenseLedger:
    """Record and soft-cancel expenses; sum them over date ranges."""

    def __init__(self, store: WorkbookStore) -> None:
        self.store = store

    def record(
        self,
        expense_date: DateLike,
        category: Union[ExpenseCategory, str],
        amount: Any,
        payment_method: Union[PaymentMethod, str, None] = PaymentMethod.CASH,
        description: str = "",
    ) -> str:
        """Append one expense and return its id.

        Raises:
            ValidationError: For a malformed date, an unknown category, or a
                non-positive amount.
            PersistenceError: If the store rejects the insert.
        """

        iso_date = as_iso_date(expense_date, "Expense date")
        try:
            resolved_category = ExpenseCategory(category)
        except ValueError as exc:
            log.error("Unknown expense category: %r", category)
            raise ValidationError(f"Unknown expense category: {category}") from exc
        value = require_positive(amount, "Expense amount")
        try:
            method = PaymentMethod(payment_method).value if payment_method is not None else None
        except ValueError as exc:
            log.error("Unsupported payment method for expense: %r", payment_method)
            raise ValidationError(f"Unsupported payment method: {payment_method}") from exc

        row = data_manager.ExpenseRow(
            expense_id=data_manager.generate_id("E"),
            expense_date=iso_date,
            category=resolved_category.value,
            description=description or "",
            amount=value,
            payment_method=method,
            canceled=False,
        )
        self.store.insert(CollectionName.EXPENSES, data_manager.serialize_expense(row))
        log.info(
            "Recorded expense '%s' on %s (%s, amount=%s)",
            row.expense_id,
            iso_date,
            resolved_category.value,
            value,
        )
        return row.expense_id

    def cancel(self, expense_id: str) -> bool:
        """Soft-cancel an expense; ``False`` if it was already canceled."""

        records = self.store.query(CollectionName.EXPENSES, {"id": expense_id})
        if not records:
            log.warning("Expense lookup failed for id '%s'", expense_id)
            raise ConsistencyError(f"Unknown expense id: {expense_id}")
        current = records[0]
        match = {"id": expense_id, "canceled": current.get("canceled")}
        if (
            data_manager.deserialize_expense(current).canceled
            or self.store.update(CollectionName.EXPENSES, match, {"canceled": True}) != 1
        ):
            log.warning("Expense '%s' is already canceled", expense_id)
            return False
        log.info("Canceled expense '%s'", expense_id)
        return True

    def list_expenses(
        self,
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
        *,
        include_canceled: bool = False,
    ) -> List[data_manager.ExpenseRow]:
        """Return expenses whose date falls within ``[start, end]`` (inclusive)."""

        start_iso = as_iso_date(start, "Start date") if start is not None else None
        end_iso = as_iso_date(end, "End date") if end is not None else None
        rows = [
            data_manager.deserialize_expense(record)
            for record in self.store.query(CollectionName.EXPENSES, order="expense_date")
        ]
        return [
            row
            for row in rows
            if _in_range(row.expense_date, start_iso, end_iso) and (include_canceled or not row.canceled)
        ]

    def total(self, start: Optional[DateLike] = None, end: Optional[DateLike] = None) -> Decimal:
        return sum((row.amount for row in self.list_expenses(start, end)), Decimal("0"))

    def totals_by_category(
        self,
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
    ) -> Dict[str, Decimal]:
        totals: Dict[str, Decimal] = {}
        for row in self.list_expenses(start, end):
            totals[row.category] = totals.get(row.category, Decimal("0")) + row.amount
        return totals
