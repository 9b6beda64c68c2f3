"""Employee meal consumption ledger.

Each employee has a daily meal allowance. Consumptions are appended as debits
against it and are only ever soft-canceled, so the balance for any day can be
recomputed from history. The allowance is a soft limit: the balance may go
negative and nothing here prevents it.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional, Union

from . import data_manager, log
from .constants import CollectionName
from .exceptions import ConsistencyError
from .store import WorkbookStore
from .validation import as_iso_date, require_positive, require_text


class MealLedger:
    """Record, cancel, and total employee meal consumptions."""

    def __init__(self, store: WorkbookStore) -> None:
        self.store = store

    def get_employee(self, employee_id: str) -> data_manager.EmployeeRow:
        records = self.store.query(CollectionName.EMPLOYEES, {"id": employee_id})
        if not records:
            log.warning("Employee lookup failed for id '%s'", employee_id)
            raise ConsistencyError(f"Unknown employee id: {employee_id}")
        return data_manager.deserialize_employee(records[0])

    def get(self, meal_id: str) -> data_manager.MealConsumptionRow:
        records = self.store.query(CollectionName.EMPLOYEE_MEALS, {"id": meal_id})
        if not records:
            log.warning("Meal consumption lookup failed for id '%s'", meal_id)
            raise ConsistencyError(f"Unknown meal consumption id: {meal_id}")
        return data_manager.deserialize_meal(records[0])

    def record(
        self,
        employee_id: str,
        meal_date: Union[date, datetime, str],
        value: Any,
        description: str = "",
        related_sale_id: Optional[str] = None,
    ) -> str:
        """Append one consumption and return its id.

        Raises:
            ValidationError: For a missing employee id, a malformed date, or a
                non-positive value.
            PersistenceError: If the store rejects the insert.
        """

        employee_id = require_text(employee_id, "Employee id")
        iso_date = as_iso_date(meal_date, "Meal date")
        amount = require_positive(value, "Meal value")

        row = data_manager.MealConsumptionRow(
            meal_id=data_manager.generate_id("C"),
            employee_id=employee_id,
            meal_date=iso_date,
            value=amount,
            description=description or "",
            related_sale_id=related_sale_id,
            canceled=False,
        )
        self.store.insert(CollectionName.EMPLOYEE_MEALS, data_manager.serialize_meal(row))
        log.info(
            "Recorded meal consumption '%s' for employee '%s' on %s (value=%s)",
            row.meal_id,
            employee_id,
            iso_date,
            amount,
        )
        return row.meal_id

    def cancel(self, meal_id: str) -> bool:
        """Soft-cancel a consumption.

        Returns ``True`` when this call flipped the flag and ``False`` when the
        consumption was already canceled. Stock is never touched.
        """

        records = self.store.query(CollectionName.EMPLOYEE_MEALS, {"id": meal_id})
        if not records:
            log.warning("Meal consumption lookup failed for id '%s'", meal_id)
            raise ConsistencyError(f"Unknown meal consumption id: {meal_id}")
        if not self._flip(records[0]):
            log.warning("Meal consumption '%s' is already canceled", meal_id)
            return False
        log.info("Canceled meal consumption '%s'", meal_id)
        return True

    def _flip(self, record) -> bool:
        # Matching on the flag as read means only one concurrent caller wins.
        if data_manager.deserialize_meal(record).canceled:
            return False
        match = {"id": record["id"], "canceled": record.get("canceled")}
        return self.store.update(CollectionName.EMPLOYEE_MEALS, match, {"canceled": True}) == 1

    def cancel_for_sale(self, sale_id: str) -> int:
        """Soft-cancel every active consumption linked to ``sale_id``."""

        canceled = 0
        for record in self.store.query(CollectionName.EMPLOYEE_MEALS, {"related_sale_id": sale_id}):
            if self._flip(record):
                canceled += 1
        if canceled:
            log.info("Canceled %d meal consumption(s) linked to sale '%s'", canceled, sale_id)
        return canceled

    def consumptions_for(
        self,
        employee_id: str,
        meal_date: Union[date, datetime, str],
        *,
        include_canceled: bool = False,
    ) -> List[data_manager.MealConsumptionRow]:
        iso_date = as_iso_date(meal_date, "Meal date")
        rows = [
            data_manager.deserialize_meal(record)
            for record in self.store.query(CollectionName.EMPLOYEE_MEALS, {"employee_id": employee_id})
        ]
        return [
            row
            for row in rows
            if row.meal_date[:10] == iso_date and (include_canceled or not row.canceled)
        ]

    def daily_balance(self, employee_id: str, meal_date: Union[date, datetime, str]) -> Decimal:
        """Return ``daily limit - sum of active consumptions`` for that day.

        Raises:
            ConsistencyError: If the employee is unknown.
        """

        employee = self.get_employee(employee_id)
        spent = sum((row.value for row in self.consumptions_for(employee_id, meal_date)), Decimal("0"))
        balance = employee.daily_meal_limit - spent
        log.debug(
            "Daily meal balance for '%s' on %s: limit=%s spent=%s balance=%s",
            employee_id,
            meal_date,
            employee.daily_meal_limit,
            spent,
            balance,
        )
        return balance
