"""Sale transaction coordinator.

A sale touches several collections: the header, one item per line, one stock
exit per item and, for employee sales, a meal consumption. The store offers
no multi-collection transaction, so creation runs as a saga:

1. insert the header with status ``OPEN``;
2. insert the items;
3. insert one ``SALE_EXIT`` movement per item, tagged with the sale id;
4. for employee sales, insert the meal consumption carrying the net value;
5. conditionally move the header ``OPEN -> CLOSED``.

If any step after the header fails, everything tagged with the sale id is
deleted again in reverse order. If that compensation fails too, the header is
left ``OPEN`` and :class:`~snackbar_ledger.reconciliation.Reconciler` rolls it
back later. A ``CLOSED`` sale therefore always has its items and movements.

Cancellation flips ``CLOSED -> CANCELED`` with a conditional update, so only
one caller can win, and only the winner appends the reversal movements.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from . import data_manager, log
from .constants import CollectionName, MovementKind, PaymentMethod, SaleOrigin, SaleStatus
from .exceptions import ConsistencyError, LedgerError, PersistenceError, ValidationError
from .meal_ledger import MealLedger
from .movement_ledger import MovementLedger
from .store import WorkbookStore
from .validation import require_nonnegative, require_positive, require_text


@dataclass(frozen=True)
class SaleLine:
    """One cart line: quantity of a product at a unit price and cost."""

    product_id: str
    quantity: Decimal
    unit_price: Decimal
    unit_cost: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class SaleCommand:
    """User intent for creating a sale.

    ``timestamp`` is stored in UTC. An employee sale debits the allowance of
    ``business_date``; when that is omitted the day is read from the
    timestamp as given, or from the local clock when there is no timestamp.
    """

    lines: Sequence[SaleLine]
    payment_method: PaymentMethod
    discount: Decimal = Decimal("0.00")
    origin: SaleOrigin = SaleOrigin.CUSTOMER
    employee_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    business_date: Optional[date] = None


@dataclass(frozen=True)
class SaleTotals:
    gross: Decimal
    discount: Decimal
    net: Decimal
    total_cost: Decimal


def _business_day(command: SaleCommand, when: datetime) -> date:
    if command.business_date is not None:
        return command.business_date
    if command.timestamp is not None:
        return command.timestamp.date()
    return when.astimezone().date()


def compute_totals(lines: Iterable[SaleLine], discount: Decimal) -> SaleTotals:
    """Return ``gross = sum(qty * price)`` and ``net = gross - discount``."""

    gross = Decimal("0")
    total_cost = Decimal("0")
    for line in lines:
        gross += line.quantity * line.unit_price
        total_cost += line.quantity * line.unit_cost
    return SaleTotals(gross=gross, discount=discount, net=gross - discount, total_cost=total_cost)


def missing_reversals(
    items: Iterable[data_manager.SaleItemRow],
    movements: Iterable[data_manager.MovementRow],
) -> List[data_manager.SaleItemRow]:
    """Return the items of a canceled sale that have no reversal yet.

    Reversals are matched to items as a multiset of ``(product, quantity)``
    pairs, so a sale with two identical lines needs two reversals.
    """

    reversed_lines = Counter(
        (movement.product_id, movement.quantity)
        for movement in movements
        if movement.kind == MovementKind.SALE_REVERSAL_ENTRY.value
    )
    missing: List[data_manager.SaleItemRow] = []
    for item in items:
        key = (item.product_id, item.quantity)
        if reversed_lines[key] > 0:
            reversed_lines[key] -= 1
        else:
            missing.append(item)
    return missing


class SaleCoordinator:
    """Create and cancel sales as single logical units of work."""

    def __init__(self, store: WorkbookStore, movements: MovementLedger, meals: MealLedger) -> None:
        self.store = store
        self.movements = movements
        self.meals = meals

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_sale(self, sale_id: str) -> data_manager.SaleRow:
        records = self.store.query(CollectionName.SALES, {"id": sale_id})
        if not records:
            log.warning("Sale lookup failed for id '%s'", sale_id)
            raise ConsistencyError(f"Unknown sale id: {sale_id}")
        return data_manager.deserialize_sale(records[0])

    def items_for(self, sale_id: str) -> List[data_manager.SaleItemRow]:
        records = self.store.query(CollectionName.SALE_ITEMS, {"sale_id": sale_id})
        return [data_manager.deserialize_sale_item(record) for record in records]

    def list_sales(self, status: Optional[SaleStatus] = None) -> List[data_manager.SaleRow]:
        filter = {"status": status.value} if status is not None else None
        records = self.store.query(CollectionName.SALES, filter, order="-created_at")
        return [data_manager.deserialize_sale(record) for record in records]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _validate(self, command: SaleCommand) -> tuple[List[SaleLine], SaleOrigin, SaleTotals]:
        if not command.lines:
            log.error("Sale rejected: no lines")
            raise ValidationError("A sale needs at least one line")
        lines = [
            SaleLine(
                product_id=require_text(line.product_id, "Product id"),
                quantity=require_positive(line.quantity, "Quantity"),
                unit_price=require_nonnegative(line.unit_price, "Unit price"),
                unit_cost=require_nonnegative(line.unit_cost, "Unit cost"),
            )
            for line in command.lines
        ]
        try:
            payment_method = PaymentMethod(command.payment_method)
        except ValueError as exc:
            log.error("Unsupported payment method: %r", command.payment_method)
            raise ValidationError(f"Unsupported payment method: {command.payment_method}") from exc

        try:
            origin = SaleOrigin(command.origin)
        except ValueError as exc:
            log.error("Unknown sale origin: %r", command.origin)
            raise ValidationError(f"Unknown sale origin: {command.origin}") from exc
        if payment_method is PaymentMethod.EMPLOYEE:
            origin = SaleOrigin.EMPLOYEE
        if origin is SaleOrigin.EMPLOYEE and not command.employee_id:
            log.error("Employee sale rejected: no employee id")
            raise ValidationError("Employee sales require an employee id")

        discount = require_nonnegative(command.discount, "Discount")
        totals = compute_totals(lines, discount)
        if discount > totals.gross:
            log.error("Sale rejected: discount %s exceeds gross %s", discount, totals.gross)
            raise ValidationError("Discount cannot exceed the gross value")
        return lines, origin, totals

    def _check_references(self, lines: Sequence[SaleLine], origin: SaleOrigin, employee_id: Optional[str]) -> None:
        products = {
            str(record["id"]): data_manager.deserialize_product(record)
            for record in self.store.query(CollectionName.PRODUCTS)
        }
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                log.warning("Sale references unknown product '%s'", line.product_id)
                raise ConsistencyError(f"Unknown product id: {line.product_id}")
            if not product.is_active:
                log.warning("Attempted sale of inactive product '%s'", line.product_id)
                raise ConsistencyError(f"Product '{line.product_id}' is inactive")
        if origin is SaleOrigin.EMPLOYEE:
            self.meals.get_employee(employee_id)

    def create(self, command: SaleCommand) -> str:
        """Write a sale, its items, its stock exits, and its meal debit.

        Returns:
            str: Identifier of the new ``CLOSED`` sale.

        Raises:
            ValidationError: For malformed input; nothing is read or written.
            ConsistencyError: For unknown or inactive products, or an unknown
                employee; nothing is written.
            PersistenceError: If a write fails. ``partial`` is ``False`` when
                the header never landed or the unit was rolled back, and
                ``True`` when rollback failed and an ``OPEN`` header remains.
        """

        lines, origin, totals = self._validate(command)
        self._check_references(lines, origin, command.employee_id)

        when = data_manager.resolve_timestamp(command.timestamp)
        sale = data_manager.SaleRow(
            sale_id=data_manager.generate_id("S", when=when),
            created_at=when.isoformat(),
            status=SaleStatus.OPEN.value,
            payment_method=PaymentMethod(command.payment_method).value,
            origin=origin.value,
            gross_value=totals.gross,
            discount_value=totals.discount,
            net_value=totals.net,
            total_cost=totals.total_cost,
            employee_id=command.employee_id,
        )

        try:
            self.store.insert(CollectionName.SALES, data_manager.serialize_sale(sale))
        except PersistenceError as exc:
            log.error("Sale header insert failed; nothing was written: %s", exc)
            raise PersistenceError(f"Sale could not be created: {exc}", partial=False) from exc

        try:
            self._write_body(sale, lines, origin, when, _business_day(command, when))
            closed = self.store.update(
                CollectionName.SALES,
                {"id": sale.sale_id, "status": SaleStatus.OPEN.value},
                {"status": SaleStatus.CLOSED.value},
            )
            if closed != 1:
                raise ConsistencyError(f"Sale '{sale.sale_id}' changed state before it could be closed")
        except Exception as exc:
            log.error("Sale '%s' failed after the header was written: %s", sale.sale_id, exc)
            self._abort(sale.sale_id, exc)

        log.info(
            "Created sale '%s' with %d item(s) (gross=%s, discount=%s, net=%s, origin=%s)",
            sale.sale_id,
            len(lines),
            totals.gross,
            totals.discount,
            totals.net,
            origin.value,
        )
        return sale.sale_id

    def _write_body(
        self,
        sale: data_manager.SaleRow,
        lines: Sequence[SaleLine],
        origin: SaleOrigin,
        when: datetime,
        meal_day: date,
    ) -> None:
        items = [
            data_manager.SaleItemRow(
                item_id=data_manager.generate_id("I", when=when),
                sale_id=sale.sale_id,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                unit_cost=line.unit_cost,
                total=line.quantity * line.unit_price,
            )
            for line in lines
        ]
        for item in items:
            self.store.insert(CollectionName.SALE_ITEMS, data_manager.serialize_sale_item(item))

        origin_text = f"Sale {sale.sale_id} ({origin.value})"
        for item in items:
            self.movements.record(
                item.product_id,
                item.quantity,
                MovementKind.SALE_EXIT,
                origin=origin_text,
                sale_id=sale.sale_id,
                timestamp=when,
            )

        # A fully discounted employee sale leaves nothing to debit.
        if origin is SaleOrigin.EMPLOYEE and sale.net_value > 0:
            self.meals.record(
                sale.employee_id,
                meal_day,
                sale.net_value,
                description=f"Sale {sale.sale_id}",
                related_sale_id=sale.sale_id,
            )

    def _abort(self, sale_id: str, cause: Exception) -> None:
        try:
            self.rollback(sale_id)
        except PersistenceError as rollback_exc:
            log.error("Rollback of sale '%s' failed; left for reconciliation: %s", sale_id, rollback_exc)
            raise PersistenceError(
                f"Sale '{sale_id}' was partially written and could not be rolled back: {cause}",
                partial=True,
                sale_id=sale_id,
            ) from cause
        raise PersistenceError(
            f"Sale could not be created and was rolled back: {cause}",
            partial=False,
            sale_id=sale_id,
        ) from cause

    def rollback(self, sale_id: str) -> None:
        """Delete every record tagged with ``sale_id``, header last.

        Stops at the first failing delete so the header, which is what
        reconciliation looks for, is never removed before its dependants.
        """

        self.store.delete(CollectionName.EMPLOYEE_MEALS, {"related_sale_id": sale_id})
        self.store.delete(CollectionName.STOCK_MOVEMENTS, {"sale_id": sale_id})
        self.store.delete(CollectionName.SALE_ITEMS, {"sale_id": sale_id})
        self.store.delete(CollectionName.SALES, {"id": sale_id})
        log.info("Rolled back sale '%s'", sale_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, sale_id: str) -> bool:
        """Cancel a closed sale exactly once.

        Calling this again for the same sale, or losing a race against another
        session canceling it, returns ``True`` without writing anything.

        Raises:
            ConsistencyError: If the sale is unknown or still ``OPEN``.
            PersistenceError: ``partial=True`` when the status flipped but the
                reversals could not all be written; reconciliation appends the
                missing ones.
        """

        sale = self.get_sale(sale_id)
        if sale.status == SaleStatus.CANCELED.value:
            log.warning("Sale '%s' is already canceled; nothing to do", sale_id)
            return True
        if sale.status != SaleStatus.CLOSED.value:
            log.warning("Cannot cancel sale '%s' in status '%s'", sale_id, sale.status)
            raise ConsistencyError(f"Sale '{sale_id}' cannot be canceled from status {sale.status}")

        won = self.store.update(
            CollectionName.SALES,
            {"id": sale_id, "status": SaleStatus.CLOSED.value},
            {"status": SaleStatus.CANCELED.value},
        )
        if not won:
            latest = self.get_sale(sale_id)
            if latest.status == SaleStatus.CANCELED.value:
                log.warning("Sale '%s' was canceled concurrently; skipping reversals", sale_id)
                return True
            raise ConsistencyError(f"Sale '{sale_id}' moved to status {latest.status} during cancellation")

        try:
            self.append_reversals(sale_id, self.items_for(sale_id))
            if sale.origin == SaleOrigin.EMPLOYEE.value:
                self.meals.cancel_for_sale(sale_id)
        except LedgerError as exc:
            log.error("Sale '%s' canceled but reversals are incomplete: %s", sale_id, exc)
            raise PersistenceError(
                f"Sale '{sale_id}' canceled but its reversals are incomplete: {exc}",
                partial=True,
                sale_id=sale_id,
            ) from exc

        log.info("Canceled sale '%s'", sale_id)
        return True

    def append_reversals(self, sale_id: str, items: Iterable[data_manager.SaleItemRow]) -> List[str]:
        """Append one ``SALE_REVERSAL_ENTRY`` per item and return their ids."""

        return [
            self.movements.record(
                item.product_id,
                item.quantity,
                MovementKind.SALE_REVERSAL_ENTRY,
                origin=f"Sale {sale_id} reversal",
                notes="Sale canceled",
                sale_id=sale_id,
            )
            for item in items
        ]
