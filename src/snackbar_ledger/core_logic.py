"""Session layer for the snack-bar ledger.

A :class:`RuntimeContext` is created once per session and passed to every
call. It owns the store, the ledgers, the sale coordinator, and the
reconciler, plus two pieces of session state:

* a busy flag that makes mutations from one session run one after the other,
  including the full reload that follows each of them;
* a cache of every collection as loaded by the last reload. The cache is for
  display only; stock and balances are always derived from the store.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, CollectionName, ExpenseCategory, MovementKind, PaymentMethod, SaleStatus
from .exceptions import ConsistencyError, LedgerError, PersistenceError, ValidationError
from .expense_ledger import ExpenseLedger
from .meal_ledger import MealLedger
from .movement_ledger import MovementLedger
from .reconciliation import Reconciler, RepairReport
from .sale_coordinator import SaleCommand, SaleCoordinator
from .store import WorkbookStore
from .validation import as_iso_date, require_nonnegative, require_text

DateLike = Union[date, datetime, str]

_DESERIALIZERS: Mapping[CollectionName, Callable[[Mapping[str, Any]], Any]] = {
    CollectionName.PRODUCTS: data_manager.deserialize_product,
    CollectionName.EMPLOYEES: data_manager.deserialize_employee,
    CollectionName.STOCK_MOVEMENTS: data_manager.deserialize_movement,
    CollectionName.SALES: data_manager.deserialize_sale,
    CollectionName.SALE_ITEMS: data_manager.deserialize_sale_item,
    CollectionName.EMPLOYEE_MEALS: data_manager.deserialize_meal,
    CollectionName.EXPENSES: data_manager.deserialize_expense,
}


@dataclass(frozen=True)
class RuntimeContext:
    """Everything one session needs, wired together by :func:`build_context`."""

    settings: data_manager.ConfigSettings
    store: WorkbookStore
    movements: MovementLedger
    meals: MealLedger
    expenses: ExpenseLedger
    sales: SaleCoordinator
    reconciler: Reconciler
    _busy: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _cache: Dict[str, List[Any]] = field(default_factory=dict, repr=False, compare=False)
    _pending: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SyncReport:
    """Outcome of :func:`synchronize`."""

    pushed: Dict[str, List[str]]
    repair: RepairReport


def build_context(settings: data_manager.ConfigSettings, store: WorkbookStore) -> RuntimeContext:
    """Wire ledgers, coordinator, and reconciler around ``store``.

    Two contexts built over the same store behave like two sessions against
    one shared backend.
    """

    movements = MovementLedger(store)
    meals = MealLedger(store)
    coordinator = SaleCoordinator(store, movements, meals)
    return RuntimeContext(
        settings=settings,
        store=store,
        movements=movements,
        meals=meals,
        expenses=ExpenseLedger(store),
        sales=coordinator,
        reconciler=Reconciler(store, coordinator, orphan_grace_seconds=settings.orphan_grace_seconds),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the store for a new session.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully wired context with an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = WorkbookStore.from_settings(settings)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work against a workbook declared with another schema version.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write the workbook to the configured data file."""

    context.store.persist()


# ---------------------------------------------------------------------------
# Session state: busy flag, full reload, cache
# ---------------------------------------------------------------------------


def is_busy(context: RuntimeContext) -> bool:
    return context._busy.locked()


@contextmanager
def _mutation(context: RuntimeContext, label: str) -> Iterator[None]:
    """Hold the session busy flag for a mutation and its follow-up reload."""

    if context._busy.locked():
        log.debug("Mutation '%s' waiting for the session to become idle", label)
    with context._busy:
        try:
            yield
        finally:
            reload_collections(context)


def reload_collections(context: RuntimeContext) -> Dict[str, LedgerError]:
    """Re-read every collection into the session cache.

    Each collection is loaded independently. A collection that fails keeps
    its previous cached contents and its error is returned; the others still
    load.

    Returns:
        dict[str, LedgerError]: Errors keyed by collection name; empty when
            everything loaded.
    """

    errors: Dict[str, LedgerError] = {}
    for collection, deserialize in _DESERIALIZERS.items():
        try:
            records = context.store.fetch_all(collection, page_size=context.settings.page_size)
            rows = [deserialize(record) for record in records]
        except LedgerError as exc:
            log.error("Error fetching %s: %s", collection.value, exc)
            errors[collection.value] = exc
            continue
        except (KeyError, ValueError) as exc:
            log.error("Error decoding %s: %s", collection.value, exc)
            errors[collection.value] = PersistenceError(
                f"Malformed record in {collection.value}: {exc}", collection=collection.value
            )
            continue
        context._cache[collection.value] = rows
    log.debug("Reloaded collections (%d failure(s))", len(errors))
    return errors


def cached(context: RuntimeContext, collection: CollectionName) -> List[Any]:
    """Return the rows of ``collection`` from the last reload.

    The first call for a collection that was never loaded triggers a reload.
    """

    if collection.value not in context._cache:
        reload_collections(context)
    return list(context._cache.get(collection.value, []))


def pending_records(context: RuntimeContext) -> Dict[str, List[Dict[str, Any]]]:
    """Return local records whose insert has not reached the store yet."""

    return {name: list(records.values()) for name, records in context._pending.items() if records}


def _insert_or_keep_pending(context: RuntimeContext, collection: CollectionName, record: Dict[str, Any]) -> None:
    try:
        context.store.insert(collection, record)
    except PersistenceError:
        log.warning("Keeping %s record '%s' pending for synchronisation", collection.value, record["id"])
        context._pending.setdefault(collection.value, {})[record["id"]] = record
        raise


# ---------------------------------------------------------------------------
# Catalogue reads
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return cached products, active ones only unless asked otherwise."""

    products = cached(context, CollectionName.PRODUCTS)
    if include_inactive:
        return products
    return [product for product in products if product.is_active]


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by id from the session cache.

    Raises:
        ConsistencyError: If the product is not known to this session.
    """

    for product in cached(context, CollectionName.PRODUCTS):
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise ConsistencyError(f"Unknown product id: {product_id}")


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    price: Any,
    cost: Any = Decimal("0.00"),
    category: str = "",
    unit: str = "un",
    min_stock: Any = Decimal("0"),
    is_active: bool = True,
    product_id: Optional[str] = None,
) -> str:
    """Register a product and return its id.

    If the store rejects the insert the record is kept as pending and
    :func:`synchronize` pushes it later; the ``PersistenceError`` still
    propagates so the caller knows the write did not land.
    """

    row = data_manager.ProductRow(
        product_id=product_id or data_manager.generate_id("P"),
        name=require_text(name, "Product name"),
        category=category or "",
        unit=unit or "un",
        price=require_nonnegative(price, "Price"),
        cost=require_nonnegative(cost, "Cost"),
        min_stock=require_nonnegative(min_stock, "Minimum stock"),
        is_active=is_active,
    )
    with _mutation(context, "add_product"):
        _insert_or_keep_pending(context, CollectionName.PRODUCTS, data_manager.serialize_product(row))
    log.info("Added product '%s' (%s)", row.product_id, row.name)
    return row.product_id


def register_employee(
    context: RuntimeContext,
    *,
    name: str,
    daily_meal_limit: Any,
    role: str = "",
    employee_id: Optional[str] = None,
) -> str:
    """Register an employee with a daily meal allowance and return the id."""

    row = data_manager.EmployeeRow(
        employee_id=employee_id or data_manager.generate_id("F"),
        name=require_text(name, "Employee name"),
        role=role or "",
        daily_meal_limit=require_nonnegative(daily_meal_limit, "Daily meal limit"),
        is_active=True,
    )
    with _mutation(context, "register_employee"):
        _insert_or_keep_pending(context, CollectionName.EMPLOYEES, data_manager.serialize_employee(row))
    log.info("Registered employee '%s' (%s)", row.employee_id, row.name)
    return row.employee_id


def update_product(
    context: RuntimeContext,
    product_id: str,
    *,
    name: Optional[str] = None,
    price: Any = None,
    cost: Any = None,
    category: Optional[str] = None,
    unit: Optional[str] = None,
    min_stock: Any = None,
    is_active: Optional[bool] = None,
) -> None:
    """Change catalogue fields of an existing product.

    Only the fields passed are written. Stock is never touched here; it stays
    derived from the movement ledger.

    Raises:
        ValidationError: If nothing is to be changed or a value is invalid.
        ConsistencyError: If the product does not exist in the store.
    """

    patch: Dict[str, Any] = {}
    if name is not None:
        patch["name"] = require_text(name, "Product name")
    if price is not None:
        patch["price"] = require_nonnegative(price, "Price")
    if cost is not None:
        patch["cost"] = require_nonnegative(cost, "Cost")
    if category is not None:
        patch["category"] = category
    if unit is not None:
        patch["unit"] = require_text(unit, "Unit")
    if min_stock is not None:
        patch["min_stock"] = require_nonnegative(min_stock, "Minimum stock")
    if is_active is not None:
        patch["active"] = bool(is_active)
    if not patch:
        raise ValidationError("No product fields to update")

    with _mutation(context, "update_product"):
        if context.store.update(CollectionName.PRODUCTS, {"id": product_id}, patch) == 0:
            log.warning("Product update failed; unknown id '%s'", product_id)
            raise ConsistencyError(f"Unknown product id: {product_id}")
    log.info("Updated product '%s' (%s)", product_id, ", ".join(sorted(patch)))


def record_movement(
    context: RuntimeContext,
    product_id: str,
    quantity: Any,
    kind: Union[MovementKind, str],
    origin: str = "",
    notes: Optional[str] = None,
) -> str:
    with _mutation(context, "record_movement"):
        return context.movements.record(product_id, quantity, kind, origin, notes)


def adjust_inventory(context: RuntimeContext, product_id: str, physical_count: Any, notes: Optional[str] = None) -> Optional[str]:
    with _mutation(context, "adjust_inventory"):
        return context.movements.adjust_to_count(product_id, physical_count, notes)


def create_sale(context: RuntimeContext, command: SaleCommand) -> str:
    with _mutation(context, "create_sale"):
        return context.sales.create(command)


def cancel_sale(context: RuntimeContext, sale_id: str) -> bool:
    with _mutation(context, "cancel_sale"):
        return context.sales.cancel(sale_id)


def record_meal(
    context: RuntimeContext,
    employee_id: str,
    meal_date: DateLike,
    value: Any,
    description: str = "",
) -> str:
    with _mutation(context, "record_meal"):
        return context.meals.record(employee_id, meal_date, value, description)


def cancel_meal(context: RuntimeContext, meal_id: str) -> bool:
    with _mutation(context, "cancel_meal"):
        return context.meals.cancel(meal_id)


def record_expense(
    context: RuntimeContext,
    expense_date: DateLike,
    category: Union[ExpenseCategory, str],
    amount: Any,
    payment_method: Union[PaymentMethod, str, None] = PaymentMethod.CASH,
    description: str = "",
) -> str:
    with _mutation(context, "record_expense"):
        return context.expenses.record(expense_date, category, amount, payment_method, description)


def cancel_expense(context: RuntimeContext, expense_id: str) -> bool:
    with _mutation(context, "cancel_expense"):
        return context.expenses.cancel(expense_id)


def synchronize(context: RuntimeContext, *, now: Optional[datetime] = None) -> SyncReport:
    """Push pending local records, then repair half-written sales."""

    pushed: Dict[str, List[str]] = {}
    with _mutation(context, "synchronize"):
        for name, records in list(context._pending.items()):
            inserted = context.reconciler.push_missing(name, list(records.values()))
            # Anything now present remotely is no longer pending, whoever wrote it.
            remote_ids = context.store.ids(name)
            for record_id in list(records):
                if record_id in remote_ids:
                    del records[record_id]
            pushed[name] = inserted
        repair = context.reconciler.repair_sales(now=now)
    return SyncReport(pushed=pushed, repair=repair)


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------


def derived_stock(context: RuntimeContext, product_id: str) -> Decimal:
    return context.movements.derived_stock(product_id)


def stock_levels(context: RuntimeContext) -> Dict[str, Decimal]:
    return context.movements.stock_levels()


def low_stock_products(context: RuntimeContext) -> List[Tuple[data_manager.ProductRow, Decimal]]:
    """Return active products whose derived stock is at or below minimum."""

    levels = context.movements.stock_levels()
    flagged = []
    for product in list_products(context):
        stock = levels.get(product.product_id, Decimal("0"))
        if stock <= product.min_stock:
            flagged.append((product, stock))
    log.debug("Found %d product(s) at or below minimum stock", len(flagged))
    return flagged


def daily_balance(context: RuntimeContext, employee_id: str, meal_date: DateLike) -> Decimal:
    return context.meals.daily_balance(employee_id, meal_date)


def financial_summary(
    context: RuntimeContext,
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
) -> Dict[str, Decimal]:
    """Aggregate revenue, cost, and expenses over an inclusive date range.

    Only ``CLOSED`` sales count; canceled and in-flight sales are excluded.

    Returns:
        dict[str, Decimal]: ``revenue`` (sum of net values), ``cost``,
            ``gross_profit`` (revenue - cost), ``expenses``, and ``result``
            (gross profit - expenses).
    """

    start_iso = as_iso_date(start, "Start date") if start is not None else None
    end_iso = as_iso_date(end, "End date") if end is not None else None

    revenue = Decimal("0")
    cost = Decimal("0")
    for sale in context.sales.list_sales(SaleStatus.CLOSED):
        day = sale.created_at[:10]
        if start_iso is not None and day < start_iso:
            continue
        if end_iso is not None and day > end_iso:
            continue
        revenue += sale.net_value
        cost += sale.total_cost

    expenses = context.expenses.total(start, end)
    gross_profit = revenue - cost
    summary = {
        "revenue": revenue,
        "cost": cost,
        "gross_profit": gross_profit,
        "expenses": expenses,
        "result": gross_profit - expenses,
    }
    log.debug("Calculated financial summary: %s", summary)
    return summary
