"""Data access helpers for the snack-bar ledger.

This module holds the low-level pieces the store boundary is built from.
Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Record codecs: converting between the plain mappings that cross the store
   boundary and the typed, immutable rows the ledgers operate on.
"""


from __future__ import annotations

import configparser
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_ORPHAN_GRACE_SECONDS, DEFAULT_PAGE_SIZE


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    bar_name: str
    schema_version: str
    page_size: int = DEFAULT_PAGE_SIZE
    autosave: bool = True
    orphan_grace_seconds: int = DEFAULT_ORPHAN_GRACE_SECONDS


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a record from the ``products`` collection."""

    product_id: str
    name: str
    category: str
    unit: str
    price: Decimal
    cost: Decimal
    min_stock: Decimal
    is_active: bool


@dataclass(frozen=True)
class EmployeeRow:
    """In-memory view of a record from the ``employees`` collection."""

    employee_id: str
    name: str
    role: str
    daily_meal_limit: Decimal
    is_active: bool


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a record from the ``stock_movements`` collection."""

    movement_id: str
    product_id: str
    quantity: Decimal
    kind: str
    origin: str
    notes: Optional[str]
    sale_id: Optional[str]
    created_at: str


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a sale header."""

    sale_id: str
    created_at: str
    status: str
    payment_method: str
    origin: str
    gross_value: Decimal
    discount_value: Decimal
    net_value: Decimal
    total_cost: Decimal
    employee_id: Optional[str]


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a sale line item."""

    item_id: str
    sale_id: str
    product_id: str
    quantity: Decimal
    unit_price: Decimal
    unit_cost: Decimal
    total: Decimal


@dataclass(frozen=True)
class MealConsumptionRow:
    """In-memory view of a record from the ``employee_meals`` collection."""

    meal_id: str
    employee_id: str
    meal_date: str
    value: Decimal
    description: str
    related_sale_id: Optional[str]
    canceled: bool


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a record from the ``expenses`` collection."""

    expense_id: str
    expense_date: str
    category: str
    description: str
    amount: Decimal
    payment_method: Optional[str]
    canceled: bool


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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
            Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Store]`` section is optional
    and every option in it falls back to the package defaults. Relative
    ``DataFile`` entries are expanded against ``base_path`` (or the current
    working directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If a ``[Store]`` option cannot be converted to its type.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        bar_name = parser.get("System", "BarName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    page_size = parser.getint("Store", "PageSize", fallback=DEFAULT_PAGE_SIZE)
    autosave = parser.getboolean("Store", "AutoSave", fallback=True)
    grace = parser.getint("Store", "OrphanGraceSeconds", fallback=DEFAULT_ORPHAN_GRACE_SECONDS)
    if page_size <= 0:
        raise ValueError(f"PageSize must be positive, got {page_size}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        bar_name=bar_name,
        schema_version=schema_version,
        page_size=page_size,
        autosave=autosave,
        orphan_grace_seconds=grace,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    log.debug("Saved workbook to '%s'", dest)


# ---------------------------------------------------------------------------
# Record codecs
# ---------------------------------------------------------------------------


def to_decimal(raw: Any, default: str = "0") -> Decimal:
    """Normalise a cell value into a :class:`~decimal.Decimal`.

    Excel hands numbers back as ``int`` or ``float``; going through ``str``
    keeps ``2.5`` as ``Decimal("2.5")`` instead of its binary expansion.

    Raises:
        ValueError: If ``raw`` is not numeric.
    """

    if raw is None or raw == "":
        return Decimal(default)
    if isinstance(raw, Decimal):
        return raw
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {raw!r}") from exc


def _text(raw: Any) -> str:
    return str(raw) if raw is not None else ""


def _optional_text(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def serialize_product(record: ProductRow) -> Dict[str, Any]:
    return {
        "id": record.product_id,
        "name": record.name,
        "category": record.category,
        "unit": record.unit,
        "price": record.price,
        "cost": record.cost,
        "min_stock": record.min_stock,
        "active": record.is_active,
    }


def deserialize_product(raw: Mapping[str, Any]) -> ProductRow:
    # Rows without an explicit flag are active; only ``False`` deactivates.
    active = raw.get("active")
    return ProductRow(
        product_id=str(raw["id"]),
        name=_text(raw.get("name")),
        category=_text(raw.get("category")),
        unit=_text(raw.get("unit")) or "un",
        price=to_decimal(raw.get("price"), "0.00"),
        cost=to_decimal(raw.get("cost"), "0.00"),
        min_stock=to_decimal(raw.get("min_stock")),
        is_active=True if active is None else bool(active),
    )


def serialize_employee(record: EmployeeRow) -> Dict[str, Any]:
    return {
        "id": record.employee_id,
        "name": record.name,
        "role": record.role,
        "daily_meal_limit": record.daily_meal_limit,
        "active": record.is_active,
    }


def deserialize_employee(raw: Mapping[str, Any]) -> EmployeeRow:
    active = raw.get("active")
    return EmployeeRow(
        employee_id=str(raw["id"]),
        name=_text(raw.get("name")),
        role=_text(raw.get("role")),
        daily_meal_limit=to_decimal(raw.get("daily_meal_limit"), "0.00"),
        is_active=True if active is None else bool(active),
    )


def serialize_movement(record: MovementRow) -> Dict[str, Any]:
    return {
        "id": record.movement_id,
        "product_id": record.product_id,
        "quantity": record.quantity,
        "kind": record.kind,
        "origin": record.origin,
        "notes": record.notes,
        "sale_id": record.sale_id,
        "created_at": record.created_at,
    }


def deserialize_movement(raw: Mapping[str, Any]) -> MovementRow:
    return MovementRow(
        movement_id=str(raw["id"]),
        product_id=str(raw["product_id"]),
        quantity=to_decimal(raw.get("quantity")),
        kind=_text(raw.get("kind")),
        origin=_text(raw.get("origin")),
        notes=_optional_text(raw.get("notes")),
        sale_id=_optional_text(raw.get("sale_id")),
        created_at=_text(raw.get("created_at")),
    )


def serialize_sale(record: SaleRow) -> Dict[str, Any]:
    return {
        "id": record.sale_id,
        "created_at": record.created_at,
        "status": record.status,
        "payment_method": record.payment_method,
        "origin": record.origin,
        "gross_value": record.gross_value,
        "discount_value": record.discount_value,
        "net_value": record.net_value,
        "total_cost": record.total_cost,
        "employee_id": record.employee_id,
    }


def deserialize_sale(raw: Mapping[str, Any]) -> SaleRow:
    return SaleRow(
        sale_id=str(raw["id"]),
        created_at=_text(raw.get("created_at")),
        status=_text(raw.get("status")),
        payment_method=_text(raw.get("payment_method")),
        origin=_text(raw.get("origin")),
        gross_value=to_decimal(raw.get("gross_value"), "0.00"),
        discount_value=to_decimal(raw.get("discount_value"), "0.00"),
        net_value=to_decimal(raw.get("net_value"), "0.00"),
        total_cost=to_decimal(raw.get("total_cost"), "0.00"),
        employee_id=_optional_text(raw.get("employee_id")),
    )


def serialize_sale_item(record: SaleItemRow) -> Dict[str, Any]:
    return {
        "id": record.item_id,
        "sale_id": record.sale_id,
        "product_id": record.product_id,
        "quantity": record.quantity,
        "unit_price": record.unit_price,
        "unit_cost": record.unit_cost,
        "total": record.total,
    }


def deserialize_sale_item(raw: Mapping[str, Any]) -> SaleItemRow:
    return SaleItemRow(
        item_id=str(raw["id"]),
        sale_id=str(raw["sale_id"]),
        product_id=str(raw["product_id"]),
        quantity=to_decimal(raw.get("quantity")),
        unit_price=to_decimal(raw.get("unit_price"), "0.00"),
        unit_cost=to_decimal(raw.get("unit_cost"), "0.00"),
        total=to_decimal(raw.get("total"), "0.00"),
    )


def serialize_meal(record: MealConsumptionRow) -> Dict[str, Any]:
    return {
        "id": record.meal_id,
        "employee_id": record.employee_id,
        "meal_date": record.meal_date,
        "value": record.value,
        "description": record.description,
        "related_sale_id": record.related_sale_id,
        "canceled": record.canceled,
    }


def deserialize_meal(raw: Mapping[str, Any]) -> MealConsumptionRow:
    return MealConsumptionRow(
        meal_id=str(raw["id"]),
        employee_id=str(raw["employee_id"]),
        meal_date=_text(raw.get("meal_date")),
        value=to_decimal(raw.get("value"), "0.00"),
        description=_text(raw.get("description")),
        related_sale_id=_optional_text(raw.get("related_sale_id")),
        canceled=bool(raw.get("canceled")),
    )


def serialize_expense(record: ExpenseRow) -> Dict[str, Any]:
    return {
        "id": record.expense_id,
        "expense_date": record.expense_date,
        "category": record.category,
        "description": record.description,
        "amount": record.amount,
        "payment_method": record.payment_method,
        "canceled": record.canceled,
    }


def deserialize_expense(raw: Mapping[str, Any]) -> ExpenseRow:
    return ExpenseRow(
        expense_id=str(raw["id"]),
        expense_date=_text(raw.get("expense_date")),
        category=_text(raw.get("category")),
        description=_text(raw.get("description")),
        amount=to_decimal(raw.get("amount"), "0.00"),
        payment_method=_optional_text(raw.get("payment_method")),
        canceled=bool(raw.get("canceled")),
    )


# ---------------------------------------------------------------------------
# Identifiers and timestamps
# ---------------------------------------------------------------------------


def resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC datetime.

    Naive datetimes are taken to be UTC already; aware ones are converted.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate.astimezone(UTC)


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    Args:
        prefix (str): Designator for the record type, e.g. ``"M"`` for
            movements or ``"S"`` for sales.
        when (datetime | None): Timestamp embedded in the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{hex6}``.

    The timestamp keeps identifiers in chronological order; the random suffix
    keeps two sessions writing in the same microsecond from colliding.
    """

    when = resolve_timestamp(when)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"
