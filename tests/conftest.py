"""Shared pytest fixtures and utilities for snack-bar ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Tuple

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from snackbar_ledger import constants, core_logic, data_manager  # noqa: E402
from snackbar_ledger.constants import CollectionName, MovementKind  # noqa: E402
from snackbar_ledger.exceptions import PersistenceError  # noqa: E402
from snackbar_ledger.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402
from snackbar_ledger.store import WorkbookStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BarName = {bar_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Store]\n"
    "PageSize = {page_size}\n"
    "AutoSave = {autosave}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    bar_name: str


class FaultyStore(WorkbookStore):
    """Store whose calls can be made to fail on demand.

    ``fail("insert", CollectionName.SALE_ITEMS, after=1)`` lets one insert into
    ``sale_items`` through and fails every later one until :meth:`heal`.
    """

    def __init__(self, workbook, **kwargs: Any) -> None:
        super().__init__(workbook, **kwargs)
        self.faults: Dict[Tuple[str, str], int] = {}

    def fail(self, operation: str, collection, *, after: int = 0) -> None:
        self.faults[(operation, getattr(collection, "value", collection))] = after

    def heal(self) -> None:
        self.faults.clear()

    def _check(self, operation: str, collection) -> None:
        name = getattr(collection, "value", collection)
        key = (operation, name)
        if key not in self.faults:
            return
        if self.faults[key] > 0:
            self.faults[key] -= 1
            return
        raise PersistenceError(f"Injected {operation} failure on {name}", collection=name)

    def insert(self, collection, record):
        self._check("insert", collection)
        return super().insert(collection, record)

    def update(self, collection, match, patch):
        self._check("update", collection)
        return super().update(collection, match, patch)

    def delete(self, collection, match):
        self._check("delete", collection)
        return super().delete(collection, match)

    def query(self, collection, filter=None, order=None, range_start=0, range_length=None):
        self._check("query", collection)
        return super().query(collection, filter, order, range_start, range_length)


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_master_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        bar_name: str = "Test Snack Bar",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        page_size: int = 2,
        autosave: str = "yes",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        bundle_dir = tmp_path / bundle_dir_name
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                bar_name=bar_name,
                schema_version=schema_version,
                page_size=page_size,
                autosave=autosave,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            bar_name=bar_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a disk-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        bar_name="Test Snack Bar",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        page_size=3,
        autosave=False,
    )


@pytest.fixture
def store() -> FaultyStore:
    """In-memory store over a freshly built workbook; faults off by default."""

    return FaultyStore(build_master_workbook(), page_size=3)


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: FaultyStore) -> core_logic.RuntimeContext:
    return core_logic.build_context(settings, store)


@pytest.fixture
def add_product(store: WorkbookStore) -> Callable[..., str]:
    """Insert a product row straight into the store and return its id."""

    def _add(
        product_id: str,
        *,
        name: str | None = None,
        price: str = "5.00",
        cost: str = "2.00",
        min_stock: str = "0",
        active: bool = True,
    ) -> str:
        row = data_manager.ProductRow(
            product_id=product_id,
            name=name or product_id,
            category="Snacks",
            unit="un",
            price=Decimal(price),
            cost=Decimal(cost),
            min_stock=Decimal(min_stock),
            is_active=active,
        )
        store.insert(CollectionName.PRODUCTS, data_manager.serialize_product(row))
        return product_id

    return _add


@pytest.fixture
def add_employee(store: WorkbookStore) -> Callable[..., str]:
    def _add(employee_id: str, *, limit: str = "20.00", name: str = "Ana") -> str:
        row = data_manager.EmployeeRow(
            employee_id=employee_id,
            name=name,
            role="Cook",
            daily_meal_limit=Decimal(limit),
            is_active=True,
        )
        store.insert(CollectionName.EMPLOYEES, data_manager.serialize_employee(row))
        return employee_id

    return _add


@pytest.fixture
def stocked_product(add_product, context) -> Callable[..., str]:
    """Create a product and record a purchase entry for it."""

    def _stock(product_id: str, quantity: str = "10", **product_kwargs: Any) -> str:
        add_product(product_id, **product_kwargs)
        context.movements.record(product_id, Decimal(quantity), MovementKind.PURCHASE_ENTRY, origin="Opening stock")
        return product_id

    return _stock

