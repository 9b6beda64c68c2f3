"""Tests for the workbook-backed store boundary."""

from __future__ import annotations

import threading
from decimal import Decimal

import openpyxl
import pytest

from snackbar_ledger import data_manager
from snackbar_ledger.constants import CollectionName, SaleStatus
from snackbar_ledger.exceptions import PersistenceError
from snackbar_ledger.setup_excel import build_master_workbook
from snackbar_ledger.store import WorkbookStore


def _sale(sale_id: str, created_at: str, status: str = "CLOSED") -> dict:
    return {
        "id": sale_id,
        "created_at": created_at,
        "status": status,
        "payment_method": "Cash",
        "origin": "customer",
        "gross_value": Decimal("10.00"),
        "discount_value": Decimal("0.00"),
        "net_value": Decimal("10.00"),
        "total_cost": Decimal("4.00"),
        "employee_id": None,
    }


def test_insert_returns_stored_copy_with_every_header_field(store):
    stored = store.insert(CollectionName.SALES, {"id": "S1", "status": SaleStatus.OPEN})

    assert stored["status"] == "OPEN"
    assert stored["net_value"] is None
    assert store.query(CollectionName.SALES) == [stored]


def test_insert_rejects_duplicate_ids(store):
    store.insert(CollectionName.SALES, _sale("S1", "2024-05-01T10:00:00+00:00"))
    with pytest.raises(PersistenceError):
        store.insert(CollectionName.SALES, _sale("S1", "2024-05-01T11:00:00+00:00"))
    assert len(store.query(CollectionName.SALES)) == 1


def test_insert_rejects_records_without_id(store):
    with pytest.raises(PersistenceError):
        store.insert(CollectionName.SALES, {"status": "OPEN"})


def test_insert_rejects_unknown_fields(store):
    with pytest.raises(PersistenceError) as excinfo:
        store.insert(CollectionName.SALES, {"id": "S1", "colour": "red"})
    assert excinfo.value.collection == "sales"


def test_unknown_collection_raises_persistence_error(store):
    with pytest.raises(PersistenceError):
        store.query("nonexistent")


def test_conditional_update_only_matches_current_state(store):
    """Matching on status makes the update a compare-and-swap."""

    store.insert(CollectionName.SALES, _sale("S1", "2024-05-01T10:00:00+00:00", status="OPEN"))

    assert store.update(CollectionName.SALES, {"id": "S1", "status": "CLOSED"}, {"status": "CANCELED"}) == 0
    assert store.update(CollectionName.SALES, {"id": "S1", "status": "OPEN"}, {"status": "CLOSED"}) == 1
    assert store.query(CollectionName.SALES, {"id": "S1"})[0]["status"] == "CLOSED"


def test_conditional_update_has_a_single_winner_across_threads(store):
    store.insert(CollectionName.SALES, _sale("S1", "2024-05-01T10:00:00+00:00"))
    barrier = threading.Barrier(8)
    results = []

    def _flip():
        barrier.wait()
        results.append(
            store.update(CollectionName.SALES, {"id": "S1", "status": "CLOSED"}, {"status": "CANCELED"})
        )

    threads = [threading.Thread(target=_flip) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == [0] * 7 + [1]


def test_delete_removes_matching_rows_only(store):
    for sale_id in ("S1", "S2", "S3"):
        store.insert(CollectionName.SALE_ITEMS, {"id": f"I-{sale_id}", "sale_id": sale_id, "product_id": "P1"})
    store.insert(CollectionName.SALE_ITEMS, {"id": "I-S2b", "sale_id": "S2", "product_id": "P2"})

    removed = store.delete(CollectionName.SALE_ITEMS, {"sale_id": "S2"})

    assert removed == 2
    assert store.ids(CollectionName.SALE_ITEMS) == {"I-S1", "I-S3"}


def test_delete_refuses_empty_match(store):
    with pytest.raises(PersistenceError):
        store.delete(CollectionName.SALES, {})


def test_query_orders_descending_and_slices(store):
    for idx in range(5):
        store.insert(CollectionName.SALES, _sale(f"S{idx}", f"2024-05-0{idx + 1}T10:00:00+00:00"))

    page = store.query(CollectionName.SALES, order="-created_at", range_start=1, range_length=2)

    assert [record["id"] for record in page] == ["S3", "S2"]


def test_fetch_all_reads_every_page(store):
    """Seven records with a page size of three take three pages."""

    for idx in range(7):
        store.insert(CollectionName.EXPENSES, {"id": f"E{idx}", "amount": Decimal(idx + 1)})

    records = store.fetch_all(CollectionName.EXPENSES)

    assert [record["id"] for record in records] == [f"E{idx}" for idx in range(7)]


def test_fetch_all_handles_exact_page_multiple(store):
    for idx in range(6):
        store.insert(CollectionName.EXPENSES, {"id": f"E{idx}", "amount": Decimal("1")})

    assert len(store.fetch_all(CollectionName.EXPENSES)) == 6


def test_autosave_writes_each_mutation_to_disk(tmp_path):
    data_file = tmp_path / "ledger.xlsx"
    store = WorkbookStore(build_master_workbook(), data_file=data_file, autosave=True)

    store.insert(CollectionName.EMPLOYEES, {"id": "F1", "name": "Ana", "daily_meal_limit": 20, "active": True})

    reloaded = openpyxl.load_workbook(data_file)
    values = list(reloaded[CollectionName.EMPLOYEES.value].iter_rows(min_row=2, values_only=True))
    assert values == [("F1", "Ana", None, 20, True)]


def _failing_save(*_args, **_kwargs):
    raise OSError("disk full")


@pytest.fixture
def autosave_store(tmp_path):
    return WorkbookStore(build_master_workbook(), data_file=tmp_path / "ledger.xlsx", autosave=True)


def test_failed_save_undoes_insert(autosave_store, monkeypatch):
    autosave_store.insert(CollectionName.SALES, _sale("S1", "2024-05-01T10:00:00+00:00"))
    monkeypatch.setattr(data_manager, "save_workbook", _failing_save)

    with pytest.raises(PersistenceError) as excinfo:
        autosave_store.insert(CollectionName.SALES, _sale("S2", "2024-05-01T11:00:00+00:00"))

    assert excinfo.value.partial is False
    assert autosave_store.ids(CollectionName.SALES) == {"S1"}
    monkeypatch.undo()
    autosave_store.insert(CollectionName.SALES, _sale("S2", "2024-05-01T11:00:00+00:00"))
    assert [record["id"] for record in autosave_store.query(CollectionName.SALES)] == ["S1", "S2"]


def test_failed_save_undoes_update(autosave_store, monkeypatch):
    autosave_store.insert(CollectionName.SALES, _sale("S1", "2024-05-01T10:00:00+00:00"))
    monkeypatch.setattr(data_manager, "save_workbook", _failing_save)

    with pytest.raises(PersistenceError):
        autosave_store.update(CollectionName.SALES, {"id": "S1", "status": "CLOSED"}, {"status": "CANCELED"})

    assert autosave_store.query(CollectionName.SALES, {"id": "S1"})[0]["status"] == "CLOSED"


def test_failed_save_undoes_delete(autosave_store, monkeypatch):
    for item_id, sale_id in (("I1", "S1"), ("I2", "S2"), ("I3", "S1")):
        autosave_store.insert(CollectionName.SALE_ITEMS, {"id": item_id, "sale_id": sale_id, "product_id": "P1"})
    monkeypatch.setattr(data_manager, "save_workbook", _failing_save)

    with pytest.raises(PersistenceError):
        autosave_store.delete(CollectionName.SALE_ITEMS, {"sale_id": "S1"})

    records = autosave_store.query(CollectionName.SALE_ITEMS)
    assert [(record["id"], record["sale_id"]) for record in records] == [("I1", "S1"), ("I2", "S2"), ("I3", "S1")]



def test_persist_without_data_file_raises(store):
    with pytest.raises(PersistenceError):
        store.persist()


def test_from_settings_wraps_unreadable_workbooks(tmp_path):
    bogus = tmp_path / "ledger.txt"
    bogus.write_text("not a workbook")
    settings = data_manager.ConfigSettings(data_file=bogus, bar_name="Bar", schema_version="1.0.0")

    with pytest.raises(PersistenceError):
        WorkbookStore.from_settings(settings)


def test_from_settings_reopens_persisted_records(master_workbook_path):
    settings = data_manager.ConfigSettings(
        data_file=master_workbook_path, bar_name="Bar", schema_version="1.0.0", autosave=True
    )
    first = WorkbookStore.from_settings(settings)
    first.insert(CollectionName.SALES, _sale("S1", "2024-05-01T10:00:00+00:00"))

    second = WorkbookStore.from_settings(settings)

    record = second.query(CollectionName.SALES, {"id": "S1"})[0]
    assert data_manager.deserialize_sale(record).net_value == Decimal("10")
