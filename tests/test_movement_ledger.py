"""Tests for the append-only movement ledger and stock derivation."""

from __future__ import annotations

import random
from decimal import Decimal

import pytest

from snackbar_ledger import data_manager, movement_ledger
from snackbar_ledger.constants import MOVEMENT_CLASSIFICATION, CollectionName, MovementClass, MovementKind
from snackbar_ledger.exceptions import ConsistencyError, ValidationError


def _movement(kind: str, quantity: str, movement_id: str = "M1") -> data_manager.MovementRow:
    return data_manager.MovementRow(
        movement_id=movement_id,
        product_id="P1",
        quantity=Decimal(quantity),
        kind=kind,
        origin="",
        notes=None,
        sale_id=None,
        created_at="2024-05-01T10:00:00+00:00",
    )


def test_every_kind_has_a_classification():
    assert set(MOVEMENT_CLASSIFICATION) == set(MovementKind)


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        (MovementKind.PURCHASE_ENTRY, Decimal("4")),
        (MovementKind.SALE_REVERSAL_ENTRY, Decimal("4")),
        (MovementKind.SALE_EXIT, Decimal("-4")),
        (MovementKind.LOSS_EXIT, Decimal("-4")),
        (MovementKind.INTERNAL_CONSUMPTION_EXIT, Decimal("-4")),
        (MovementKind.INVENTORY_ADJUSTMENT, Decimal("4")),
    ],
)
def test_signed_quantity_follows_classification(kind, expected):
    assert movement_ledger.signed_quantity(kind, Decimal("4")) == expected


def test_negative_adjustment_is_added_as_is():
    assert movement_ledger.signed_quantity("INVENTORY_ADJUSTMENT", Decimal("-3")) == Decimal("-3")


def test_fold_stock_rejects_unknown_stored_kind():
    with pytest.raises(ConsistencyError):
        movement_ledger.fold_stock([_movement("MYSTERY", "1")])


@pytest.mark.parametrize("seed", range(10))
def test_fold_stock_matches_independent_sum_for_random_histories(seed):
    """Derived stock equals entries - exits + adjustments for any history."""

    rng = random.Random(seed)
    kinds = list(MovementKind)
    for _ in range(5):
        history = []
        expected = Decimal("0")
        for idx in range(rng.randint(0, 25)):
            kind = rng.choice(kinds)
            if kind is MovementKind.INVENTORY_ADJUSTMENT:
                quantity = Decimal(rng.choice([-1, 1]) * rng.randint(1, 9))
                expected += quantity
            else:
                quantity = Decimal(rng.randint(1, 9))
                if MOVEMENT_CLASSIFICATION[kind] is MovementClass.ENTRY:
                    expected += quantity
                else:
                    expected -= quantity
            history.append(_movement(kind.value, str(quantity), movement_id=f"M{idx}"))
        assert movement_ledger.fold_stock(history) == expected


@pytest.mark.parametrize("quantity", [0, -1, "abc", None, True])
def test_record_rejects_non_positive_quantities(context, quantity):
    with pytest.raises(ValidationError):
        context.movements.record("P1", quantity, MovementKind.PURCHASE_ENTRY)
    assert context.store.query(CollectionName.STOCK_MOVEMENTS) == []


def test_record_rejects_zero_adjustment(context):
    with pytest.raises(ValidationError):
        context.movements.record("P1", 0, MovementKind.INVENTORY_ADJUSTMENT)


def test_record_rejects_unknown_kind(context):
    with pytest.raises(ValidationError):
        context.movements.record("P1", 1, "GIFT")


def test_record_requires_product_id(context):
    with pytest.raises(ValidationError):
        context.movements.record("  ", 1, MovementKind.PURCHASE_ENTRY)


def test_record_appends_movement_and_derives_stock(context):
    movement_id = context.movements.record("P1", 10, MovementKind.PURCHASE_ENTRY, origin="Supplier")
    context.movements.record("P1", "2.5", MovementKind.LOSS_EXIT, notes="Dropped")

    stored = context.store.query(CollectionName.STOCK_MOVEMENTS, {"id": movement_id})[0]
    assert stored["kind"] == "PURCHASE_ENTRY"
    assert stored["origin"] == "Supplier"
    assert context.movements.derived_stock("P1") == Decimal("7.5")


def test_exit_may_drive_stock_negative(context):
    context.movements.record("P1", 3, MovementKind.SALE_EXIT)
    assert context.movements.derived_stock("P1") == Decimal("-3")


def test_stock_levels_groups_by_product(context):
    context.movements.record("P1", 5, MovementKind.PURCHASE_ENTRY)
    context.movements.record("P2", 2, MovementKind.PRODUCTION_ENTRY)
    context.movements.record("P2", 1, MovementKind.INTERNAL_CONSUMPTION_EXIT)

    assert context.movements.stock_levels() == {"P1": Decimal("5"), "P2": Decimal("1")}


def test_adjust_to_count_writes_signed_delta(context):
    context.movements.record("P1", 10, MovementKind.PURCHASE_ENTRY)

    movement_id = context.movements.adjust_to_count("P1", 7, notes="Monthly count")

    stored = context.store.query(CollectionName.STOCK_MOVEMENTS, {"id": movement_id})[0]
    assert stored["kind"] == "INVENTORY_ADJUSTMENT"
    assert stored["quantity"] == Decimal("-3")
    assert context.movements.derived_stock("P1") == Decimal("7")


def test_adjust_to_count_writes_nothing_when_stock_matches(context):
    context.movements.record("P1", 4, MovementKind.PURCHASE_ENTRY)

    assert context.movements.adjust_to_count("P1", 4) is None
    assert len(context.store.query(CollectionName.STOCK_MOVEMENTS)) == 1


def test_adjust_to_count_rejects_negative_count(context):
    with pytest.raises(ValidationError):
        context.movements.adjust_to_count("P1", -1)
