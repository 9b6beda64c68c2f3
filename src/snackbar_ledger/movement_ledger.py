"""Append-only stock movement ledger.

Current stock is never stored. It is derived by folding the signed quantity
of every movement recorded for a product:

* entry kinds add their (positive) quantity;
* exit kinds subtract their (positive) quantity;
* ``INVENTORY_ADJUSTMENT`` carries its own sign and is added as-is, since it
  represents ``physical count - derived stock`` at the time of the count.

Corrections are new movements. Nothing here edits or removes a movement.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

from . import data_manager, log
from .constants import MOVEMENT_CLASSIFICATION, CollectionName, MovementClass, MovementKind
from .exceptions import ConsistencyError, ValidationError
from .store import WorkbookStore
from .validation import as_decimal, require_nonnegative, require_positive, require_text


def coerce_kind(kind: Union[MovementKind, str]) -> MovementKind:
    """Resolve ``kind`` to a :class:`MovementKind` or raise ``ValidationError``."""

    if isinstance(kind, MovementKind):
        return kind
    try:
        return MovementKind(kind)
    except ValueError as exc:
        log.error("Unknown movement kind: %r", kind)
        raise ValidationError(f"Unknown movement kind: {kind}") from exc


def classify(kind: Union[MovementKind, str]) -> MovementClass:
    return MOVEMENT_CLASSIFICATION[coerce_kind(kind)]


def signed_quantity(kind: Union[MovementKind, str], quantity: Decimal) -> Decimal:
    """Return the effect of one movement on stock."""

    # Adjustments are stored already signed.
    if classify(kind) is MovementClass.EXIT:
        return -quantity
    return quantity


def fold_stock(movements: Iterable[data_manager.MovementRow]) -> Decimal:
    """Sum the signed quantities of ``movements``.

    Raises:
        ConsistencyError: If a stored movement carries a kind this package
            does not know, since folding it either way would be a guess.
    """

    total = Decimal("0")
    for movement in movements:
        try:
            total += signed_quantity(movement.kind, movement.quantity)
        except ValidationError as exc:
            raise ConsistencyError(
                f"Movement '{movement.movement_id}' has unknown kind '{movement.kind}'"
            ) from exc
    return total


def validate_movement(kind: Union[MovementKind, str], quantity: Any) -> tuple[MovementKind, Decimal]:
    """Check a movement before it is written.

    Entry and exit kinds take an unsigned magnitude, so ``quantity`` must be
    strictly positive. ``INVENTORY_ADJUSTMENT`` accepts any non-zero value.
    """

    resolved = coerce_kind(kind)
    if resolved is MovementKind.INVENTORY_ADJUSTMENT:
        amount = as_decimal(quantity, "Quantity")
        if amount == 0:
            log.error("Inventory adjustment with zero quantity rejected")
            raise ValidationError("Inventory adjustment quantity must be non-zero")
        return resolved, amount
    return resolved, require_positive(quantity, "Quantity")


class MovementLedger:
    """Write movements and derive stock from them."""

    def __init__(self, store: WorkbookStore) -> None:
        self.store = store

    def record(
        self,
        product_id: str,
        quantity: Any,
        kind: Union[MovementKind, str],
        origin: str = "",
        notes: Optional[str] = None,
        *,
        sale_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Validate and append one movement.

        Args:
            product_id (str): Product whose stock changes.
            quantity: Unsigned magnitude, or the signed delta for
                ``INVENTORY_ADJUSTMENT``.
            kind (MovementKind | str): Movement kind.
            origin (str): Free-text reason shown in the history.
            notes (str | None): Optional extra notes.
            sale_id (str | None): Sale that produced the movement, for sale
                exits and reversals.
            timestamp (datetime | None): Creation time; defaults to now (UTC).

        Returns:
            str: Identifier of the new movement.

        Raises:
            ValidationError: For a missing product id, an unknown kind, or a
                quantity the kind does not accept. Nothing is written.
            PersistenceError: If the store rejects the insert.
        """

        product_id = require_text(product_id, "Product id")
        resolved, amount = validate_movement(kind, quantity)

        when = data_manager.resolve_timestamp(timestamp)
        row = data_manager.MovementRow(
            movement_id=data_manager.generate_id("M", when=when),
            product_id=product_id,
            quantity=amount,
            kind=resolved.value,
            origin=origin or "",
            notes=notes,
            sale_id=sale_id,
            created_at=when.isoformat(),
        )
        self.store.insert(CollectionName.STOCK_MOVEMENTS, data_manager.serialize_movement(row))
        log.info(
            "Recorded %s movement '%s' for product '%s' (quantity=%s)",
            resolved.value,
            row.movement_id,
            product_id,
            amount,
        )
        return row.movement_id

    def movements_for(self, product_id: str) -> List[data_manager.MovementRow]:
        records = self.store.query(CollectionName.STOCK_MOVEMENTS, {"product_id": product_id})
        return [data_manager.deserialize_movement(record) for record in records]

    def movements_for_sale(self, sale_id: str) -> List[data_manager.MovementRow]:
        records = self.store.query(CollectionName.STOCK_MOVEMENTS, {"sale_id": sale_id})
        return [data_manager.deserialize_movement(record) for record in records]

    def derived_stock(self, product_id: str) -> Decimal:
        """Fold every movement of ``product_id`` read in one snapshot."""

        stock = fold_stock(self.movements_for(product_id))
        log.debug("Derived stock for product '%s': %s", product_id, stock)
        return stock

    def stock_levels(self) -> Dict[str, Decimal]:
        """Derive stock for every product that has at least one movement."""

        by_product: Dict[str, List[data_manager.MovementRow]] = {}
        for record in self.store.query(CollectionName.STOCK_MOVEMENTS):
            movement = data_manager.deserialize_movement(record)
            by_product.setdefault(movement.product_id, []).append(movement)
        levels = {product_id: fold_stock(rows) for product_id, rows in by_product.items()}
        log.debug("Derived stock levels for %d products", len(levels))
        return levels

    def adjust_to_count(self, product_id: str, physical_count: Any, notes: Optional[str] = None) -> Optional[str]:
        """Bring derived stock in line with a physical count.

        Writes a single ``INVENTORY_ADJUSTMENT`` whose quantity is
        ``physical_count - derived_stock``. Returns ``None`` and writes nothing
        when the two already agree.
        """

        product_id = require_text(product_id, "Product id")
        counted = require_nonnegative(physical_count, "Physical count")
        current = self.derived_stock(product_id)
        delta = counted - current
        if delta == 0:
            log.info("Inventory count for '%s' matches derived stock (%s); no adjustment", product_id, current)
            return None
        return self.record(
            product_id,
            delta,
            MovementKind.INVENTORY_ADJUSTMENT,
            origin="Inventory count",
            notes=notes,
        )
