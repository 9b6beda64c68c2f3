"""Repair passes for writes that did not complete.

Two kinds of damage are handled:

* records created locally whose insert never reached the store are pushed
  again (insert-only, never an update);
* sales left behind by a failed saga are rolled back, and canceled sales
  missing some of their reversal movements get the missing ones appended.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from . import data_manager, log
from .constants import DEFAULT_ORPHAN_GRACE_SECONDS, SaleOrigin, SaleStatus
from .exceptions import LedgerError, PersistenceError, ValidationError
from .sale_coordinator import SaleCoordinator, missing_reversals
from .store import Collection, WorkbookStore


@dataclass
class RepairReport:
    """Outcome of :meth:`Reconciler.repair_sales`."""

    rolled_back: List[str] = field(default_factory=list)
    reversals_added: Dict[str, int] = field(default_factory=dict)
    in_flight: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def clean(self) -> bool:
        return not (self.rolled_back or self.reversals_added or self.failed)


def _age(created_at: str, now: datetime) -> Optional[timedelta]:
    try:
        created = datetime.fromisoformat(created_at)
    except ValueError:
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return now - created


class Reconciler:
    """Push missing records and repair half-written sales."""

    def __init__(
        self,
        store: WorkbookStore,
        coordinator: SaleCoordinator,
        *,
        orphan_grace_seconds: int = DEFAULT_ORPHAN_GRACE_SECONDS,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.orphan_grace = timedelta(seconds=orphan_grace_seconds)

    def push_missing(self, collection: Collection, local_records: Iterable[Mapping[str, Any]]) -> List[str]:
        """Insert every local record whose id the store does not have.

        The remote id set is read once to find candidates and then read again
        right before each insert, so a record that appeared in the meantime
        (another session's retry, a slow first write) is skipped rather than
        duplicated. A failed insert is logged and left for the next pass.

        Returns:
            list[str]: Ids that were inserted by this call.
        """

        local = list(local_records)
        for record in local:
            if not record.get("id"):
                log.error("Local record without id cannot be reconciled: %r", dict(record))
                raise ValidationError("Local records must carry an id to be reconciled")

        remote_ids = self.store.ids(collection)
        candidates = [record for record in local if str(record["id"]) not in remote_ids]
        inserted: List[str] = []
        for record in candidates:
            record_id = str(record["id"])
            if record_id in self.store.ids(collection):
                log.info("Record '%s' appeared in the store before re-insert; skipping", record_id)
                continue
            try:
                self.store.insert(collection, record)
            except PersistenceError as exc:
                log.error("Re-insert of '%s' failed; will retry on the next pass: %s", record_id, exc)
                continue
            log.info("Pushed missing record '%s'", record_id)
            inserted.append(record_id)

        log.info(
            "Reconciliation pushed %d of %d missing record(s) (%d local)",
            len(inserted),
            len(candidates),
            len(local),
        )
        return inserted

    def repair_sales(self, *, now: Optional[datetime] = None) -> RepairReport:
        """Bring every sale back to a consistent state.

        * ``OPEN`` sales older than the grace period are orphans of a failed
          creation and are rolled back. Younger ones may still be in flight and
          are left alone.
        * ``CLOSED`` sales without items are rolled back.
        * ``CANCELED`` sales get any missing reversal movements appended.

        Failures are recorded per sale; one bad sale does not stop the pass.
        """

        now = now or datetime.now(UTC)
        report = RepairReport()
        for sale in self.coordinator.list_sales():
            try:
                self._repair_one(sale, now, report)
            except LedgerError as exc:
                log.error("Repair of sale '%s' failed: %s", sale.sale_id, exc)
                report.failed[sale.sale_id] = str(exc)
        if not report.clean:
            log.info(
                "Sale repair: rolled back %d, completed reversals for %d, %d failure(s)",
                len(report.rolled_back),
                len(report.reversals_added),
                len(report.failed),
            )
        return report

    def _repair_one(self, sale: data_manager.SaleRow, now: datetime, report: RepairReport) -> None:
        if sale.status == SaleStatus.OPEN.value:
            age = _age(sale.created_at, now)
            if age is not None and age < self.orphan_grace:
                report.in_flight.append(sale.sale_id)
                return
            log.warning("Rolling back orphaned OPEN sale '%s'", sale.sale_id)
            self.coordinator.rollback(sale.sale_id)
            report.rolled_back.append(sale.sale_id)
            return

        items = self.coordinator.items_for(sale.sale_id)
        if sale.status == SaleStatus.CLOSED.value:
            if not items:
                log.warning("Rolling back CLOSED sale '%s' that has no items", sale.sale_id)
                self.coordinator.rollback(sale.sale_id)
                report.rolled_back.append(sale.sale_id)
            return

        if sale.status == SaleStatus.CANCELED.value:
            movements = self.coordinator.movements.movements_for_sale(sale.sale_id)
            missing = missing_reversals(items, movements)
            if missing:
                log.warning("Sale '%s' is missing %d reversal(s)", sale.sale_id, len(missing))
                self.coordinator.append_reversals(sale.sale_id, missing)
                report.reversals_added[sale.sale_id] = len(missing)
            if sale.origin == SaleOrigin.EMPLOYEE.value:
                self.coordinator.meals.cancel_for_sale(sale.sale_id)
