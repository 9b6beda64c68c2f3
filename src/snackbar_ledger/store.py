"""Generic persistent-store boundary backed by the master workbook.

Every collection is a worksheet whose header row names the record fields.
Records cross this boundary as plain dictionaries; the ledgers convert them to
typed rows through :mod:`snackbar_ledger.data_manager`.

Each public method runs under one re-entrant lock, so a single call is atomic
with respect to every other call on the same store. That is what makes the
conditional form of :meth:`WorkbookStore.update` a compare-and-swap: the match
on the current value and the write happen without anything in between.
"""

from __future__ import annotations

import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log
from .constants import DEFAULT_PAGE_SIZE, CollectionName
from .exceptions import PersistenceError

Collection = Union[CollectionName, str]


def _name(collection: Collection) -> str:
    if isinstance(collection, CollectionName):
        return collection.value
    return str(collection)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class WorkbookStore:
    """Insert/update/delete/query access to the collections of a workbook.

    Args:
        workbook (Workbook): Live ``openpyxl`` workbook holding one sheet per
            collection.
        data_file (Path | None): Where :meth:`persist` writes the workbook.
            ``None`` keeps the store purely in memory.
        autosave (bool): Persist after every successful mutating call. Ignored
            when there is no ``data_file``.
        page_size (int): Page length used by :meth:`fetch_all`.
    """

    def __init__(
        self,
        workbook: Workbook,
        *,
        data_file: Optional[Path] = None,
        autosave: bool = False,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._workbook = workbook
        self.data_file = data_file
        self.autosave = autosave and data_file is not None
        self.page_size = page_size
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: data_manager.ConfigSettings) -> "WorkbookStore":
        """Open the configured workbook and wrap it in a store."""

        try:
            workbook = data_manager.open_workbook(settings.data_file)
        except InvalidFileException as exc:
            raise PersistenceError(f"Unable to open workbook '{settings.data_file}': {exc}") from exc
        log.info("Opened store workbook '%s'", settings.data_file)
        return cls(
            workbook,
            data_file=settings.data_file,
            autosave=settings.autosave,
            page_size=settings.page_size,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _sheet(self, collection: Collection) -> Tuple[Worksheet, List[str]]:
        name = _name(collection)
        try:
            sheet = self._workbook[name]
        except KeyError as exc:
            log.error("Unknown collection requested: '%s'", name)
            raise PersistenceError(f"Unknown collection: {name}", collection=name) from exc
        header = [cell.value for cell in sheet[1]]
        return sheet, header

    @staticmethod
    def _iter_records(sheet: Worksheet, header: List[str]) -> Iterator[Tuple[int, Dict[str, Any]]]:
        for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            # skip fully empty rows
            if any(cell is not None for cell in raw):
                yield row_idx, dict(zip(header, raw))

    @staticmethod
    def _matches(record: Mapping[str, Any], match: Optional[Mapping[str, Any]]) -> bool:
        if not match:
            return True
        return all(record.get(field) == _plain(value) for field, value in match.items())

    @staticmethod
    def _check_fields(collection: str, header: List[str], fields) -> None:
        unknown = [field for field in fields if field not in header]
        if unknown:
            log.error("Unknown fields %s for collection '%s'", unknown, collection)
            raise PersistenceError(
                f"Unknown fields for {collection}: {', '.join(unknown)}",
                collection=collection,
            )

    def _commit(self, collection: str, undo: Callable[[], None]) -> None:
        """Save after a write; on failure run ``undo`` so the sheet matches disk again."""

        if not self.autosave:
            return
        try:
            data_manager.save_workbook(self._workbook, self.data_file)
        except OSError as exc:
            undo()
            log.error("Saving workbook after write to '%s' failed; write undone: %s", collection, exc)
            raise PersistenceError(f"Unable to save workbook: {exc}", collection=collection) from exc

    # ------------------------------------------------------------------
    # Public boundary
    # ------------------------------------------------------------------

    def insert(self, collection: Collection, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Append ``record`` to ``collection`` and return the stored copy.

        Raises:
            PersistenceError: If the collection or a field is unknown, the
                record has no ``id``, the id already exists, or saving fails.
        """

        name = _name(collection)
        with self._lock:
            sheet, header = self._sheet(name)
            self._check_fields(name, header, record)
            record_id = record.get("id")
            if record_id in (None, ""):
                raise PersistenceError(f"Record for {name} has no id", collection=name)
            for _, existing in self._iter_records(sheet, header):
                if existing.get("id") == record_id:
                    log.warning("Duplicate id '%s' rejected for '%s'", record_id, name)
                    raise PersistenceError(f"Duplicate id {record_id} in {name}", collection=name)

            stored = {field: _plain(record.get(field)) for field in header}
            sheet.append([stored[field] for field in header])
            appended_row = sheet.max_row
            self._commit(name, lambda: sheet.delete_rows(appended_row))
        log.debug("Inserted '%s' into '%s'", record_id, name)
        return stored

    def update(self, collection: Collection, match: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        """Apply ``patch`` to every record matching ``match``.

        ``match`` may name current field values as well as the id, which turns
        the call into a conditional update: a record whose status already moved
        on is simply not matched. The caller learns whether it won from the
        returned count.

        Returns:
            int: Number of records changed.
        """

        name = _name(collection)
        with self._lock:
            sheet, header = self._sheet(name)
            self._check_fields(name, header, [*match, *patch])
            columns = {field: idx + 1 for idx, field in enumerate(header)}
            changed = 0
            previous: List[Tuple[int, int, Any]] = []
            for row_idx, record in self._iter_records(sheet, header):
                if not self._matches(record, match):
                    continue
                for field, value in patch.items():
                    previous.append((row_idx, columns[field], record.get(field)))
                    sheet.cell(row=row_idx, column=columns[field], value=_plain(value))
                changed += 1

            def _restore() -> None:
                for row_idx, column, value in previous:
                    sheet.cell(row=row_idx, column=column, value=value)

            if changed:
                self._commit(name, _restore)
        log.debug("Updated %d record(s) in '%s' matching %s", changed, name, dict(match))
        return changed

    def delete(self, collection: Collection, match: Mapping[str, Any]) -> int:
        """Remove every record matching ``match``.

        Only used to compensate a unit of work that never completed; ledger
        history is otherwise never deleted. An empty ``match`` is refused.
        """

        name = _name(collection)
        if not match:
            raise PersistenceError(f"Refusing unconditional delete on {name}", collection=name)
        with self._lock:
            sheet, header = self._sheet(name)
            self._check_fields(name, header, match)
            doomed = [
                (row_idx, [record.get(field) for field in header])
                for row_idx, record in self._iter_records(sheet, header)
                if self._matches(record, match)
            ]
            for row_idx, _ in reversed(doomed):
                sheet.delete_rows(row_idx)

            def _reinsert() -> None:
                for row_idx, values in doomed:
                    sheet.insert_rows(row_idx)
                    for column, value in enumerate(values, start=1):
                        sheet.cell(row=row_idx, column=column, value=value)

            if doomed:
                self._commit(name, _reinsert)
        log.debug("Deleted %d record(s) from '%s' matching %s", len(doomed), name, dict(match))
        return len(doomed)

    def query(
        self,
        collection: Collection,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
        range_start: int = 0,
        range_length: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Read matching records as one consistent snapshot.

        Args:
            collection: Collection to read.
            filter (Mapping | None): Field equality conditions.
            order (str | None): Field to sort by; prefix with ``-`` for
                descending order. Sheet order is kept when omitted.
            range_start (int): Offset of the first record returned.
            range_length (int | None): Maximum number of records; ``None``
                returns everything from ``range_start`` onward.
        """

        name = _name(collection)
        with self._lock:
            sheet, header = self._sheet(name)
            if filter:
                self._check_fields(name, header, filter)
            records = [record for _, record in self._iter_records(sheet, header) if self._matches(record, filter)]

        if order:
            field = order.lstrip("-")
            if field not in header:
                raise PersistenceError(f"Unknown order field for {name}: {field}", collection=name)
            records.sort(
                key=lambda record: (record.get(field) is None, record.get(field) if record.get(field) is not None else ""),
                reverse=order.startswith("-"),
            )
        end = None if range_length is None else range_start + range_length
        return records[range_start:end]

    def fetch_all(
        self,
        collection: Collection,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = "id",
        page_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Load a whole collection page by page, as bulk reloads do."""

        size = page_size or self.page_size
        loaded: List[Dict[str, Any]] = []
        start = 0
        while True:
            page = self.query(collection, filter, order, range_start=start, range_length=size)
            loaded.extend(page)
            if len(page) < size:
                break
            start += size
        log.debug("Fetched %d record(s) from '%s' in pages of %d", len(loaded), _name(collection), size)
        return loaded

    def ids(self, collection: Collection) -> Set[str]:
        """Return the set of ids currently present in ``collection``."""

        return {str(record["id"]) for record in self.query(collection) if record.get("id") is not None}

    def persist(self) -> None:
        """Write the workbook to its data file."""

        if self.data_file is None:
            raise PersistenceError("Store has no data file to persist to")
        with self._lock:
            try:
                data_manager.save_workbook(self._workbook, self.data_file)
            except OSError as exc:
                raise PersistenceError(f"Unable to save workbook: {exc}") from exc
        log.info("Persisted workbook '%s'", self.data_file)
