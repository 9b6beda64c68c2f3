"""Bootstrap helpers for the snack-bar master workbook.

Each store collection lives on its own worksheet whose first row holds the
field names. The helpers here are shared by first-run setup and by tests so
that the column layout is defined in exactly one place.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from .constants import CollectionName

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    CollectionName.PRODUCTS.value: [
        "id",
        "name",
        "category",
        "unit",
        "price",
        "cost",
        "min_stock",
        "active",
    ],
    CollectionName.EMPLOYEES.value: [
        "id",
        "name",
        "role",
        "daily_meal_limit",
        "active",
    ],
    CollectionName.STOCK_MOVEMENTS.value: [
        "id",
        "product_id",
        "quantity",
        "kind",
        "origin",
        "notes",
        "sale_id",
        "created_at",
    ],
    CollectionName.SALES.value: [
        "id",
        "created_at",
        "status",
        "payment_method",
        "origin",
        "gross_value",
        "discount_value",
        "net_value",
        "total_cost",
        "employee_id",
    ],
    CollectionName.SALE_ITEMS.value: [
        "id",
        "sale_id",
        "product_id",
        "quantity",
        "unit_price",
        "unit_cost",
        "total",
    ],
    CollectionName.EMPLOYEE_MEALS.value: [
        "id",
        "employee_id",
        "meal_date",
        "value",
        "description",
        "related_sale_id",
        "canceled",
    ],
    CollectionName.EXPENSES.value: [
        "id",
        "expense_date",
        "category",
        "description",
        "amount",
        "payment_method",
        "canceled",
    ],
}


def build_master_workbook(sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS) -> Workbook:
    """Return an in-memory workbook with one bold header row per collection."""

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    return workbook


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)
    build_master_workbook(sheet_columns).save(destination)
    return destination
