"""Input guards shared by the ledgers and the sale coordinator.

Every helper raises :class:`~snackbar_ledger.exceptions.ValidationError`
and logs the rejected value. None of them touches the store.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from . import log
from .exceptions import ValidationError

Number = Union[Decimal, int, str]


def as_decimal(value: Any, field: str) -> Decimal:
    """Convert ``value`` to :class:`Decimal` or raise ``ValidationError``.

    Floats are routed through ``str`` so ``0.1`` becomes ``Decimal("0.1")``.
    Booleans are rejected even though Python treats them as integers.
    """

    if isinstance(value, bool) or value is None:
        log.error("Validation failed: %s is not a number (%r)", field, value)
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            log.error("Validation failed: %s is not a number (%r)", field, value)
            raise ValidationError(f"{field} must be a number") from exc
    if not result.is_finite():
        log.error("Validation failed: %s is not finite (%r)", field, value)
        raise ValidationError(f"{field} must be finite")
    return result


def require_positive(value: Any, field: str = "Quantity") -> Decimal:
    amount = as_decimal(value, field)
    if amount <= Decimal("0"):
        log.error("Validation failed: %s must be greater than zero (%s)", field, amount)
        raise ValidationError(f"{field} must be greater than zero")
    return amount


def require_nonnegative(value: Any, field: str = "Amount") -> Decimal:
    amount = as_decimal(value, field)
    if amount < Decimal("0"):
        log.error("Validation failed: %s must be zero or positive (%s)", field, amount)
        raise ValidationError(f"{field} must be zero or positive")
    return amount


def require_text(value: Optional[str], field: str) -> str:
    """Reject ``None`` and blank strings; return the stripped text."""

    if value is None or not str(value).strip():
        log.error("Validation failed: %s is required", field)
        raise ValidationError(f"{field} is required")
    return str(value).strip()


def as_iso_date(value: Union[date, datetime, str], field: str = "Date") -> str:
    """Normalise a date-like value to ``YYYY-MM-DD``."""

    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = require_text(value, field)
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError as exc:
        log.error("Validation failed: %s is not an ISO date (%r)", field, value)
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)") from exc
