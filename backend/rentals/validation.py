from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from rentals.time_utils import parse_iso_datetime


# Maximum amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


def require_json(payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("JSON object body required")
    return payload


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required")


def parse_int(value: Any, field: str, *, minimum: int | None = None) -> int:
    """
    Strict integer coercion.

    Rejects booleans, floats, scientific notation and decimal strings.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be an integer")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return result


def parse_cents(value: Any, field: str, *, allow_negative: bool = False) -> int:
    """Amount in cents: integers only, bounded by MAX_AMOUNT_CENTS."""
    cents = parse_int(value, field)
    if not allow_negative and cents < 0:
        raise ValidationError(f"{field} must not be negative")
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum amount")
    return cents


def parse_major_amount(value: Any, field: str) -> int:
    """Decimal major-unit amount ("12.50") -> cents, rounded half-up."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum amount")
    return cents


def parse_datetime(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    try:
        dt = parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    if dt is None:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    return dt


def parse_window(payload: dict, start_field: str = "start_date", end_field: str = "end_date") -> tuple[datetime, datetime]:
    start = parse_datetime(payload.get(start_field), start_field)
    end = parse_datetime(payload.get(end_field), end_field)
    if end <= start:
        raise ValidationError(f"{end_field} must be after {start_field}")
    return start, end


def optional_str(value: Any, field: str, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field} exceeds maximum length ({max_length})")
    return text
