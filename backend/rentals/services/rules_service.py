# Overview: Store booking rules (business hours, advance notice, rental duration bounds).

"""
Booking rules are evaluated in two registers:

- online creation: every violation is fatal (ReservationRulesViolation)
- confirmation / edit by the store: violations become warnings recorded on
  the activity row, never blocking the store's own decision

Business hours are checked at pickup (start) and return (end), in the store's
timezone. Reasons are prefixed "pickup_" / "return_":
    closure_period, day_closed, outside_hours
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional

from flask import current_app

from ..errors import (
    AdvanceNoticeViolation,
    BusinessHoursViolation,
    MaxRentalDurationViolation,
    MinRentalDurationViolation,
    RentalError,
)
from rentals.time_utils import minutes_between, to_store_local, utcnow


REASON_CLOSURE = "closure_period"
REASON_DAY_CLOSED = "day_closed"
REASON_OUTSIDE_HOURS = "outside_hours"


def _js_weekday(local: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (local.weekday() + 1) % 7


def _parse_day(value: str) -> Optional[date]:
    try:
        return date.fromisoformat(value[:10])
    except (TypeError, ValueError):
        return None


def in_closure_period(local: datetime, closure_periods) -> Optional[dict]:
    """Closure periods are inclusive calendar-date ranges."""
    day = local.date()
    for period in closure_periods or []:
        start = _parse_day(period.get("startDate") or "")
        end = _parse_day(period.get("endDate") or "")
        if start is None or end is None:
            current_app.logger.warning("Invalid closure period dates: %s", period)
            continue
        if start <= day <= end:
            return period
    return None


def check_business_hours(instant: datetime, business_hours: Optional[dict], tz_name: Optional[str]) -> Optional[str]:
    """Return a violation reason for one instant, or None when open."""
    if not business_hours or not business_hours.get("enabled"):
        return None

    local = to_store_local(instant, tz_name)
    if in_closure_period(local, business_hours.get("closurePeriods")):
        return REASON_CLOSURE

    schedule = business_hours.get("schedule") or {}
    day = schedule.get(str(_js_weekday(local))) or schedule.get(_js_weekday(local))
    if not day or not day.get("isOpen"):
        return REASON_DAY_CLOSED

    hhmm = local.strftime("%H:%M")
    if hhmm < day.get("openTime", "00:00") or hhmm > day.get("closeTime", "23:59"):
        return REASON_OUTSIDE_HOURS
    return None


def validate_rental_period(start: datetime, end: datetime, store) -> list[str]:
    errors = []
    pickup = check_business_hours(start, store.business_hours, store.timezone)
    if pickup:
        errors.append(f"pickup_{pickup}")
    ret = check_business_hours(end, store.business_hours, store.timezone)
    if ret:
        errors.append(f"return_{ret}")
    return errors


def format_duration_minutes(minutes: int) -> str:
    days, rem = divmod(int(minutes), 60 * 24)
    hours, mins = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if mins or not parts:
        parts.append(f"{mins}min")
    return " ".join(parts)


def evaluate_reservation_rules(
    start: datetime,
    end: datetime,
    store,
    *,
    now: Optional[datetime] = None,
) -> list[RentalError]:
    """
    Every violated rule, in order: business hours, advance notice,
    minimum duration, maximum duration.
    """
    violations: list[RentalError] = []

    reasons = validate_rental_period(start, end, store)
    if reasons:
        violations.append(BusinessHoursViolation(reasons=", ".join(reasons)))

    notice = store.advance_notice_minutes or 0
    if notice > 0:
        earliest = (now or utcnow()) + timedelta(minutes=notice)
        if start < earliest:
            violations.append(AdvanceNoticeViolation(duration=format_duration_minutes(notice)))

    rental_minutes = minutes_between(start, end)
    min_minutes = store.min_rental_minutes or 0
    if min_minutes > 0 and rental_minutes < min_minutes:
        violations.append(MinRentalDurationViolation(duration=format_duration_minutes(min_minutes)))

    max_minutes = store.max_rental_minutes
    if max_minutes and rental_minutes > max_minutes:
        violations.append(MaxRentalDurationViolation(duration=format_duration_minutes(max_minutes)))

    return violations


def violations_as_warnings(violations: list[RentalError]) -> list[dict]:
    return [v.to_dict() for v in violations]


def format_warnings_for_log(warnings: list[dict]) -> str:
    if not warnings:
        return ""
    return "Validation warnings: " + "; ".join(
        f"{w['error']} ({', '.join(f'{k}={v}' for k, v in (w.get('error_params') or {}).items())})"
        for w in warnings
    )
