# Overview: Service-layer payment ledger for reservations.

"""
Reservation Payment Ledger

Every monetary event is one Payment row. Balances (rental paid, deposit
collected/returned) are always derived by summing completed rows and are
never stored.

- Manual rows (cash, card, transfer, check, other) may be deleted.
- Provider rows (method "provider") are permanent; corrections are new rows.
- A refund is a new row pointing at the charged row, never an edit of it.
"""

from __future__ import annotations

from typing import Optional

from flask import current_app

from ..extensions import db
from ..errors import (
    AmountExceedsDeposit,
    InvalidAmount,
    PaymentNotDeletable,
    PaymentNotFound,
    ProviderError,
    ReasonRequired,
    ReservationNotFound,
)
from ..models import Payment, Reservation
from rentals.time_utils import utcnow
from .activity_service import log_activity
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .payment_provider import PaymentProviderError, from_minor_units, get_payment_provider, to_minor_units


# =============================================================================
# CONSTANTS
# =============================================================================

PAYMENT_TYPES = {
    "rental",
    "deposit",
    "deposit_return",
    "damage",
    "deposit_hold",
    "deposit_capture",
    "adjustment",
}

# Types a person may enter by hand; holds and captures come from the provider flow
MANUAL_PAYMENT_TYPES = {"rental", "deposit", "deposit_return", "damage", "adjustment"}

MANUAL_METHODS = {"cash", "card", "transfer", "check", "other"}
METHOD_PROVIDER = "provider"

PAYMENT_STATUSES = {"pending", "authorized", "completed", "failed", "refunded", "cancelled"}


def _load_reservation(reservation_id: int, store_id: Optional[int], *, lock: bool = True) -> Reservation:
    query = db.session.query(Reservation).filter_by(id=reservation_id)
    if lock:
        query = lock_for_update(query)
    reservation = query.first()
    if not reservation or (store_id is not None and reservation.store_id != store_id):
        raise ReservationNotFound(reservation_id=reservation_id)
    return reservation


def _sum_completed(payments, payment_type: str) -> int:
    return sum(p.amount_cents for p in payments if p.type == payment_type and p.status == "completed")


def summarize_payments(payments) -> dict:
    deposit_collected = _sum_completed(payments, "deposit")
    deposit_returned = _sum_completed(payments, "deposit_return")
    return {
        "rental_paid_cents": _sum_completed(payments, "rental"),
        "deposit_collected_cents": deposit_collected,
        "deposit_returned_cents": deposit_returned,
        "max_returnable_cents": deposit_collected - deposit_returned,
        "damage_cents": _sum_completed(payments, "damage") + _sum_completed(payments, "deposit_capture"),
        "adjustment_cents": _sum_completed(payments, "adjustment"),
        "has_online_payment_pending": any(
            p.method == METHOD_PROVIDER and p.type == "rental" and p.status == "pending" for p in payments
        ),
    }


def get_payment_summary(reservation_id: int, *, store_id: Optional[int] = None) -> dict:
    """Derived balances for a reservation, recomputed from its completed rows."""
    reservation = _load_reservation(reservation_id, store_id, lock=False)
    payments = db.session.query(Payment).filter_by(reservation_id=reservation.id).all()
    summary = summarize_payments(payments)
    summary["rental_due_cents"] = max(0, reservation.subtotal_cents + reservation.delivery_fee_cents - summary["rental_paid_cents"])
    summary["deposit_due_cents"] = max(0, reservation.deposit_cents - summary["deposit_collected_cents"])
    return summary


def list_payments(reservation_id: int, *, store_id: Optional[int] = None) -> list[Payment]:
    reservation = _load_reservation(reservation_id, store_id, lock=False)
    return (
        db.session.query(Payment)
        .filter_by(reservation_id=reservation.id)
        .order_by(Payment.id.asc())
        .all()
    )


# =============================================================================
# MANUAL ENTRIES
# =============================================================================

def record_payment(
    reservation_id: int,
    *,
    payment_type: str,
    amount_cents: int,
    method: str,
    paid_at=None,
    notes: Optional[str] = None,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Payment:
    """
    Record a manually-entered payment as a completed row.

    Only adjustments may be negative; every other type must be positive.
    """
    if payment_type not in MANUAL_PAYMENT_TYPES:
        raise ValueError(f"Invalid payment type: {payment_type}")
    if method not in MANUAL_METHODS:
        raise ValueError(f"Invalid payment method: {method}")
    if amount_cents is None or amount_cents == 0 or (amount_cents < 0 and payment_type != "adjustment"):
        raise InvalidAmount(amount_cents=amount_cents)

    def _op():
        begin_write_transaction()
        reservation = _load_reservation(reservation_id, store_id)
        payment = Payment(
            reservation_id=reservation.id,
            type=payment_type,
            method=method,
            status="completed",
            amount_cents=amount_cents,
            currency=reservation.store.currency,
            paid_at=paid_at or utcnow(),
            notes=notes,
            created_by_actor_id=actor_id,
        )
        db.session.add(payment)
        db.session.flush()
        log_activity(
            reservation_id=reservation.id,
            activity_type="payment_added",
            actor_id=actor_id,
            metadata={"paymentId": payment.id, "type": payment_type, "amount_cents": amount_cents, "method": method},
        )
        db.session.commit()
        return payment

    return run_with_retry(_op)


def delete_payment(payment_id: int, *, store_id: Optional[int] = None, actor_id: Optional[int] = None) -> None:
    """Remove a manual row. Provider rows raise PaymentNotDeletable."""
    def _op():
        begin_write_transaction()
        payment = db.session.get(Payment, payment_id)
        if not payment or (store_id is not None and payment.reservation.store_id != store_id):
            raise PaymentNotFound(payment_id=payment_id)
        if payment.method == METHOD_PROVIDER:
            raise PaymentNotDeletable(payment_id=payment_id)

        reservation_id = payment.reservation_id
        details = {"paymentId": payment.id, "type": payment.type, "amount_cents": payment.amount_cents, "action": "deleted"}
        db.session.delete(payment)
        log_activity(
            reservation_id=reservation_id,
            activity_type="payment_updated",
            actor_id=actor_id,
            metadata=details,
        )
        db.session.commit()

    run_with_retry(_op)


def return_deposit(
    reservation_id: int,
    *,
    amount_cents: int,
    method: str,
    notes: Optional[str] = None,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Payment:
    """Pay back part of a collected deposit, never more than is still held."""
    if amount_cents is None or amount_cents <= 0:
        raise InvalidAmount(amount_cents=amount_cents)
    if method not in MANUAL_METHODS:
        raise ValueError(f"Invalid payment method: {method}")

    def _op():
        begin_write_transaction()
        reservation = _load_reservation(reservation_id, store_id)
        payments = db.session.query(Payment).filter_by(reservation_id=reservation.id).all()
        max_returnable = summarize_payments(payments)["max_returnable_cents"]
        if amount_cents > max_returnable:
            raise AmountExceedsDeposit(max_cents=max_returnable)

        payment = Payment(
            reservation_id=reservation.id,
            type="deposit_return",
            method=method,
            status="completed",
            amount_cents=amount_cents,
            currency=reservation.store.currency,
            paid_at=utcnow(),
            notes=notes,
            created_by_actor_id=actor_id,
        )
        db.session.add(payment)
        db.session.flush()
        log_activity(
            reservation_id=reservation.id,
            activity_type="payment_added",
            actor_id=actor_id,
            metadata={"paymentId": payment.id, "type": "deposit_return", "amount_cents": amount_cents, "method": method},
        )
        db.session.commit()
        return payment

    return run_with_retry(_op)


def record_damage(
    reservation_id: int,
    *,
    amount_cents: int,
    method: str,
    notes: str,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Payment:
    if not notes or not notes.strip():
        raise ReasonRequired()
    if amount_cents is None or amount_cents <= 0:
        raise InvalidAmount(amount_cents=amount_cents)
    if method not in MANUAL_METHODS:
        raise ValueError(f"Invalid payment method: {method}")

    def _op():
        begin_write_transaction()
        reservation = _load_reservation(reservation_id, store_id)
        payment = Payment(
            reservation_id=reservation.id,
            type="damage",
            method=method,
            status="completed",
            amount_cents=amount_cents,
            currency=reservation.store.currency,
            paid_at=utcnow(),
            notes=notes.strip(),
            created_by_actor_id=actor_id,
        )
        db.session.add(payment)
        db.session.flush()
        log_activity(
            reservation_id=reservation.id,
            activity_type="payment_added",
            actor_id=actor_id,
            description=notes.strip(),
            metadata={"paymentId": payment.id, "type": "damage", "amount_cents": amount_cents, "method": method},
        )
        db.session.commit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# PROVIDER REFUNDS
# =============================================================================

def process_provider_refund(
    payment_id: int,
    *,
    amount_cents: Optional[int] = None,
    reason: Optional[str] = None,
    reservation_id: Optional[int] = None,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Payment:
    """
    Refund a provider charge, fully (amount_cents None) or partially.

    The refundable amount is asked from the provider so earlier refunds made
    outside this system are respected. The original row is left untouched;
    the refund is a new "adjustment" row with a negative amount.

    The provider is called once, outside any database transaction; only the
    recording of its result is retried.
    """
    provider = get_payment_provider()
    if provider is None:
        raise ProviderError("No payment provider configured")

    def _read():
        original = db.session.get(Payment, payment_id)
        if not original or (store_id is not None and original.reservation.store_id != store_id):
            raise PaymentNotFound(payment_id=payment_id)
        if reservation_id is not None and original.reservation_id != reservation_id:
            raise PaymentNotFound(payment_id=payment_id)
        if original.method != METHOD_PROVIDER or not original.provider_charge_id or original.status != "completed":
            raise InvalidAmount(payment_id=payment_id, reason="not_refundable")
        charge = (original.reservation_id, original.provider_charge_id, original.currency)
        db.session.commit()
        return charge

    owner_id, charge_id, currency = run_with_retry(_read)

    try:
        refundable = from_minor_units(provider.get_charge_refundable_amount(charge_id), currency)
    except PaymentProviderError as exc:
        raise ProviderError(str(exc), operation="refund")

    amount = refundable if amount_cents is None else amount_cents
    if amount <= 0:
        raise InvalidAmount(amount_cents=amount)
    if amount > refundable:
        raise AmountExceedsDeposit(max_cents=refundable)

    try:
        refund = provider.create_refund(
            charge_id=charge_id,
            amount_minor=to_minor_units(amount, currency),
            reason=reason,
        )
    except PaymentProviderError as exc:
        current_app.logger.error("Refund of payment %s failed: %s", payment_id, exc)
        raise ProviderError(str(exc), operation="refund")

    def _op():
        begin_write_transaction()
        row = Payment(
            reservation_id=owner_id,
            type="adjustment",
            method=METHOD_PROVIDER,
            status="completed",
            amount_cents=-amount,
            currency=currency,
            notes=reason,
            provider_charge_id=charge_id,
            provider_refund_id=refund.id,
            refunded_payment_id=payment_id,
            paid_at=utcnow(),
            created_by_actor_id=actor_id,
        )
        db.session.add(row)
        db.session.flush()
        log_activity(
            reservation_id=owner_id,
            activity_type="payment_added",
            actor_id=actor_id,
            description=reason,
            metadata={
                "paymentId": row.id,
                "type": "refund",
                "refundedPaymentId": payment_id,
                "amount_cents": amount,
                "refundId": refund.id,
            },
        )
        db.session.commit()
        return row

    return run_with_retry(_op)
