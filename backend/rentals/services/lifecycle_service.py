# Overview: Service-layer reservation lifecycle; status and deposit-hold state machines.

"""
Reservation Lifecycle Service

================================================================================
PURPOSE: Move reservations (and their deposit holds) along fixed edges only.
================================================================================

STATUS MACHINE:
    pending -> confirmed -> ongoing -> completed
    pending -> rejected
    {pending, confirmed, ongoing} -> cancelled

    completed / cancelled / rejected are terminal.

DEPOSIT MACHINE (independent of status):
    none -> card_saved -> authorized -> {captured | released}
    any -> failed on provider error
    failed -> card_saved (fresh attempt)

RULES:
1. The edge is checked before any mutation; a refused transition writes nothing.
2. Every accepted transition appends exactly one activity row.
3. Notifications are returned as intents and dispatched by the caller after
   commit; they can never undo a transition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from flask import current_app

from ..extensions import db
from ..errors import (
    AmountExceedsDeposit,
    InvalidAmount,
    InvalidDepositStatus,
    InvalidPaymentStatus,
    InvalidStatusTransition,
    NoActiveAuthorization,
    PaymentNotFound,
    ProductNoLongerAvailable,
    ProviderError,
    ReasonRequired,
    ReservationNotFound,
)
from ..models import Payment, Product, Reservation
from rentals.time_utils import utcnow
from . import availability_service, rules_service
from .activity_service import log_activity
from .combination_service import get_allocation_strategy
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .notification_service import AUDIENCE_ADMIN, AUDIENCE_CUSTOMER, intent
from .payment_provider import PaymentProviderError, from_minor_units, get_payment_provider, to_minor_units


# =============================================================================
# STATUS MACHINE
# =============================================================================

VALID_STATUSES = {"pending", "confirmed", "ongoing", "completed", "cancelled", "rejected"}
TERMINAL_STATUSES = {"completed", "cancelled", "rejected"}

TRANSITIONS = {
    ("pending", "confirmed"),
    ("pending", "rejected"),
    ("confirmed", "ongoing"),
    ("ongoing", "completed"),
    ("pending", "cancelled"),
    ("confirmed", "cancelled"),
    ("ongoing", "cancelled"),
}

ACTIVITY_FOR_STATUS = {
    "confirmed": "confirmed",
    "rejected": "rejected",
    "ongoing": "picked_up",
    "completed": "returned",
    "cancelled": "cancelled",
}

ADMIN_EVENT_FOR_STATUS = {
    "confirmed": "reservation_confirmed",
    "rejected": "reservation_rejected",
    "ongoing": "reservation_picked_up",
    "completed": "reservation_completed",
    "cancelled": "reservation_cancelled",
}


# =============================================================================
# DEPOSIT MACHINE
# =============================================================================

DEPOSIT_STATUSES = {"none", "card_saved", "authorized", "captured", "released", "failed"}

DEPOSIT_TRANSITIONS = {
    ("none", "card_saved"),
    ("failed", "card_saved"),
    ("card_saved", "authorized"),
    ("authorized", "captured"),
    ("authorized", "released"),
}


def can_transition(from_status: str, to_status: str) -> bool:
    """
    True when `from_status -> to_status` is one of the allowed edges.

    Same-state moves are not edges: confirming a confirmed reservation is
    refused like any other invalid move.
    """
    if from_status not in VALID_STATUSES or to_status not in VALID_STATUSES:
        return False
    return (from_status, to_status) in TRANSITIONS


def can_transition_deposit(from_status: str, to_status: str) -> bool:
    if to_status == "failed":
        return from_status in DEPOSIT_STATUSES
    return (from_status, to_status) in DEPOSIT_TRANSITIONS


@dataclass
class TransitionResult:
    reservation: Reservation
    warnings: list = field(default_factory=list)
    notifications: list = field(default_factory=list)

    def to_dict(self) -> dict:
        body = {"success": True, "reservation": self.reservation.to_dict(include_items=False)}
        if self.warnings:
            body["warnings"] = self.warnings
        return body


def _load_locked(reservation_id: int, store_id: Optional[int]) -> Reservation:
    reservation = lock_for_update(
        db.session.query(Reservation).filter_by(id=reservation_id)
    ).first()
    if not reservation or (store_id is not None and reservation.store_id != store_id):
        raise ReservationNotFound(reservation_id=reservation_id)
    return reservation


def _recheck_capacity(reservation: Reservation) -> None:
    """Confirming a request that did not hold stock must still fit."""
    store = reservation.store
    product_ids = {item.product_id for item in reservation.items if item.product_id}
    if not product_ids:
        return
    products = {
        p.id: p
        for p in lock_for_update(
            db.session.query(Product).filter(Product.id.in_(sorted(product_ids)))
        ).all()
    }
    requests = [
        {
            "product_id": item.product_id,
            "quantity": item.quantity,
            "selected_attributes": item.selected_attributes,
            "name": (item.product_snapshot or {}).get("name"),
        }
        for item in reservation.items
        if item.product_id in products
    ]
    availability_service.allocate_request_capacity(
        store, products, requests, reservation.start_date, reservation.end_date,
        exclude_reservation_id=reservation.id,
        strategy=get_allocation_strategy(current_app.config.get("COMBINATION_ALLOCATION_STRATEGY")),
    )


def update_reservation_status(
    reservation_id: int,
    new_status: str,
    *,
    rejection_reason: Optional[str] = None,
    cancellation_reason: Optional[str] = None,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> TransitionResult:
    """
    Move a reservation to `new_status`.

    Confirmation re-evaluates the store's booking rules; violations found
    then are returned as warnings and recorded on the activity row, not
    raised. When pending requests do not block stock, confirmation also
    re-proves availability.

    Raises:
        ReservationNotFound, InvalidStatusTransition, ProductNoLongerAvailable
    """
    def _op():
        begin_write_transaction()
        reservation = _load_locked(reservation_id, store_id)
        previous = reservation.status

        if not can_transition(previous, new_status):
            raise InvalidStatusTransition(from_status=previous, to_status=new_status)

        warnings = []
        if new_status == "confirmed":
            warnings = rules_service.violations_as_warnings(
                rules_service.evaluate_reservation_rules(
                    reservation.start_date, reservation.end_date, reservation.store
                )
            )
            if not reservation.store.pending_blocks_availability:
                _recheck_capacity(reservation)

        now = utcnow()
        reservation.status = new_status
        if new_status == "ongoing":
            reservation.picked_up_at = now
        elif new_status == "completed":
            reservation.returned_at = now
        elif new_status == "rejected":
            reservation.rejection_reason = rejection_reason
        elif new_status == "cancelled":
            reservation.cancellation_reason = cancellation_reason

        description = None
        if new_status == "rejected":
            description = rejection_reason
        elif new_status == "cancelled":
            description = cancellation_reason
        elif warnings:
            description = rules_service.format_warnings_for_log(warnings)

        metadata = {"previousStatus": previous, "newStatus": new_status}
        if warnings:
            metadata["validationWarnings"] = warnings
        log_activity(
            reservation_id=reservation.id,
            activity_type=ACTIVITY_FOR_STATUS[new_status],
            actor_id=actor_id,
            description=description,
            metadata=metadata,
        )
        db.session.commit()
        return TransitionResult(
            reservation=reservation,
            warnings=warnings,
            notifications=_status_notifications(reservation, previous, new_status),
        )

    return run_with_retry(_op)


def _status_notifications(reservation: Reservation, previous: str, new_status: str) -> list:
    notifications = []
    if previous == "pending" and new_status == "confirmed":
        notifications.append(intent("customer_request_accepted", AUDIENCE_CUSTOMER, reservation))
    elif new_status == "rejected":
        notifications.append(
            intent("customer_request_rejected", AUDIENCE_CUSTOMER, reservation, reason=reservation.rejection_reason)
        )
    elif new_status == "cancelled":
        notifications.append(
            intent("customer_reservation_cancelled", AUDIENCE_CUSTOMER, reservation, reason=reservation.cancellation_reason)
        )
    notifications.append(intent(ADMIN_EVENT_FOR_STATUS[new_status], AUDIENCE_ADMIN, reservation, previous_status=previous))
    return notifications


def cancel_reservation(
    reservation_id: int,
    *,
    reason: Optional[str] = None,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> TransitionResult:
    return update_reservation_status(
        reservation_id,
        "cancelled",
        cancellation_reason=reason,
        store_id=store_id,
        actor_id=actor_id,
    )


# =============================================================================
# ONLINE CHECKOUT (PAYMENT-TRIGGERED)
# =============================================================================

def _checkout_row(session_id: str) -> Payment:
    payment = lock_for_update(
        db.session.query(Payment).filter_by(
            provider_checkout_session_id=session_id, type="rental", method="provider"
        )
    ).first()
    if payment is None:
        raise PaymentNotFound(checkout_session_id=session_id)
    return payment


def complete_checkout_payment(
    session_id: str,
    *,
    amount_minor: Optional[int] = None,
    payment_intent_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    provider_customer_id: Optional[str] = None,
    payment_method_id: Optional[str] = None,
) -> TransitionResult:
    """
    Record a paid checkout session and confirm its reservation.

    The pending rental row becomes completed and a pending reservation moves
    to confirmed. A reservation that is no longer pending keeps its status;
    only the payment is recorded. Replaying a completed session changes
    nothing and returns no notifications.

    When the customer's card came back with the session and the reservation
    carries a deposit, the card is saved for a later hold.

    Raises:
        PaymentNotFound: no checkout row for `session_id`
        InvalidPaymentStatus: the row was already cancelled (expired)
    """
    if not session_id:
        raise ValueError("session_id is required")

    def _op():
        begin_write_transaction()
        payment = _checkout_row(session_id)
        reservation = _load_locked(payment.reservation_id, None)

        if payment.status == "completed":
            current_app.logger.info("Checkout session %s already recorded", session_id)
            db.session.commit()
            return TransitionResult(reservation=reservation)
        if payment.status != "pending":
            raise InvalidPaymentStatus(payment_id=payment.id, status=payment.status)

        if amount_minor is not None:
            received = from_minor_units(amount_minor, payment.currency)
            if received != payment.amount_cents:
                current_app.logger.warning(
                    "Checkout %s for reservation %s paid %s cents, %s expected",
                    session_id, reservation.number, received, payment.amount_cents,
                )
                payment.amount_cents = received
        payment.status = "completed"
        payment.paid_at = utcnow()
        payment.provider_payment_intent_id = payment_intent_id
        payment.provider_charge_id = charge_id
        log_activity(
            reservation_id=reservation.id,
            activity_type="payment_received",
            metadata={
                "paymentId": payment.id,
                "amount_cents": payment.amount_cents,
                "checkoutSessionId": session_id,
                "paymentIntentId": payment_intent_id,
                "chargeId": charge_id,
            },
        )
        notifications = [intent("payment_received", AUDIENCE_ADMIN, reservation, amount_cents=payment.amount_cents)]

        if (
            provider_customer_id
            and payment_method_id
            and reservation.deposit_cents > 0
            and can_transition_deposit(reservation.deposit_status, "card_saved")
        ):
            reservation.provider_customer_id = provider_customer_id
            reservation.provider_payment_method_id = payment_method_id
            reservation.deposit_status = "card_saved"
            log_activity(
                reservation_id=reservation.id,
                activity_type="deposit_card_saved",
                metadata={"paymentMethodId": payment_method_id, "source": "online_payment"},
            )

        previous = reservation.status
        if not can_transition(previous, "confirmed"):
            current_app.logger.info(
                "Reservation %s is %s; checkout %s recorded without a status change",
                reservation.number, previous, session_id,
            )
            db.session.commit()
            return TransitionResult(reservation=reservation, notifications=notifications)

        if not reservation.store.pending_blocks_availability:
            try:
                _recheck_capacity(reservation)
            except ProductNoLongerAvailable:
                current_app.logger.warning(
                    "Reservation %s paid but no longer fits stock; left pending for review",
                    reservation.number,
                )
                db.session.commit()
                return TransitionResult(reservation=reservation, notifications=notifications)

        reservation.status = "confirmed"
        log_activity(
            reservation_id=reservation.id,
            activity_type="confirmed",
            metadata={
                "previousStatus": previous,
                "newStatus": "confirmed",
                "source": "online_payment",
                "depositStatus": reservation.deposit_status,
            },
        )
        notifications.append(intent("customer_reservation_confirmed", AUDIENCE_CUSTOMER, reservation))
        notifications.append(intent("reservation_confirmed", AUDIENCE_ADMIN, reservation, previous_status=previous))
        db.session.commit()
        return TransitionResult(reservation=reservation, notifications=notifications)

    return run_with_retry(_op)


def expire_checkout_payment(session_id: str) -> Payment:
    """Cancel the pending row of an abandoned checkout; the reservation is untouched."""
    if not session_id:
        raise ValueError("session_id is required")

    def _op():
        begin_write_transaction()
        payment = _checkout_row(session_id)
        if payment.status == "completed":
            raise InvalidPaymentStatus(payment_id=payment.id, status=payment.status)
        if payment.status == "pending":
            payment.status = "cancelled"
            log_activity(
                reservation_id=payment.reservation_id,
                activity_type="payment_expired",
                metadata={
                    "paymentId": payment.id,
                    "amount_cents": payment.amount_cents,
                    "checkoutSessionId": session_id,
                },
            )
        db.session.commit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# DEPOSIT HOLDS
# =============================================================================
#
# A provider call is made at most once per operation and never while the write
# lock is held: the hold is validated and snapshotted in one transaction, the
# provider is called, then the outcome is recorded in a second transaction
# that first checks the hold did not move in between.

def _require_provider():
    provider = get_payment_provider()
    if provider is None:
        raise ProviderError("No payment provider configured")
    return provider


@dataclass(frozen=True)
class HoldSnapshot:
    reservation_id: int
    number: str
    deposit_status: str
    deposit_cents: int
    currency: str
    payment_intent_id: Optional[str]
    provider_customer_id: Optional[str]
    payment_method_id: Optional[str]


def _read_hold(reservation_id: int, store_id: Optional[int], check) -> HoldSnapshot:
    """Run `check` against the reservation and return its deposit state."""
    def _op():
        reservation = db.session.query(Reservation).filter_by(id=reservation_id).first()
        if not reservation or (store_id is not None and reservation.store_id != store_id):
            raise ReservationNotFound(reservation_id=reservation_id)
        check(reservation)
        snapshot = HoldSnapshot(
            reservation_id=reservation.id,
            number=reservation.number,
            deposit_status=reservation.deposit_status,
            deposit_cents=reservation.deposit_cents,
            currency=reservation.store.currency,
            payment_intent_id=reservation.deposit_payment_intent_id,
            provider_customer_id=reservation.provider_customer_id,
            payment_method_id=reservation.provider_payment_method_id,
        )
        db.session.commit()
        return snapshot

    return run_with_retry(_op)


def _load_unchanged(snapshot: HoldSnapshot) -> Reservation:
    """Lock the reservation for recording; refuse if its hold moved since the snapshot."""
    reservation = _load_locked(snapshot.reservation_id, None)
    if (
        reservation.deposit_status != snapshot.deposit_status
        or reservation.deposit_payment_intent_id != snapshot.payment_intent_id
    ):
        current_app.logger.error(
            "Deposit hold for reservation %s changed during a provider call (%s -> %s)",
            snapshot.number, snapshot.deposit_status, reservation.deposit_status,
        )
        raise InvalidDepositStatus(deposit_status=reservation.deposit_status)
    return reservation


def _fail_deposit(snapshot: HoldSnapshot, operation: str, exc: Exception, actor_id: Optional[int]) -> None:
    """Record a provider failure in its own transaction."""
    current_app.logger.error(
        "Deposit %s failed for reservation %s: %s", operation, snapshot.number, exc
    )

    def _op():
        begin_write_transaction()
        reservation = _load_locked(snapshot.reservation_id, None)
        previous = reservation.deposit_status
        reservation.deposit_status = "failed"
        log_activity(
            reservation_id=reservation.id,
            activity_type="deposit_failed",
            actor_id=actor_id,
            description=str(exc),
            metadata={"operation": operation, "previousDepositStatus": previous},
        )
        db.session.commit()

    run_with_retry(_op)


def _active_hold(reservation: Reservation) -> Optional[Payment]:
    return (
        db.session.query(Payment)
        .filter_by(
            reservation_id=reservation.id,
            type="deposit_hold",
            status="authorized",
            provider_payment_intent_id=reservation.deposit_payment_intent_id,
        )
        .first()
    )


def _require_authorized(reservation: Reservation) -> None:
    if reservation.deposit_status != "authorized" or not reservation.deposit_payment_intent_id:
        raise NoActiveAuthorization(deposit_status=reservation.deposit_status)


def save_deposit_card(
    reservation_id: int,
    *,
    provider_customer_id: str,
    payment_method_id: str,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Reservation:
    """Remember the customer's card for a later hold (none/failed -> card_saved)."""
    if not provider_customer_id or not payment_method_id:
        raise ValueError("provider_customer_id and payment_method_id are required")

    def _op():
        begin_write_transaction()
        reservation = _load_locked(reservation_id, store_id)
        if not can_transition_deposit(reservation.deposit_status, "card_saved"):
            raise InvalidDepositStatus(deposit_status=reservation.deposit_status)

        reservation.provider_customer_id = provider_customer_id
        reservation.provider_payment_method_id = payment_method_id
        reservation.deposit_status = "card_saved"
        log_activity(
            reservation_id=reservation.id,
            activity_type="deposit_card_saved",
            actor_id=actor_id,
            metadata={"paymentMethodId": payment_method_id},
        )
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def create_deposit_hold(
    reservation_id: int,
    *,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Reservation:
    """
    Authorize the deposit on the saved card (card_saved -> authorized).

    Raises:
        InvalidDepositStatus: no saved card, or deposit is zero
        ProviderError: authorization refused; deposit_status is now "failed"
    """
    def check(reservation):
        if not can_transition_deposit(reservation.deposit_status, "authorized"):
            raise InvalidDepositStatus(deposit_status=reservation.deposit_status)
        if reservation.deposit_cents <= 0:
            raise InvalidDepositStatus(deposit_status=reservation.deposit_status, deposit_cents=0)

    snapshot = _read_hold(reservation_id, store_id, check)
    provider = _require_provider()
    try:
        auth = provider.create_deposit_authorization(
            customer_id=snapshot.provider_customer_id,
            payment_method_id=snapshot.payment_method_id,
            amount_minor=to_minor_units(snapshot.deposit_cents, snapshot.currency),
            currency=snapshot.currency,
            reservation_id=snapshot.reservation_id,
        )
    except PaymentProviderError as exc:
        _fail_deposit(snapshot, "authorize", exc, actor_id)
        raise ProviderError(str(exc), operation="authorize")

    def _op():
        begin_write_transaction()
        reservation = _load_unchanged(snapshot)
        reservation.deposit_status = "authorized"
        reservation.deposit_payment_intent_id = auth.payment_intent_id
        reservation.deposit_authorization_expires_at = auth.expires_at
        db.session.add(Payment(
            reservation_id=reservation.id,
            type="deposit_hold",
            method="provider",
            status="authorized",
            amount_cents=snapshot.deposit_cents,
            currency=snapshot.currency,
            provider_payment_intent_id=auth.payment_intent_id,
            created_by_actor_id=actor_id,
        ))
        log_activity(
            reservation_id=reservation.id,
            activity_type="deposit_authorized",
            actor_id=actor_id,
            metadata={
                "amount_cents": snapshot.deposit_cents,
                "paymentIntentId": auth.payment_intent_id,
                "expiresAt": auth.expires_at.isoformat() if auth.expires_at else None,
            },
        )
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def capture_deposit_hold(
    reservation_id: int,
    amount_cents: int,
    reason: str,
    *,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Reservation:
    """
    Capture part or all of an authorized hold (authorized -> captured).

    The hold row is marked completed with captured_amount_cents; a companion
    deposit_capture row carries the amount and the reason.
    """
    if not reason or not reason.strip():
        raise ReasonRequired()
    if amount_cents is None or amount_cents <= 0:
        raise InvalidAmount(amount_cents=amount_cents)
    reason = reason.strip()

    def check(reservation):
        _require_authorized(reservation)
        if amount_cents > reservation.deposit_cents:
            raise AmountExceedsDeposit(max_cents=reservation.deposit_cents)

    snapshot = _read_hold(reservation_id, store_id, check)
    provider = _require_provider()
    try:
        result = provider.capture_deposit(
            payment_intent_id=snapshot.payment_intent_id,
            amount_minor=to_minor_units(amount_cents, snapshot.currency),
        )
    except PaymentProviderError as exc:
        _fail_deposit(snapshot, "capture", exc, actor_id)
        raise ProviderError(str(exc), operation="capture")

    def _op():
        begin_write_transaction()
        reservation = _load_unchanged(snapshot)
        hold = _active_hold(reservation)
        if hold is not None:
            hold.status = "completed"
            hold.captured_amount_cents = amount_cents

        db.session.add(Payment(
            reservation_id=reservation.id,
            type="deposit_capture",
            method="provider",
            status="completed",
            amount_cents=amount_cents,
            currency=snapshot.currency,
            notes=reason,
            provider_payment_intent_id=snapshot.payment_intent_id,
            provider_charge_id=result.charge_id,
            paid_at=utcnow(),
            created_by_actor_id=actor_id,
        ))
        reservation.deposit_status = "captured"
        log_activity(
            reservation_id=reservation.id,
            activity_type="deposit_captured",
            actor_id=actor_id,
            description=reason,
            metadata={"amount_cents": amount_cents, "paymentIntentId": snapshot.payment_intent_id},
        )
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def release_deposit_hold(
    reservation_id: int,
    *,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> Reservation:
    """Cancel an authorized hold (authorized -> released)."""
    snapshot = _read_hold(reservation_id, store_id, _require_authorized)
    provider = _require_provider()
    try:
        provider.release_deposit(payment_intent_id=snapshot.payment_intent_id)
    except PaymentProviderError as exc:
        _fail_deposit(snapshot, "release", exc, actor_id)
        raise ProviderError(str(exc), operation="release")

    def _op():
        begin_write_transaction()
        reservation = _load_unchanged(snapshot)
        hold = _active_hold(reservation)
        if hold is not None:
            hold.status = "cancelled"

        reservation.deposit_status = "released"
        log_activity(
            reservation_id=reservation.id,
            activity_type="deposit_released",
            actor_id=actor_id,
            metadata={"paymentIntentId": snapshot.payment_intent_id},
        )
        db.session.commit()
        return reservation

    return run_with_retry(_op)
