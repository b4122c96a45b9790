"""
Reservation lifecycle tests.

Verifies:
- Only the fixed status edges are accepted; same-state moves are refused
- A refused transition writes nothing
- Every accepted transition appends exactly one activity row
- Confirmation reports booking-rule violations as warnings
- Confirmation re-proves stock when pending requests do not hold it
- A paid checkout confirms a pending reservation exactly once
"""

import pytest

from rentals.errors import (
    InvalidPaymentStatus,
    InvalidStatusTransition,
    PaymentNotFound,
    ProductNoLongerAvailable,
    ReservationNotFound,
)
from rentals.models import Payment, ReservationActivity
from rentals.services import lifecycle_service, payment_service, reservation_service
from rentals.services.activity_service import list_activities
from rentals.services.reservation_service import ItemInput


def _activity_count(db_session, reservation_id):
    return db_session.query(ReservationActivity).filter_by(reservation_id=reservation_id).count()


class TestTransitionTable:

    @pytest.mark.parametrize("from_status,to_status", sorted(lifecycle_service.TRANSITIONS))
    def test_allowed_edges(self, from_status, to_status):
        assert lifecycle_service.can_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        ("ongoing", "pending"),
        ("confirmed", "pending"),
        ("pending", "ongoing"),
        ("pending", "completed"),
        ("confirmed", "rejected"),
        ("completed", "cancelled"),
        ("cancelled", "pending"),
        ("rejected", "confirmed"),
        ("confirmed", "confirmed"),
        ("pending", "archived"),
    ])
    def test_refused_edges(self, from_status, to_status):
        assert not lifecycle_service.can_transition(from_status, to_status)

    def test_terminal_statuses_have_no_exits(self):
        for terminal in lifecycle_service.TERMINAL_STATUSES:
            assert not any(src == terminal for src, _ in lifecycle_service.TRANSITIONS)

    def test_deposit_edges(self):
        assert lifecycle_service.can_transition_deposit("none", "card_saved")
        assert lifecycle_service.can_transition_deposit("failed", "card_saved")
        assert lifecycle_service.can_transition_deposit("authorized", "failed")
        assert not lifecycle_service.can_transition_deposit("captured", "released")
        assert not lifecycle_service.can_transition_deposit("none", "authorized")


class TestStatusUpdates:

    def test_confirm_pending_request(self, db_session, pending_reservation):
        result = lifecycle_service.update_reservation_status(pending_reservation.id, "confirmed", actor_id=5)

        assert result.reservation.status == "confirmed"
        assert result.warnings == []
        activity = list_activities(pending_reservation.id)[-1]
        assert activity.activity_type == "confirmed"
        assert activity.actor_id == 5
        assert activity.details == {"previousStatus": "pending", "newStatus": "confirmed"}
        assert [n.event for n in result.notifications] == ["customer_request_accepted", "reservation_confirmed"]

    def test_full_happy_path_stamps_timestamps(self, db_session, pending_reservation):
        lifecycle_service.update_reservation_status(pending_reservation.id, "confirmed")
        ongoing = lifecycle_service.update_reservation_status(pending_reservation.id, "ongoing").reservation
        assert ongoing.picked_up_at is not None
        assert ongoing.returned_at is None

        completed = lifecycle_service.update_reservation_status(pending_reservation.id, "completed").reservation
        assert completed.returned_at is not None

        types = [a.activity_type for a in list_activities(pending_reservation.id)]
        assert types == ["created", "confirmed", "picked_up", "returned"]

    def test_invalid_transition_changes_nothing(self, db_session, pending_reservation):
        lifecycle_service.update_reservation_status(pending_reservation.id, "confirmed")
        lifecycle_service.update_reservation_status(pending_reservation.id, "ongoing")
        before = _activity_count(db_session, pending_reservation.id)

        with pytest.raises(InvalidStatusTransition) as exc:
            lifecycle_service.update_reservation_status(pending_reservation.id, "pending")
        assert exc.value.params == {"from_status": "ongoing", "to_status": "pending"}

        db_session.refresh(pending_reservation)
        assert pending_reservation.status == "ongoing"
        assert _activity_count(db_session, pending_reservation.id) == before

    def test_confirming_twice_is_refused(self, db_session, pending_reservation):
        lifecycle_service.update_reservation_status(pending_reservation.id, "confirmed")
        with pytest.raises(InvalidStatusTransition):
            lifecycle_service.update_reservation_status(pending_reservation.id, "confirmed")

    def test_reject_records_reason(self, db_session, pending_reservation):
        result = lifecycle_service.update_reservation_status(
            pending_reservation.id, "rejected", rejection_reason="Fully booked that week"
        )
        assert result.reservation.rejection_reason == "Fully booked that week"
        activity = list_activities(pending_reservation.id)[-1]
        assert activity.activity_type == "rejected"
        assert activity.description == "Fully booked that week"
        customer_intent = result.notifications[0]
        assert customer_intent.event == "customer_request_rejected"
        assert customer_intent.context["reason"] == "Fully booked that week"

    def test_cancel_from_ongoing(self, db_session, pending_reservation):
        lifecycle_service.update_reservation_status(pending_reservation.id, "confirmed")
        lifecycle_service.update_reservation_status(pending_reservation.id, "ongoing")
        result = lifecycle_service.cancel_reservation(pending_reservation.id, reason="Storm warning")
        assert result.reservation.status == "cancelled"
        assert result.reservation.cancellation_reason == "Storm warning"
        assert [n.event for n in result.notifications] == ["customer_reservation_cancelled", "reservation_cancelled"]

    def test_completed_cannot_be_cancelled(self, db_session, pending_reservation):
        for status in ("confirmed", "ongoing", "completed"):
            lifecycle_service.update_reservation_status(pending_reservation.id, status)
        with pytest.raises(InvalidStatusTransition):
            lifecycle_service.cancel_reservation(pending_reservation.id)

    def test_unknown_reservation(self, db_session):
        with pytest.raises(ReservationNotFound):
            lifecycle_service.update_reservation_status(999999, "confirmed")

    def test_store_scope(self, db_session, pending_reservation):
        with pytest.raises(ReservationNotFound):
            lifecycle_service.update_reservation_status(
                pending_reservation.id, "confirmed", store_id=pending_reservation.store_id + 1
            )


class TestConfirmationChecks:

    def test_rule_violations_become_warnings(self, db_session, store, pending_reservation):
        store.max_rental_minutes = 24 * 60
        db_session.commit()

        result = lifecycle_service.update_reservation_status(pending_reservation.id, "confirmed")
        assert result.reservation.status == "confirmed"
        assert [w["error"] for w in result.warnings] == ["MaxRentalDurationViolation"]
        assert result.to_dict()["warnings"] == result.warnings

        activity = list_activities(pending_reservation.id)[-1]
        assert activity.details["validationWarnings"] == result.warnings
        assert activity.description.startswith("Validation warnings:")

    def test_confirmation_rechecks_stock_when_pending_does_not_block(self, db_session, store, product, make_request):
        store.pending_blocks_availability = False
        db_session.commit()

        first = reservation_service.create_reservation(
            make_request([ItemInput(quantity=2, product_id=product.id)])
        ).reservation
        second = reservation_service.create_reservation(
            make_request([ItemInput(quantity=2, product_id=product.id)], email="ben@example.test")
        ).reservation

        lifecycle_service.update_reservation_status(first.id, "confirmed")
        with pytest.raises(ProductNoLongerAvailable):
            lifecycle_service.update_reservation_status(second.id, "confirmed")

        db_session.refresh(second)
        assert second.status == "pending"
        lifecycle_service.update_reservation_status(second.id, "rejected", rejection_reason="No stock")


# =============================================================================
# ONLINE CHECKOUT
# =============================================================================

@pytest.fixture
def paid_booking(db_session, store, product, make_request, provider):
    """A kayak booked in "payment" mode: 300.00 due online, 50.00 deposit."""
    store.reservation_mode = "payment"
    store.payment_account_id = "acct_test"
    store.online_payment_percent = 100
    db_session.commit()
    result = reservation_service.create_reservation(make_request([ItemInput(quantity=1, product_id=product.id)]))
    return result.reservation


def _session_id(reservation):
    return f"cs_{reservation.id}"


def _checkout_row(db_session, reservation):
    return db_session.query(Payment).filter_by(reservation_id=reservation.id, type="rental").one()


class TestOnlineCheckout:

    def test_completion_confirms(self, db_session, paid_booking):
        result = lifecycle_service.complete_checkout_payment(
            _session_id(paid_booking), amount_minor=30000, payment_intent_id="pi_paid", charge_id="ch_paid"
        )

        assert result.reservation.status == "confirmed"
        assert [n.event for n in result.notifications] == [
            "payment_received",
            "customer_reservation_confirmed",
            "reservation_confirmed",
        ]

        payment = _checkout_row(db_session, paid_booking)
        assert payment.status == "completed"
        assert payment.paid_at is not None
        assert payment.provider_charge_id == "ch_paid"

        activities = list_activities(paid_booking.id)
        assert [a.activity_type for a in activities][-2:] == ["payment_received", "confirmed"]
        assert activities[-1].details["source"] == "online_payment"

        summary = payment_service.get_payment_summary(paid_booking.id)
        assert summary["rental_paid_cents"] == 30000
        assert summary["rental_due_cents"] == 0
        assert summary["has_online_payment_pending"] is False

    def test_replay_changes_nothing(self, db_session, paid_booking):
        lifecycle_service.complete_checkout_payment(_session_id(paid_booking))
        count = _activity_count(db_session, paid_booking.id)

        replay = lifecycle_service.complete_checkout_payment(_session_id(paid_booking))
        assert replay.notifications == []
        assert replay.reservation.status == "confirmed"
        assert _activity_count(db_session, paid_booking.id) == count

    def test_card_is_saved_for_deposit(self, db_session, paid_booking):
        result = lifecycle_service.complete_checkout_payment(
            _session_id(paid_booking), provider_customer_id="cus_ana", payment_method_id="pm_visa"
        )
        assert result.reservation.deposit_status == "card_saved"
        assert result.reservation.provider_payment_method_id == "pm_visa"
        assert "deposit_card_saved" in [a.activity_type for a in list_activities(paid_booking.id)]

    def test_paid_amount_is_recorded(self, db_session, paid_booking):
        lifecycle_service.complete_checkout_payment(_session_id(paid_booking), amount_minor=25000)
        assert _checkout_row(db_session, paid_booking).amount_cents == 25000
        assert payment_service.get_payment_summary(paid_booking.id)["rental_due_cents"] == 5000

    def test_already_confirmed_only_records_payment(self, db_session, paid_booking):
        lifecycle_service.update_reservation_status(paid_booking.id, "confirmed")

        result = lifecycle_service.complete_checkout_payment(_session_id(paid_booking))
        assert result.reservation.status == "confirmed"
        assert [n.event for n in result.notifications] == ["payment_received"]
        confirmations = [a for a in list_activities(paid_booking.id) if a.activity_type == "confirmed"]
        assert len(confirmations) == 1
        assert _checkout_row(db_session, paid_booking).status == "completed"

    def test_cancelled_reservation_stays_cancelled(self, db_session, paid_booking):
        lifecycle_service.cancel_reservation(paid_booking.id, reason="Changed plans")

        result = lifecycle_service.complete_checkout_payment(_session_id(paid_booking))
        assert result.reservation.status == "cancelled"
        assert _checkout_row(db_session, paid_booking).status == "completed"

    def test_expiry_cancels_pending_row(self, db_session, paid_booking):
        payment = lifecycle_service.expire_checkout_payment(_session_id(paid_booking))
        assert payment.status == "cancelled"
        assert list_activities(paid_booking.id)[-1].activity_type == "payment_expired"
        count = _activity_count(db_session, paid_booking.id)

        # Replayed expiry is a no-op
        assert lifecycle_service.expire_checkout_payment(_session_id(paid_booking)).status == "cancelled"
        assert _activity_count(db_session, paid_booking.id) == count

        db_session.refresh(paid_booking)
        assert paid_booking.status == "pending"
        summary = payment_service.get_payment_summary(paid_booking.id)
        assert summary["has_online_payment_pending"] is False
        assert summary["rental_paid_cents"] == 0

    def test_expired_session_cannot_complete(self, db_session, paid_booking):
        lifecycle_service.expire_checkout_payment(_session_id(paid_booking))
        with pytest.raises(InvalidPaymentStatus) as exc:
            lifecycle_service.complete_checkout_payment(_session_id(paid_booking))
        assert exc.value.params["status"] == "cancelled"

    def test_completed_session_cannot_expire(self, db_session, paid_booking):
        lifecycle_service.complete_checkout_payment(_session_id(paid_booking))
        with pytest.raises(InvalidPaymentStatus):
            lifecycle_service.expire_checkout_payment(_session_id(paid_booking))

    def test_unknown_session(self, db_session):
        with pytest.raises(PaymentNotFound):
            lifecycle_service.complete_checkout_payment("cs_missing")
        with pytest.raises(PaymentNotFound):
            lifecycle_service.expire_checkout_payment("cs_missing")
