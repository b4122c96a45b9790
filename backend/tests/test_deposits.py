"""
Deposit hold tests (card save, authorize, capture, release).

Verifies:
- Holds move only along none -> card_saved -> authorized -> captured/released
- Provider failures leave deposit_status "failed" and are recorded
- Capture validates reason and amount before touching the provider
- A second release is refused without another provider call
"""

import pytest

from rentals.errors import (
    AmountExceedsDeposit,
    InvalidAmount,
    InvalidDepositStatus,
    NoActiveAuthorization,
    ProviderError,
    ReasonRequired,
)
from rentals.models import Payment
from rentals.services import lifecycle_service, payment_service, reservation_service
from rentals.services.activity_service import list_activities
from rentals.services.reservation_service import ItemInput


def _save_card(reservation_id):
    return lifecycle_service.save_deposit_card(
        reservation_id, provider_customer_id="cus_ana", payment_method_id="pm_visa"
    )


@pytest.fixture
def authorized(db_session, provider, pending_reservation):
    """pending_reservation with its 50.00 deposit authorized on a saved card."""
    _save_card(pending_reservation.id)
    lifecycle_service.create_deposit_hold(pending_reservation.id)
    provider.calls.clear()
    return pending_reservation


def _hold_row(db_session, reservation_id):
    return db_session.query(Payment).filter_by(reservation_id=reservation_id, type="deposit_hold").one()


# =============================================================================
# CARD + AUTHORIZATION
# =============================================================================

class TestAuthorize:

    def test_save_card(self, db_session, pending_reservation):
        reservation = _save_card(pending_reservation.id)
        assert reservation.deposit_status == "card_saved"
        assert reservation.provider_payment_method_id == "pm_visa"
        assert list_activities(pending_reservation.id)[-1].activity_type == "deposit_card_saved"

    def test_save_card_requires_ids(self, db_session, pending_reservation):
        with pytest.raises(ValueError):
            lifecycle_service.save_deposit_card(
                pending_reservation.id, provider_customer_id="cus_ana", payment_method_id=""
            )

    def test_cannot_save_card_twice(self, db_session, pending_reservation):
        _save_card(pending_reservation.id)
        with pytest.raises(InvalidDepositStatus):
            _save_card(pending_reservation.id)

    def test_hold_without_card(self, db_session, provider, pending_reservation):
        with pytest.raises(InvalidDepositStatus):
            lifecycle_service.create_deposit_hold(pending_reservation.id)
        assert provider.calls == []

    def test_hold_authorizes_full_deposit(self, db_session, provider, pending_reservation):
        _save_card(pending_reservation.id)
        reservation = lifecycle_service.create_deposit_hold(pending_reservation.id)

        assert reservation.deposit_status == "authorized"
        assert reservation.deposit_payment_intent_id == f"pi_{reservation.id}"
        assert reservation.deposit_authorization_expires_at is not None
        [(operation, kwargs)] = provider.calls
        assert operation == "authorize"
        assert kwargs["amount_minor"] == 5000

        hold = _hold_row(db_session, reservation.id)
        assert hold.status == "authorized"
        assert hold.method == "provider"
        assert hold.amount_cents == 5000
        assert list_activities(reservation.id)[-1].activity_type == "deposit_authorized"

    def test_zero_decimal_currency(self, db_session, store, provider, pending_reservation):
        store.currency = "JPY"
        db_session.commit()
        _save_card(pending_reservation.id)
        lifecycle_service.create_deposit_hold(pending_reservation.id)
        assert provider.calls[0][1]["amount_minor"] == 50
        assert provider.calls[0][1]["currency"] == "JPY"

    def test_zero_deposit(self, db_session, provider, tiered_product, make_request):
        reservation = reservation_service.create_reservation(
            make_request([ItemInput(quantity=1, product_id=tiered_product.id)])
        ).reservation
        _save_card(reservation.id)
        with pytest.raises(InvalidDepositStatus):
            lifecycle_service.create_deposit_hold(reservation.id)
        assert provider.calls == []

    def test_no_provider_configured(self, db_session, no_provider, pending_reservation):
        _save_card(pending_reservation.id)
        with pytest.raises(ProviderError):
            lifecycle_service.create_deposit_hold(pending_reservation.id)
        db_session.refresh(pending_reservation)
        assert pending_reservation.deposit_status == "card_saved"

    def test_declined_authorization_marks_failed(self, db_session, provider, pending_reservation):
        provider.fail_on.add("authorize")
        _save_card(pending_reservation.id)

        with pytest.raises(ProviderError) as exc:
            lifecycle_service.create_deposit_hold(pending_reservation.id)
        assert exc.value.params == {"operation": "authorize"}

        db_session.refresh(pending_reservation)
        assert pending_reservation.deposit_status == "failed"
        activity = list_activities(pending_reservation.id)[-1]
        assert activity.activity_type == "deposit_failed"
        assert activity.details["previousDepositStatus"] == "card_saved"
        assert db_session.query(Payment).filter_by(reservation_id=pending_reservation.id).count() == 0

        # A new card may be saved after a failure
        provider.fail_on.clear()
        assert _save_card(pending_reservation.id).deposit_status == "card_saved"
        assert lifecycle_service.create_deposit_hold(pending_reservation.id).deposit_status == "authorized"


# =============================================================================
# CAPTURE
# =============================================================================

class TestCapture:

    def test_reason_is_required(self, db_session, provider, authorized):
        with pytest.raises(ReasonRequired):
            lifecycle_service.capture_deposit_hold(authorized.id, 1000, "   ")
        assert provider.calls == []

    @pytest.mark.parametrize("amount", [0, -100, None])
    def test_amount_must_be_positive(self, db_session, authorized, amount):
        with pytest.raises(InvalidAmount):
            lifecycle_service.capture_deposit_hold(authorized.id, amount, "Scratched hull")

    def test_amount_cannot_exceed_deposit(self, db_session, provider, authorized):
        with pytest.raises(AmountExceedsDeposit) as exc:
            lifecycle_service.capture_deposit_hold(authorized.id, 5001, "Lost paddle")
        assert exc.value.params == {"max_cents": 5000}
        assert provider.calls == []

    def test_capture_without_authorization(self, db_session, pending_reservation):
        with pytest.raises(NoActiveAuthorization):
            lifecycle_service.capture_deposit_hold(pending_reservation.id, 1000, "Scratched hull")

    def test_partial_capture(self, db_session, provider, authorized):
        reservation = lifecycle_service.capture_deposit_hold(authorized.id, 3000, " Scratched hull ")
        assert reservation.deposit_status == "captured"
        assert provider.calls == [("capture", {"payment_intent_id": f"pi_{authorized.id}", "amount_minor": 3000})]

        hold = _hold_row(db_session, authorized.id)
        assert hold.status == "completed"
        assert hold.captured_amount_cents == 3000

        capture = db_session.query(Payment).filter_by(reservation_id=authorized.id, type="deposit_capture").one()
        assert capture.status == "completed"
        assert capture.amount_cents == 3000
        assert capture.notes == "Scratched hull"
        assert capture.provider_charge_id == f"ch_pi_{authorized.id}"

        activity = list_activities(authorized.id)[-1]
        assert activity.activity_type == "deposit_captured"
        assert activity.description == "Scratched hull"

        summary = payment_service.get_payment_summary(authorized.id)
        assert summary["damage_cents"] == 3000
        assert summary["deposit_collected_cents"] == 0

    def test_capture_failure_marks_failed(self, db_session, provider, authorized):
        provider.fail_on.add("capture")
        with pytest.raises(ProviderError):
            lifecycle_service.capture_deposit_hold(authorized.id, 3000, "Scratched hull")
        db_session.refresh(authorized)
        assert authorized.deposit_status == "failed"
        assert db_session.query(Payment).filter_by(reservation_id=authorized.id, type="deposit_capture").count() == 0


# =============================================================================
# RELEASE
# =============================================================================

class TestRelease:

    def test_release(self, db_session, provider, authorized):
        reservation = lifecycle_service.release_deposit_hold(authorized.id)
        assert reservation.deposit_status == "released"
        assert _hold_row(db_session, authorized.id).status == "cancelled"
        assert list_activities(authorized.id)[-1].activity_type == "deposit_released"
        assert [op for op, _ in provider.calls] == ["release"]

    def test_second_release_is_refused(self, db_session, provider, authorized):
        lifecycle_service.release_deposit_hold(authorized.id)
        for _ in range(2):
            with pytest.raises(NoActiveAuthorization) as exc:
                lifecycle_service.release_deposit_hold(authorized.id)
            assert exc.value.params == {"deposit_status": "released"}
        assert [op for op, _ in provider.calls] == ["release"]

    def test_captured_hold_cannot_be_released(self, db_session, authorized):
        lifecycle_service.capture_deposit_hold(authorized.id, 5000, "Lost kayak")
        with pytest.raises(NoActiveAuthorization):
            lifecycle_service.release_deposit_hold(authorized.id)

    def test_release_failure(self, db_session, provider, authorized):
        provider.fail_on.add("release")
        with pytest.raises(ProviderError):
            lifecycle_service.release_deposit_hold(authorized.id)
        db_session.refresh(authorized)
        assert authorized.deposit_status == "failed"
        assert _hold_row(db_session, authorized.id).status == "authorized"


# =============================================================================
# TRANSIENT DATABASE ERRORS
# =============================================================================

class TestRetryAfterProviderCall:
    """A locked database after the provider answered never repeats the provider call."""

    def test_hold_authorized_once(self, db_session, provider, pending_reservation, locked_commit_after_provider):
        _save_card(pending_reservation.id)
        state = locked_commit_after_provider()

        reservation = lifecycle_service.create_deposit_hold(pending_reservation.id)

        assert state["raised"] == 1
        assert reservation.deposit_status == "authorized"
        assert [op for op, _ in provider.calls] == ["authorize"]
        assert _hold_row(db_session, reservation.id).amount_cents == 5000

    def test_capture_charged_once(self, db_session, provider, authorized, locked_commit_after_provider):
        state = locked_commit_after_provider()

        reservation = lifecycle_service.capture_deposit_hold(authorized.id, 2000, "Scratched hull")

        assert state["raised"] == 1
        assert reservation.deposit_status == "captured"
        assert [op for op, _ in provider.calls] == ["capture"]
        captures = db_session.query(Payment).filter_by(reservation_id=authorized.id, type="deposit_capture").all()
        assert [c.amount_cents for c in captures] == [2000]
        activities = [a for a in list_activities(authorized.id) if a.activity_type == "deposit_captured"]
        assert len(activities) == 1

    def test_release_once(self, db_session, provider, authorized, locked_commit_after_provider):
        state = locked_commit_after_provider()

        reservation = lifecycle_service.release_deposit_hold(authorized.id)

        assert state["raised"] == 1
        assert reservation.deposit_status == "released"
        assert [op for op, _ in provider.calls] == ["release"]
        assert _hold_row(db_session, authorized.id).status == "cancelled"
