"""
Reservation engine tests.

Verifies:
- Online creation prices server-side and persists a pending reservation
- Failed checks leave no rows behind
- Taxes, delivery and online payment bookkeeping
- Manual (dashboard) creation, edits and unit assignment
"""

import logging
import re
from datetime import datetime, timedelta

import pytest

from rentals.errors import (
    InsufficientStock,
    InvalidUnits,
    PriceMismatch,
    ProductNoLongerAvailable,
    ProductUnavailable,
    ReservationLocked,
    ReservationRulesViolation,
    TooManyUnitsAssigned,
    UnitProductMismatch,
)
from rentals.models import Customer, Payment, Product, ProductUnit, Reservation, ReservationActivity
from rentals.services import reservation_service
from rentals.services.activity_service import list_activities
from rentals.services.reservation_service import ItemInput
from conftest import END, START


def _activity_types(reservation_id):
    return [a.activity_type for a in list_activities(reservation_id)]


# =============================================================================
# ONLINE CREATION
# =============================================================================


class TestCreateReservation:

    def test_creates_pending_reservation(self, db_session, product, make_request, no_provider):
        result = reservation_service.create_reservation(
            make_request([ItemInput(quantity=1, product_id=product.id)], locale="fr")
        )
        reservation = result.reservation

        assert reservation.status == "pending"
        assert reservation.source == "online"
        assert re.fullmatch(r"R\d{4}-\d{4}", reservation.number)
        assert reservation.subtotal_cents == 30000
        assert reservation.deposit_cents == 5000
        assert reservation.total_cents == 35000
        assert reservation.tax_cents is None
        assert result.payment_url is None

        [item] = reservation.items
        assert item.unit_price_cents == 10000
        assert item.total_price_cents == 30000
        assert item.product_snapshot["name"] == "Kayak"
        assert item.pricing_breakdown["duration"] == 3

        assert _activity_types(reservation.id) == ["created"]
        assert [n.event for n in result.notifications] == ["customer_request_received", "reservation_new"]
        assert result.notifications[0].context["locale"] == "fr"

    def test_customer_is_upserted_by_email(self, db_session, store, tiered_product, make_request):
        reservation_service.create_reservation(
            make_request([ItemInput(quantity=1, product_id=tiered_product.id)], email="Ana@Example.test")
        )
        reservation_service.create_reservation(
            make_request([ItemInput(quantity=1, product_id=tiered_product.id)], email="ana@example.test")
        )
        customers = db_session.query(Customer).filter_by(store_id=store.id).all()
        assert [c.email for c in customers] == ["ana@example.test"]

    def test_client_prices_are_ignored_and_logged(self, db_session, product, make_request, caplog):
        request = make_request([ItemInput(quantity=1, product_id=product.id, client_unit_price_cents=1)])
        with caplog.at_level(logging.WARNING):
            result = reservation_service.create_reservation(request)
        assert result.reservation.items[0].unit_price_cents == 10000
        assert "[SECURITY] unit_price mismatch detected" in caplog.text

    def test_mismatch_rejected_beyond_threshold(self, app, db_session, product, make_request, monkeypatch):
        monkeypatch.setitem(app.config, "PRICE_MISMATCH_REJECT_CENTS", 100)
        request = make_request([ItemInput(quantity=1, product_id=product.id)], subtotal_cents=100)
        with pytest.raises(PriceMismatch) as exc:
            reservation_service.create_reservation(request)
        assert exc.value.params["field"] == "subtotal"
        assert db_session.query(Reservation).count() == 0

    def test_quantity_above_stock(self, db_session, product, make_request):
        with pytest.raises(InsufficientStock) as exc:
            reservation_service.create_reservation(make_request([ItemInput(quantity=3, product_id=product.id)]))
        assert exc.value.params == {"product_name": "Kayak", "available": 2}
        assert db_session.query(Reservation).count() == 0

    def test_inactive_product_unavailable(self, db_session, product, make_request):
        product.is_active = False
        db_session.commit()
        with pytest.raises(ProductUnavailable):
            reservation_service.create_reservation(make_request([ItemInput(quantity=1, product_id=product.id)]))

    def test_product_of_another_store_unavailable(self, db_session, product, make_request):
        from rentals.models import Store

        other = Store(name="Elsewhere")
        db_session.add(other)
        db_session.flush()
        foreign = Product(store_id=other.id, name="Canoe", base_price_cents=5000, quantity=1)
        db_session.add(foreign)
        db_session.commit()
        with pytest.raises(ProductUnavailable):
            reservation_service.create_reservation(make_request([ItemInput(quantity=1, product_id=foreign.id)]))

    def test_rule_violation_is_fatal_online(self, db_session, store, product, make_request):
        store.max_rental_minutes = 24 * 60
        db_session.commit()
        with pytest.raises(ReservationRulesViolation) as exc:
            reservation_service.create_reservation(make_request([ItemInput(quantity=1, product_id=product.id)]))
        assert exc.value.kind == "MaxRentalDurationViolation"
        assert db_session.query(Reservation).count() == 0

    def test_stock_taken_by_earlier_booking(self, db_session, product, make_request):
        reservation_service.create_reservation(make_request([ItemInput(quantity=2, product_id=product.id)]))
        with pytest.raises(ProductNoLongerAvailable) as exc:
            reservation_service.create_reservation(make_request([ItemInput(quantity=1, product_id=product.id)]))
        assert exc.value.params == {"product_name": "Kayak"}
        assert db_session.query(Reservation).count() == 1

    def test_adjacent_window_is_bookable(self, db_session, product, make_request):
        reservation_service.create_reservation(make_request([ItemInput(quantity=2, product_id=product.id)]))
        result = reservation_service.create_reservation(
            make_request([ItemInput(quantity=2, product_id=product.id)], start=END, end=END + timedelta(days=1))
        )
        assert result.reservation.status == "pending"

    def test_tracked_product_allocates_combination(self, db_session, tracked_product, make_request):
        result = reservation_service.create_reservation(make_request([
            ItemInput(quantity=2, product_id=tracked_product.id, selected_attributes={"size": "S"}),
        ]))
        [item] = result.reservation.items
        assert item.combination_allocation == {"size:s": 2}
        assert item.product_snapshot["combinationKey"] == "size:s"

        with pytest.raises(ProductNoLongerAvailable):
            reservation_service.create_reservation(make_request([
                ItemInput(quantity=1, product_id=tracked_product.id, selected_attributes={"size": "S"}),
            ]))
        other = reservation_service.create_reservation(make_request([
            ItemInput(quantity=1, product_id=tracked_product.id, selected_attributes={"size": "M"}),
        ]))
        assert other.reservation.items[0].combination_key == "size:m"


class TestTaxes:

    def test_inclusive_store_tax(self, db_session, store, product, make_request):
        store.tax_enabled = True
        store.tax_rate_bps = 2000
        store.tax_display_mode = "inclusive"
        db_session.commit()

        reservation = reservation_service.create_reservation(
            make_request([ItemInput(quantity=1, product_id=product.id)])
        ).reservation
        assert reservation.tax_rate_bps == 2000
        assert reservation.subtotal_excl_tax_cents == 25000
        assert reservation.tax_cents == 5000
        assert reservation.total_cents == 35000
        assert reservation.items[0].price_excl_tax_cents == 8333

    def test_exclusive_tax_is_not_added_to_total(self, db_session, store, product, make_request):
        store.tax_enabled = True
        store.tax_rate_bps = 2000
        store.tax_display_mode = "exclusive"
        db_session.commit()

        reservation = reservation_service.create_reservation(
            make_request([ItemInput(quantity=1, product_id=product.id)])
        ).reservation
        assert reservation.subtotal_excl_tax_cents == 30000
        assert reservation.tax_cents == 6000
        assert reservation.total_cents == 35000

    def test_product_rate_override_sums_items(self, db_session, store, product, make_request):
        store.tax_enabled = True
        store.tax_rate_bps = 2000
        jacket = Product(
            store_id=store.id,
            name="Life Jacket",
            base_price_cents=1000,
            quantity=10,
            tax_inherit_from_store=False,
            tax_rate_bps=550,
        )
        db_session.add(jacket)
        db_session.commit()

        reservation = reservation_service.create_reservation(make_request([
            ItemInput(quantity=1, product_id=product.id),
            ItemInput(quantity=1, product_id=jacket.id),
        ])).reservation
        by_name = {item.product_snapshot["name"]: item for item in reservation.items}
        assert by_name["Life Jacket"].tax_rate_bps == 550
        assert by_name["Life Jacket"].tax_cents == 156
        assert reservation.subtotal_excl_tax_cents == 25000 + 2844
        assert reservation.tax_cents == 5000 + 156


class TestDeliveryAndPayment:

    def test_delivery_fee_added_to_total(self, db_session, store, product, make_request):
        store.latitude, store.longitude = 48.8566, 2.3522
        store.delivery_settings = {"enabled": True, "mode": "optional", "pricePerKmCents": 0, "minimumFeeCents": 1500}
        db_session.commit()

        reservation = reservation_service.create_reservation(make_request(
            [ItemInput(quantity=1, product_id=product.id)],
            delivery={"option": "delivery", "latitude": 48.86, "longitude": 2.36, "address": "2 quai Ouest"},
        )).reservation
        assert reservation.delivery_option == "delivery"
        assert reservation.delivery_fee_cents == 1500
        assert reservation.total_cents == 36500
        assert reservation.delivery_address == "2 quai Ouest"

    def test_online_payment_session(self, db_session, store, product, make_request, provider):
        store.reservation_mode = "payment"
        store.payment_account_id = "acct_test"
        store.online_payment_percent = 30
        db_session.commit()

        result = reservation_service.create_reservation(make_request([ItemInput(quantity=1, product_id=product.id)]))
        reservation = result.reservation
        assert result.payment_url == f"https://pay.example.test/{reservation.number}"

        [payment] = db_session.query(Payment).filter_by(reservation_id=reservation.id).all()
        assert (payment.type, payment.method, payment.status) == ("rental", "provider", "pending")
        assert payment.amount_cents == 9000
        assert payment.provider_checkout_session_id == f"cs_{reservation.id}"
        assert _activity_types(reservation.id) == ["created", "payment_initiated"]

    def test_checkout_failure_keeps_reservation(self, db_session, store, product, make_request, provider):
        store.reservation_mode = "payment"
        store.payment_account_id = "acct_test"
        db_session.commit()
        provider.fail_on = {"checkout"}

        result = reservation_service.create_reservation(make_request([ItemInput(quantity=1, product_id=product.id)]))
        assert result.payment_url is None
        assert db_session.query(Reservation).count() == 1
        assert db_session.query(Payment).count() == 0


class TestReservationNumber:

    def test_format(self, db_session, store):
        number = reservation_service.generate_reservation_number(store.id, now=datetime(2030, 6, 1))
        assert re.fullmatch(r"R3006-\d{4}", number)

    def test_collisions_widen_suffix(self, db_session, store, pending_reservation, monkeypatch):
        pending_reservation.number = "R3006-0042"
        db_session.commit()
        monkeypatch.setattr(reservation_service.secrets, "randbelow", lambda n: 42)

        number = reservation_service.generate_reservation_number(store.id, now=datetime(2030, 6, 1))
        assert re.fullmatch(r"R3006-[A-Z0-9]{6}", number)


# =============================================================================
# MANUAL CREATION
# =============================================================================


class TestManualReservation:

    def test_confirmed_with_custom_and_override_items(self, db_session, product, make_request):
        request = make_request([
            ItemInput(quantity=1, product_id=product.id, price_override_cents=8000),
            ItemInput(quantity=2, name="Cooler", unit_price_cents=500, deposit_per_unit_cents=200),
        ])
        result = reservation_service.create_manual_reservation(
            request, internal_notes="Regular customer", actor_id=7
        )
        reservation = result.reservation

        assert reservation.status == "confirmed"
        assert reservation.source == "manual"
        assert reservation.internal_notes == "Regular customer"
        kayak, cooler = reservation.items
        assert kayak.unit_price_cents == 8000
        assert kayak.total_price_cents == 24000
        assert kayak.pricing_breakdown["isManualOverride"] is True
        assert kayak.pricing_breakdown["originalPrice"] == 10000
        assert cooler.is_custom_item is True
        assert cooler.product_id is None
        assert cooler.total_price_cents == 3000
        assert reservation.subtotal_cents == 27000
        assert reservation.deposit_cents == 5000 + 400
        assert result.notifications == []

        [activity] = list_activities(reservation.id)
        assert activity.actor_id == 7
        assert activity.details["source"] == "manual"

    def test_rules_become_warnings(self, db_session, store, product, make_request):
        store.max_rental_minutes = 24 * 60
        db_session.commit()
        result = reservation_service.create_manual_reservation(
            make_request([ItemInput(quantity=1, product_id=product.id)]), send_confirmation=True
        )
        assert result.reservation.status == "confirmed"
        assert [w["error"] for w in result.warnings] == ["MaxRentalDurationViolation"]
        assert [n.event for n in result.notifications] == ["customer_reservation_confirmed"]

    def test_existing_customer_by_id(self, db_session, store, product, make_request, pending_reservation):
        customer_id = pending_reservation.customer_id
        request = make_request([ItemInput(quantity=1, product_id=product.id)])
        request.customer = None
        result = reservation_service.create_manual_reservation(request, customer_id=customer_id)
        assert result.reservation.customer_id == customer_id

    def test_manual_booking_still_checks_stock(self, db_session, product, make_request, pending_reservation):
        with pytest.raises(ProductNoLongerAvailable):
            reservation_service.create_manual_reservation(
                make_request([ItemInput(quantity=2, product_id=product.id)])
            )


# =============================================================================
# EDIT
# =============================================================================


class TestUpdateReservation:

    def test_extending_dates_reprices(self, db_session, pending_reservation):
        result = reservation_service.update_reservation(
            pending_reservation.id, end_date=START + timedelta(days=5), actor_id=3
        )
        reservation = result.reservation
        assert reservation.subtotal_cents == 50000
        assert reservation.total_cents == 55000
        assert result.difference_cents == 20000

        modified = db_session.query(ReservationActivity).filter_by(
            reservation_id=reservation.id, activity_type="modified"
        ).one()
        assert modified.details["difference_cents"] == 20000
        assert modified.details["previous"]["subtotal_cents"] == 30000

    def test_override_price_survives_edit(self, db_session, product, make_request):
        reservation = reservation_service.create_manual_reservation(make_request([
            ItemInput(quantity=1, product_id=product.id, price_override_cents=8000),
        ])).reservation
        result = reservation_service.update_reservation(reservation.id, end_date=START + timedelta(days=5))
        [item] = result.reservation.items
        assert item.unit_price_cents == 8000
        assert item.total_price_cents == 40000

    def test_replacing_items(self, db_session, pending_reservation, tiered_product):
        result = reservation_service.update_reservation(
            pending_reservation.id,
            items=[ItemInput(quantity=2, product_id=tiered_product.id)],
        )
        [item] = result.reservation.items
        assert item.product_snapshot["name"] == "Paddle Board"
        assert result.reservation.subtotal_cents == 9500 * 3 * 2
        assert result.reservation.deposit_cents == 0

    def test_edit_cannot_exceed_stock(self, db_session, product, make_request, pending_reservation):
        reservation_service.create_reservation(make_request(
            [ItemInput(quantity=2, product_id=product.id)],
            start=END + timedelta(days=1),
            end=END + timedelta(days=3),
        ))
        with pytest.raises(ProductNoLongerAvailable):
            reservation_service.update_reservation(pending_reservation.id, end_date=END + timedelta(days=2))
        db_session.refresh(pending_reservation)
        assert pending_reservation.end_date == END

    def test_completed_reservation_is_locked(self, db_session, pending_reservation):
        pending_reservation.status = "completed"
        db_session.commit()
        with pytest.raises(ReservationLocked):
            reservation_service.update_reservation(pending_reservation.id, end_date=END + timedelta(days=1))

    def test_end_before_start_rejected(self, db_session, pending_reservation):
        with pytest.raises(ValueError):
            reservation_service.update_reservation(pending_reservation.id, end_date=START - timedelta(days=1))


# =============================================================================
# UNIT ASSIGNMENT
# =============================================================================


@pytest.fixture
def tracked_booking(tracked_product, make_request):
    return reservation_service.create_reservation(make_request([
        ItemInput(quantity=2, product_id=tracked_product.id, selected_attributes={"size": "S"}),
    ])).reservation


def _unit(db_session, identifier):
    return db_session.query(ProductUnit).filter_by(identifier=identifier).one()


class TestUnitAssignment:

    def test_assign_and_clear(self, db_session, tracked_booking):
        item = tracked_booking.items[0]
        unit = _unit(db_session, "WS-S-01")

        item = reservation_service.assign_units_to_item(item.id, [unit.id, unit.id])
        assert [a.identifier_snapshot for a in item.unit_assignments] == ["WS-S-01"]

        item = reservation_service.assign_units_to_item(item.id, [])
        assert item.unit_assignments == []

        actions = [
            a.details["action"]
            for a in list_activities(tracked_booking.id)
            if a.activity_type == "modified"
        ]
        assert actions == ["units_assigned", "units_unassigned"]

    def test_too_many_units(self, db_session, tracked_booking):
        ids = [u.id for u in db_session.query(ProductUnit).all()]
        with pytest.raises(TooManyUnitsAssigned) as exc:
            reservation_service.assign_units_to_item(tracked_booking.items[0].id, ids)
        assert exc.value.params == {"max_units": 2}

    def test_unknown_unit(self, db_session, tracked_booking):
        with pytest.raises(InvalidUnits):
            reservation_service.assign_units_to_item(tracked_booking.items[0].id, [999999])

    def test_unit_of_another_product(self, db_session, product, tracked_booking):
        foreign = ProductUnit(product_id=product.id, identifier="KY-01")
        db_session.add(foreign)
        db_session.commit()
        with pytest.raises(UnitProductMismatch):
            reservation_service.assign_units_to_item(tracked_booking.items[0].id, [foreign.id])

    def test_unit_in_maintenance_is_refused(self, db_session, tracked_booking):
        unit = _unit(db_session, "WS-S-02")
        unit.status = "maintenance"
        db_session.commit()

        with pytest.raises(InvalidUnits) as exc:
            reservation_service.assign_units_to_item(tracked_booking.items[0].id, [unit.id])
        assert exc.value.params == {"unit_identifiers": ["WS-S-02"]}
        assert tracked_booking.items[0].unit_assignments == []

    def test_unit_held_by_overlapping_booking_is_refused(self, db_session, tracked_product, make_request, tracked_booking):
        held = _unit(db_session, "WS-S-01")
        reservation_service.assign_units_to_item(tracked_booking.items[0].id, [held.id])

        other = reservation_service.create_reservation(make_request([
            ItemInput(quantity=1, product_id=tracked_product.id, selected_attributes={"size": "M"}),
        ])).reservation
        with pytest.raises(InvalidUnits) as exc:
            reservation_service.assign_units_to_item(other.items[0].id, [held.id])
        assert exc.value.params == {"unit_identifiers": ["WS-S-01"]}

        # Re-saving the units an item already holds is allowed
        item = reservation_service.assign_units_to_item(tracked_booking.items[0].id, [held.id])
        assert [a.identifier_snapshot for a in item.unit_assignments] == ["WS-S-01"]

    def test_assignable_units_skip_units_held_elsewhere(self, db_session, tracked_product, make_request, tracked_booking):
        held = _unit(db_session, "WS-S-01")
        reservation_service.assign_units_to_item(tracked_booking.items[0].id, [held.id])

        listing = reservation_service.list_assignable_units(tracked_booking.items[0].id)
        assert listing["assigned"] == [held.id]
        assert {u["identifier"] for u in listing["units"]} == {"WS-S-01", "WS-S-02", "WS-M-01"}

        other = reservation_service.create_reservation(make_request([
            ItemInput(quantity=1, product_id=tracked_product.id, selected_attributes={"size": "M"}),
        ])).reservation
        listing = reservation_service.list_assignable_units(other.items[0].id)
        assert [u["identifier"] for u in listing["units"]] == ["WS-M-01", "WS-S-02"]
        assert listing["assigned"] == []
