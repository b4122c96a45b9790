"""
Delivery quote tests: distance, fee formula and mode enforcement.
"""

from decimal import Decimal

import pytest

from rentals.errors import DeliveryAddressInvalid, DeliveryNotEnabled, DeliveryRequired, DeliveryTooFar
from rentals.services import delivery_service
from rentals.services.tax_service import round_cents


STORE_LAT, STORE_LON = 48.8566, 2.3522
# Roughly 10 km south-west of the store
CUSTOMER = {"option": "delivery", "latitude": 48.80, "longitude": 2.25, "address": "1 rue du Lac", "city": "Meudon"}


@pytest.fixture
def delivery_store(db_session, store):
    store.latitude = STORE_LAT
    store.longitude = STORE_LON
    store.delivery_settings = {
        "enabled": True,
        "mode": "optional",
        "pricePerKmCents": 150,
        "roundTrip": False,
        "minimumFeeCents": 500,
        "maximumDistanceKm": 50,
    }
    db_session.commit()
    return store


class TestFeeFormula:

    def test_per_km_fee(self):
        assert delivery_service.calculate_delivery_fee(10.0, {"pricePerKmCents": 150}, 0) == 1500

    def test_round_trip_doubles(self):
        assert delivery_service.calculate_delivery_fee(10.0, {"pricePerKmCents": 150, "roundTrip": True}, 0) == 3000

    def test_minimum_fee_floor(self):
        assert delivery_service.calculate_delivery_fee(1.0, {"pricePerKmCents": 150, "minimumFeeCents": 500}, 0) == 500

    def test_free_above_threshold(self):
        settings = {"pricePerKmCents": 150, "freeDeliveryThresholdCents": 20000}
        assert delivery_service.calculate_delivery_fee(10.0, settings, 20000) == 0
        assert delivery_service.calculate_delivery_fee(10.0, settings, 19999) == 1500

    def test_distance_tiers_take_precedence(self):
        settings = {
            "pricePerKmCents": 150,
            "distanceTiers": [{"maxDistanceKm": 15, "feeCents": 900}, {"maxDistanceKm": 5, "feeCents": 500}],
        }
        assert delivery_service.calculate_delivery_fee(3.0, settings, 0) == 500
        assert delivery_service.calculate_delivery_fee(12.0, settings, 0) == 900
        # beyond every tier falls back to per-km pricing
        assert delivery_service.calculate_delivery_fee(20.0, settings, 0) == 3000


class TestQuote:

    def test_pickup_is_free(self, delivery_store):
        quote = delivery_service.quote_delivery(delivery_store, None, 10000)
        assert quote.option == "pickup"
        assert quote.fee_cents == 0

    def test_delivery_priced_from_server_distance(self, delivery_store):
        quote = delivery_service.quote_delivery(delivery_store, dict(CUSTOMER, fee_cents=1), 10000)
        distance = delivery_service.haversine_km(STORE_LAT, STORE_LON, 48.80, 2.25)
        assert quote.option == "delivery"
        assert quote.distance_km == Decimal(str(round(distance, 2)))
        assert quote.fee_cents == max(500, round_cents(Decimal(150) * Decimal(str(distance))))
        assert quote.city == "Meudon"

    def test_required_mode_rejects_pickup(self, db_session, delivery_store):
        delivery_store.delivery_settings = dict(delivery_store.delivery_settings, mode="required")
        db_session.commit()
        with pytest.raises(DeliveryRequired):
            delivery_service.quote_delivery(delivery_store, {"option": "pickup"}, 10000)

    def test_included_mode_is_free(self, db_session, delivery_store):
        delivery_store.delivery_settings = dict(delivery_store.delivery_settings, mode="included")
        db_session.commit()
        assert delivery_service.quote_delivery(delivery_store, CUSTOMER, 10000).fee_cents == 0

    def test_too_far(self, db_session, delivery_store):
        delivery_store.delivery_settings = dict(delivery_store.delivery_settings, maximumDistanceKm=5)
        db_session.commit()
        with pytest.raises(DeliveryTooFar) as exc:
            delivery_service.quote_delivery(delivery_store, CUSTOMER, 10000)
        assert exc.value.params["max_distance_km"] == 5

    @pytest.mark.parametrize("coords", [
        {"latitude": None, "longitude": 2.25},
        {"latitude": "north", "longitude": 2.25},
        {"latitude": 91, "longitude": 2.25},
    ])
    def test_invalid_coordinates(self, delivery_store, coords):
        with pytest.raises(DeliveryAddressInvalid):
            delivery_service.quote_delivery(delivery_store, dict(CUSTOMER, **coords), 10000)

    def test_delivery_not_enabled(self, store):
        with pytest.raises(DeliveryNotEnabled):
            delivery_service.quote_delivery(store, CUSTOMER, 10000)
