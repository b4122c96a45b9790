"""
Pytest fixtures for rental engine tests.

Provides the application (in-memory SQLite), a fresh database per test,
catalog fixtures, a scripted payment provider and a recording notification
transport.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from rentals import create_app
from rentals.extensions import db
from rentals.models import PricingTier, Product, ProductUnit, Store
from rentals.services import reservation_service
from rentals.services.notification_service import NotificationDispatcher
from rentals.services.payment_provider import (
    EXTENSION_KEY as PROVIDER_KEY,
    CaptureResult,
    CheckoutSession,
    DepositAuthorization,
    PaymentProvider,
    PaymentProviderError,
    RefundResult,
)
from rentals.services.reservation_service import CustomerInput, ItemInput, ReservationRequest


# Monday 2030-06-03 09:00 UTC, far enough ahead for any advance-notice rule
START = datetime(2030, 6, 3, 9, 0)
END = START + timedelta(days=3)


class FakeProvider(PaymentProvider):
    """Scripted provider: records calls, fails the operations named in fail_on."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.calls = []
        self.fail_on = set()
        self.refundable = {}

    def _call(self, operation, **kwargs):
        self.calls.append((operation, kwargs))
        if operation in self.fail_on:
            raise PaymentProviderError(f"{operation} declined")

    def create_checkout_session(self, *, reservation_id, reservation_number, amount_minor, currency, customer_email):
        self._call("checkout", reservation_id=reservation_id, amount_minor=amount_minor, currency=currency)
        return CheckoutSession(id=f"cs_{reservation_id}", url=f"https://pay.example.test/{reservation_number}")

    def create_deposit_authorization(self, *, customer_id, payment_method_id, amount_minor, currency, reservation_id):
        self._call("authorize", amount_minor=amount_minor, currency=currency, reservation_id=reservation_id)
        return DepositAuthorization(
            payment_intent_id=f"pi_{reservation_id}",
            status="requires_capture",
            expires_at=START + timedelta(days=7),
        )

    def capture_deposit(self, *, payment_intent_id, amount_minor):
        self._call("capture", payment_intent_id=payment_intent_id, amount_minor=amount_minor)
        return CaptureResult(payment_intent_id=payment_intent_id, amount_minor=amount_minor, charge_id=f"ch_{payment_intent_id}")

    def release_deposit(self, *, payment_intent_id):
        self._call("release", payment_intent_id=payment_intent_id)

    def create_refund(self, *, charge_id, amount_minor, reason=None):
        self._call("refund", charge_id=charge_id, amount_minor=amount_minor, reason=reason)
        self.refundable[charge_id] = self.refundable.get(charge_id, 0) - amount_minor
        return RefundResult(id=f"re_{charge_id}_{len(self.calls)}", amount_minor=amount_minor)

    def get_charge_refundable_amount(self, charge_id):
        self._call("refundable", charge_id=charge_id)
        return self.refundable.get(charge_id, 0)


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, intent):
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append(intent)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SQLALCHEMY_TRACK_MODIFICATIONS': False,
            'NOTIFICATIONS_SYNC': True,
        },
        payment_provider=FakeProvider(),
        dispatcher=RecordingDispatcher(),
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def provider(app):
    """The app's FakeProvider, reset for this test."""
    fake = app.extensions[PROVIDER_KEY]
    fake.reset()
    return fake


@pytest.fixture(scope='function')
def no_provider(app):
    """Run the test with no payment provider configured."""
    saved = app.extensions[PROVIDER_KEY]
    app.extensions[PROVIDER_KEY] = None
    yield
    app.extensions[PROVIDER_KEY] = saved


@pytest.fixture(scope='function')
def locked_commit_after_provider(monkeypatch, provider):
    """
    Returns arm(): after it, the first commit that follows a provider call
    fails once with a transient "database is locked" error.
    """
    real_commit = db.session.commit
    state = {"armed": False, "raised": 0}

    def commit():
        if state["armed"] and provider.calls:
            state["armed"] = False
            state["raised"] += 1
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        return real_commit()

    def arm():
        provider.calls.clear()
        state["armed"] = True
        return state

    monkeypatch.setattr(db.session, "commit", commit)
    return arm


@pytest.fixture(scope='function')
def dispatcher(app):
    from rentals.services.notification_service import EXTENSION_KEY

    recorder = app.extensions[EXTENSION_KEY]
    recorder.sent = []
    recorder.fail = False
    yield recorder
    recorder.fail = False


# =============================================================================
# CATALOG
# =============================================================================

@pytest.fixture(scope='function')
def store(db_session):
    """Untaxed UTC store; pending requests hold stock."""
    store = Store(name="Lakeside Rentals", slug="lakeside", email="desk@lakeside.test", timezone="UTC", currency="EUR")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def product(db_session, store):
    """Two kayaks at 100.00/day with a 50.00 deposit each."""
    product = Product(
        store_id=store.id,
        name="Kayak",
        base_price_cents=10000,
        deposit_cents=5000,
        pricing_mode="day",
        quantity=2,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def tiered_product(db_session, store):
    """100.00/day with 5% off from 3 days and 10% off from 7 days."""
    product = Product(
        store_id=store.id,
        name="Paddle Board",
        base_price_cents=10000,
        deposit_cents=0,
        pricing_mode="day",
        quantity=5,
    )
    product.tiers.append(PricingTier(min_duration=3, discount_percent=5))
    product.tiers.append(PricingTier(min_duration=7, discount_percent=10))
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def tracked_product(db_session, store):
    """Serialized wetsuits: two size S units and one size M unit."""
    product = Product(
        store_id=store.id,
        name="Wetsuit",
        base_price_cents=2000,
        deposit_cents=1000,
        pricing_mode="day",
        quantity=0,
        track_units=True,
        booking_attribute_axes=[{"key": "size", "label": "Size"}],
    )
    db_session.add(product)
    db_session.flush()
    for identifier, size in (("WS-S-01", "S"), ("WS-S-02", "S"), ("WS-M-01", "M")):
        db_session.add(ProductUnit(product_id=product.id, identifier=identifier, attributes={"size": size}))
    db_session.commit()
    return product


# =============================================================================
# BOOKING HELPERS
# =============================================================================

@pytest.fixture(scope='function')
def make_request(store):
    """Factory for online booking requests against the store fixture."""
    def _make(items, *, start=START, end=END, email="ana@example.test", **kwargs):
        return ReservationRequest(
            store_id=store.id,
            customer=CustomerInput(email=email, first_name="Ana", last_name="Lopez"),
            items=items,
            start_date=start,
            end_date=end,
            **kwargs,
        )
    return _make


@pytest.fixture(scope='function')
def pending_reservation(product, make_request):
    """One kayak booked online for three days: 300.00 rental + 50.00 deposit."""
    result = reservation_service.create_reservation(make_request([ItemInput(quantity=1, product_id=product.id)]))
    return result.reservation
