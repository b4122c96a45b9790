# Overview: Service-layer reservation engine; creates, edits and prices bookings.

"""
Reservation Engine

================================================================================
PURPOSE: Turn a booking request into a persisted reservation, proving capacity
and computing every amount server-side.
================================================================================

ONLINE CREATION FLOW:
    1. Booking rules (business hours, advance notice, min/max duration) - fatal
    2. Re-resolve each product from storage, stock check, recompute price;
       client amounts are compared and logged, never stored
    3. Delivery quote (server distance + fee)
    --- write transaction (BEGIN IMMEDIATE on SQLite, FOR UPDATE elsewhere) ---
    4. Lock product rows, re-run availability + combination allocation
    5. Upsert customer, tax breakdown, reservation number
    6. Insert reservation (pending) + items + "created" activity, commit
    --- after commit ---
    7. Notification intents returned to the caller
    8. Optional online payment session (failures logged, booking kept)

Steps 1-5 fail closed: a raised error leaves no rows behind.

MANUAL CREATION (store dashboard):
    Status "confirmed", source "manual"; rules only produce warnings; catalog
    items may carry a price override; custom items are priced
    unit_price * duration * quantity.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from flask import current_app

from ..extensions import db
from ..errors import (
    InsufficientStock,
    InvalidUnits,
    PriceMismatch,
    ProductUnavailable,
    ReservationLocked,
    ReservationNotFound,
    ReservationRulesViolation,
    StoreNotFound,
    TooManyUnitsAssigned,
    UnitProductMismatch,
)
from ..models import (
    Customer,
    Payment,
    Product,
    ProductUnit,
    Reservation,
    ReservationItem,
    ReservationItemUnit,
    Store,
)
from rentals.time_utils import utcnow
from . import availability_service, pricing_service, rules_service, tax_service
from .activity_service import log_activity
from .combination_service import get_allocation_strategy
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .delivery_service import DeliveryQuote, quote_delivery
from .notification_service import AUDIENCE_ADMIN, AUDIENCE_CUSTOMER, intent
from .payment_provider import get_payment_provider, to_minor_units


NUMBER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

SOURCE_ONLINE = "online"
SOURCE_MANUAL = "manual"


# =============================================================================
# REQUEST / RESULT TYPES
# =============================================================================

@dataclass
class CustomerInput:
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    customer_type: str = "individual"
    company_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass
class ItemInput:
    """
    One requested line.

    Catalog items carry product_id; custom items (manual bookings only) carry
    name + unit_price_cents instead. client_unit_price_cents is advisory.
    """
    quantity: int
    product_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    selected_attributes: Optional[dict] = None
    client_unit_price_cents: Optional[int] = None
    price_override_cents: Optional[int] = None
    name: Optional[str] = None
    description: Optional[str] = None
    unit_price_cents: Optional[int] = None
    deposit_per_unit_cents: int = 0
    pricing_mode: str = "day"


@dataclass
class ReservationRequest:
    store_id: int
    customer: CustomerInput
    items: list
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    customer_notes: Optional[str] = None
    delivery: Optional[dict] = None
    locale: Optional[str] = None
    subtotal_cents: Optional[int] = None
    deposit_cents: Optional[int] = None
    total_cents: Optional[int] = None


@dataclass
class CreationResult:
    reservation: Reservation
    payment_url: Optional[str] = None
    warnings: list = field(default_factory=list)
    notifications: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "reservation_id": self.reservation.id,
            "reservation_number": self.reservation.number,
            "payment_url": self.payment_url,
            "warnings": self.warnings,
        }


@dataclass
class PricedItem:
    input: ItemInput
    product: Optional[Product]
    start: datetime
    end: datetime
    unit_price_cents: int
    deposit_per_unit_cents: int
    total_price_cents: int
    breakdown: Optional[dict]
    tax_rate: Optional[Decimal] = None


# =============================================================================
# HELPERS
# =============================================================================

def _get_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if not store:
        raise StoreNotFound(store_id=store_id)
    return store


def _load_product(store: Store, product_id: int) -> Product:
    product = (
        db.session.query(Product)
        .filter_by(id=product_id, store_id=store.id, is_active=True)
        .first()
    )
    if not product:
        raise ProductUnavailable(product_id=product_id)
    return product


def _item_window(item: ItemInput, start: datetime, end: datetime) -> tuple[datetime, datetime]:
    return item.start_date or start, item.end_date or end


def _overall_window(request_start, request_end, items: list) -> tuple[datetime, datetime]:
    starts = [i.start_date for i in items if i.start_date] or [request_start]
    ends = [i.end_date for i in items if i.end_date] or [request_end]
    if request_start:
        starts.append(request_start)
    if request_end:
        ends.append(request_end)
    starts = [s for s in starts if s is not None]
    ends = [e for e in ends if e is not None]
    if not starts or not ends:
        raise ValueError("Reservation window is required")
    start, end = min(starts), max(ends)
    if end <= start:
        raise ValueError("end_date must be after start_date")
    return start, end


def billing_periods(product: Optional[Product], pricing_mode: str, start: datetime, end: datetime) -> int:
    """Periods a verbatim unit price is multiplied by (overrides and custom items)."""
    if product is not None and product.is_rate_based:
        minutes = pricing_service.calculate_duration_minutes(start, end)
        return max(1, -(-minutes // product.base_period_minutes))
    mode = product.pricing_mode if product is not None else pricing_mode
    return pricing_service.calculate_duration(start, end, mode)


def check_client_amount(label: str, client_cents: Optional[int], server_cents: int, **context) -> None:
    """
    Compare a client-claimed amount to the server value.

    Divergence above PRICE_MISMATCH_TOLERANCE_CENTS is logged as a security
    signal; above PRICE_MISMATCH_REJECT_CENTS (when configured) it fails.
    """
    if client_cents is None:
        return
    diff = abs(client_cents - server_cents)
    if diff <= current_app.config.get("PRICE_MISMATCH_TOLERANCE_CENTS", 1):
        return

    current_app.logger.warning(
        "[SECURITY] %s mismatch detected: client=%s server=%s",
        label,
        client_cents,
        server_cents,
        extra={"mismatch": {"field": label, "client": client_cents, "server": server_cents, **context}},
    )
    reject = current_app.config.get("PRICE_MISMATCH_REJECT_CENTS")
    if reject is not None and diff > reject:
        raise PriceMismatch(field=label, client_cents=client_cents, server_cents=server_cents)


def _snapshot(product: Optional[Product], item: ItemInput) -> dict:
    if product is None:
        return {"name": item.name, "description": item.description, "images": []}
    return {
        "name": product.name,
        "description": product.description,
        "images": list(product.images or []),
    }


def price_catalog_item(store: Store, product: Product, item: ItemInput, start: datetime, end: datetime) -> PricedItem:
    """Authoritative price for a catalog item, honoring a manual override."""
    result = pricing_service.price_product(product, start, end, item.quantity)
    tax_rate = tax_service.get_effective_tax_rate(
        tax_service.store_tax_settings(store), tax_service.product_tax_override(product)
    )

    if item.price_override_cents is not None:
        periods = billing_periods(product, product.pricing_mode, start, end)
        total = item.price_override_cents * periods * item.quantity
        breakdown = pricing_service.generate_pricing_breakdown(
            result, is_manual_override=True, original_price_cents=result.unit_price_cents
        )
        breakdown["effectivePrice"] = item.price_override_cents
        breakdown["duration"] = periods
        return PricedItem(
            input=item, product=product, start=start, end=end,
            unit_price_cents=item.price_override_cents,
            deposit_per_unit_cents=product.deposit_cents,
            total_price_cents=total,
            breakdown=breakdown,
            tax_rate=tax_rate,
        )

    return PricedItem(
        input=item, product=product, start=start, end=end,
        unit_price_cents=result.unit_price_cents,
        deposit_per_unit_cents=product.deposit_cents,
        total_price_cents=result.subtotal_cents,
        breakdown=pricing_service.generate_pricing_breakdown(result),
        tax_rate=tax_rate,
    )


def price_custom_item(store: Store, item: ItemInput, start: datetime, end: datetime) -> PricedItem:
    """Custom lines have no tiers: unit_price * duration * quantity."""
    if item.unit_price_cents is None or not item.name:
        raise ValueError("Custom items require name and unit_price_cents")
    periods = billing_periods(None, item.pricing_mode, start, end)
    settings = tax_service.store_tax_settings(store)
    return PricedItem(
        input=item, product=None, start=start, end=end,
        unit_price_cents=item.unit_price_cents,
        deposit_per_unit_cents=item.deposit_per_unit_cents or 0,
        total_price_cents=item.unit_price_cents * periods * item.quantity,
        breakdown={
            "basePrice": item.unit_price_cents,
            "effectivePrice": item.unit_price_cents,
            "duration": periods,
            "pricingMode": item.pricing_mode,
            "discountPercent": None,
            "discountAmount": 0,
            "tierApplied": None,
            "isManualOverride": True,
        },
        tax_rate=settings.rate if settings else None,
    )


def apply_taxes(store: Store, reservation: Reservation, lines: list) -> None:
    """
    Fill tax columns on the reservation and each (ReservationItem, rate) pair.

    Reservation-level tax uses the store rate on the subtotal; when some
    product overrides the rate, the reservation figures are the item sums.
    """
    settings = tax_service.store_tax_settings(store)
    if settings is None:
        reservation.tax_rate_bps = None
        reservation.subtotal_excl_tax_cents = None
        reservation.tax_cents = None
        for row, _rate in lines:
            row.tax_rate_bps = row.tax_cents = row.price_excl_tax_cents = row.total_excl_tax_cents = None
        return

    mixed = False
    excl_sum = tax_sum = 0
    for row, rate in lines:
        item_tax = tax_service.compute_tax_breakdown(row.total_price_cents, rate, settings.display_mode)
        if item_tax is None:
            row.tax_rate_bps = row.tax_cents = row.price_excl_tax_cents = row.total_excl_tax_cents = None
            excl_sum += row.total_price_cents
        else:
            unit_tax = tax_service.compute_tax_breakdown(row.unit_price_cents, rate, settings.display_mode)
            row.tax_rate_bps = item_tax.rate_bps
            row.tax_cents = item_tax.tax_cents
            row.total_excl_tax_cents = item_tax.excl_tax_cents
            row.price_excl_tax_cents = unit_tax.excl_tax_cents
            row.pricing_breakdown = {**(row.pricing_breakdown or {}), **item_tax.to_dict()}
            excl_sum += item_tax.excl_tax_cents
            tax_sum += item_tax.tax_cents
        if rate is None or Decimal(rate) != settings.rate:
            mixed = True

    if not mixed:
        total_tax = tax_service.compute_tax_breakdown(reservation.subtotal_cents, settings.rate, settings.display_mode)
        if total_tax is None:
            reservation.tax_rate_bps = reservation.subtotal_excl_tax_cents = reservation.tax_cents = None
            return
        excl_sum, tax_sum = total_tax.excl_tax_cents, total_tax.tax_cents

    reservation.tax_rate_bps = tax_service.rate_to_bps(settings.rate)
    reservation.subtotal_excl_tax_cents = excl_sum
    reservation.tax_cents = tax_sum


def upsert_customer(store: Store, data: CustomerInput) -> Customer:
    email = data.email.strip().lower()
    customer = db.session.query(Customer).filter_by(store_id=store.id, email=email).first()
    if customer is None:
        customer = Customer(
            store_id=store.id,
            email=email,
            first_name=data.first_name,
            last_name=data.last_name,
            customer_type=data.customer_type or "individual",
            company_name=data.company_name,
            phone=data.phone,
            address=data.address,
            city=data.city,
            postal_code=data.postal_code,
        )
        db.session.add(customer)
        db.session.flush()
        return customer

    customer.first_name = data.first_name
    customer.last_name = data.last_name
    customer.customer_type = data.customer_type or customer.customer_type
    customer.company_name = data.company_name if data.company_name is not None else customer.company_name
    customer.phone = data.phone or customer.phone
    customer.address = data.address or customer.address
    customer.city = data.city or customer.city
    customer.postal_code = data.postal_code or customer.postal_code
    return customer


def generate_reservation_number(store_id: int, *, now: Optional[datetime] = None) -> str:
    """
    "R{YYMM}-{4 digits}", retried on collision; after
    RESERVATION_NUMBER_ATTEMPTS collisions the suffix widens to six
    uppercase alphanumerics until unique.
    """
    prefix = f"R{(now or utcnow()):%y%m}"

    def _taken(candidate: str) -> bool:
        return db.session.query(Reservation.id).filter_by(store_id=store_id, number=candidate).first() is not None

    attempts = current_app.config.get("RESERVATION_NUMBER_ATTEMPTS", 5)
    for _ in range(attempts):
        candidate = f"{prefix}-{secrets.randbelow(10000):04d}"
        if not _taken(candidate):
            return candidate

    while True:
        suffix = "".join(secrets.choice(NUMBER_SUFFIX_ALPHABET) for _ in range(6))
        candidate = f"{prefix}-{suffix}"
        if not _taken(candidate):
            return candidate


def _lock_products(product_ids) -> dict:
    if not product_ids:
        return {}
    rows = lock_for_update(
        db.session.query(Product).filter(Product.id.in_(sorted(product_ids)))
    ).all()
    return {p.id: p for p in rows}


def _build_item_row(priced: PricedItem, allocation=None) -> ReservationItem:
    snapshot = _snapshot(priced.product, priced.input)
    row = ReservationItem(
        product_id=priced.product.id if priced.product else None,
        is_custom_item=priced.product is None,
        quantity=priced.input.quantity,
        unit_price_cents=priced.unit_price_cents,
        deposit_per_unit_cents=priced.deposit_per_unit_cents,
        total_price_cents=priced.total_price_cents,
        pricing_breakdown=priced.breakdown,
    )
    if allocation is not None and allocation.combination_allocation:
        row.combination_key = allocation.combination_key
        row.selected_attributes = allocation.selected_attributes
        row.combination_allocation = allocation.combination_allocation
        snapshot["combinationKey"] = allocation.combination_key
        snapshot["selectedAttributes"] = allocation.selected_attributes
    row.product_snapshot = snapshot
    return row


def _capacity_requests(priced_items: list) -> list:
    return [
        {
            "product_id": p.product.id,
            "quantity": p.input.quantity,
            "selected_attributes": p.input.selected_attributes,
            "name": p.product.name,
        }
        for p in priced_items
        if p.product is not None
    ]


def _allocation_strategy():
    return get_allocation_strategy(current_app.config.get("COMBINATION_ALLOCATION_STRATEGY"))


# =============================================================================
# ONLINE CREATION
# =============================================================================

def create_reservation(request: ReservationRequest) -> CreationResult:
    """
    Create a pending reservation from a storefront checkout.

    Raises:
        StoreNotFound, ReservationRulesViolation, ProductUnavailable,
        InsufficientStock, DeliveryRequired/DeliveryTooFar/
        DeliveryAddressInvalid/DeliveryNotEnabled, ProductNoLongerAvailable,
        PriceMismatch (only with PRICE_MISMATCH_REJECT_CENTS configured)
    """
    store = _get_store(request.store_id)
    if not request.items:
        raise ValueError("At least one item is required")
    start, end = _overall_window(request.start_date, request.end_date, request.items)

    violations = rules_service.evaluate_reservation_rules(start, end, store)
    if violations:
        raise ReservationRulesViolation(violations)

    priced_items: list[PricedItem] = []
    for item in request.items:
        if not item.product_id:
            raise ProductUnavailable()
        product = _load_product(store, item.product_id)
        capacity = availability_service.product_capacity(product)
        if item.quantity > capacity:
            raise InsufficientStock(product_name=product.name, available=capacity)

        item.price_override_cents = None
        item_start, item_end = _item_window(item, start, end)
        priced = price_catalog_item(store, product, item, item_start, item_end)
        check_client_amount(
            "unit_price", item.client_unit_price_cents, priced.unit_price_cents, product_id=product.id
        )
        priced_items.append(priced)

    subtotal = sum(p.total_price_cents for p in priced_items)
    deposit = sum(p.deposit_per_unit_cents * p.input.quantity for p in priced_items)
    check_client_amount("subtotal", request.subtotal_cents, subtotal, store_id=store.id)
    check_client_amount("deposit", request.deposit_cents, deposit, store_id=store.id)

    delivery = quote_delivery(store, request.delivery, subtotal)
    total = subtotal + deposit + delivery.fee_cents
    check_client_amount("total", request.total_cents, total, store_id=store.id, delivery_fee=delivery.fee_cents)

    strategy = _allocation_strategy()

    def _op():
        begin_write_transaction()
        db.session.expire_all()

        products = _lock_products({p.product.id for p in priced_items})
        allocations = availability_service.allocate_request_capacity(
            store, products, _capacity_requests(priced_items), start, end, strategy=strategy
        )

        customer = upsert_customer(store, request.customer)
        reservation = Reservation(
            store_id=store.id,
            customer_id=customer.id,
            number=generate_reservation_number(store.id),
            status="pending",
            source=SOURCE_ONLINE,
            start_date=start,
            end_date=end,
            subtotal_cents=subtotal,
            deposit_cents=deposit,
            delivery_fee_cents=delivery.fee_cents,
            total_cents=total,
            customer_notes=request.customer_notes,
        )
        _apply_delivery(reservation, delivery)
        db.session.add(reservation)
        db.session.flush()

        lines = []
        for priced, allocation in zip(priced_items, allocations):
            row = _build_item_row(priced, allocation)
            reservation.items.append(row)
            lines.append((row, priced.tax_rate))
        apply_taxes(store, reservation, lines)
        db.session.flush()

        log_activity(
            reservation_id=reservation.id,
            activity_type="created",
            metadata={
                "source": SOURCE_ONLINE,
                "locale": request.locale,
                "item_count": len(priced_items),
                "total_cents": total,
            },
        )
        db.session.commit()
        return reservation

    reservation = run_with_retry(_op)

    notifications = [
        intent("customer_request_received", AUDIENCE_CUSTOMER, reservation, locale=request.locale),
        intent("reservation_new", AUDIENCE_ADMIN, reservation),
    ]
    payment_url = start_online_payment(reservation, store)
    return CreationResult(reservation=reservation, payment_url=payment_url, notifications=notifications)


def _apply_delivery(reservation: Reservation, delivery: DeliveryQuote) -> None:
    reservation.delivery_option = delivery.option
    reservation.delivery_fee_cents = delivery.fee_cents
    reservation.delivery_distance_km = delivery.distance_km
    reservation.delivery_address = delivery.address
    reservation.delivery_city = delivery.city
    reservation.delivery_postal_code = delivery.postal_code
    reservation.delivery_country = delivery.country
    reservation.delivery_latitude = delivery.latitude
    reservation.delivery_longitude = delivery.longitude


def start_online_payment(reservation: Reservation, store: Store) -> Optional[str]:
    """
    Open a checkout session when the store takes payment at booking.

    Never raises: a provider or bookkeeping failure is logged and the
    reservation stays as committed, without a payment URL.
    """
    provider = get_payment_provider()
    if store.reservation_mode != "payment" or provider is None or not store.payment_account_id:
        return None

    percent = store.online_payment_percent or 100
    due = reservation.subtotal_cents + reservation.delivery_fee_cents
    amount = tax_service.round_cents(Decimal(due) * Decimal(percent) / 100)
    amount = max(amount, current_app.config.get("DEPOSIT_PAYMENT_MIN_CENTS", 50))

    try:
        session = provider.create_checkout_session(
            reservation_id=reservation.id,
            reservation_number=reservation.number,
            amount_minor=to_minor_units(amount, store.currency),
            currency=store.currency,
            customer_email=reservation.customer.email,
        )
    except Exception:
        current_app.logger.exception("Failed to create checkout session for reservation %s", reservation.number)
        return None

    def _op():
        begin_write_transaction()
        db.session.add(Payment(
            reservation_id=reservation.id,
            type="rental",
            method="provider",
            status="pending",
            amount_cents=amount,
            currency=store.currency,
            provider_checkout_session_id=session.id,
        ))
        log_activity(
            reservation_id=reservation.id,
            activity_type="payment_initiated",
            metadata={"amount_cents": amount, "percent": percent, "checkout_session_id": session.id},
        )
        db.session.commit()

    try:
        run_with_retry(_op)
    except Exception:
        current_app.logger.exception("Failed to record checkout payment for reservation %s", reservation.number)
        return None
    return session.url


# =============================================================================
# MANUAL CREATION
# =============================================================================

def create_manual_reservation(
    request: ReservationRequest,
    *,
    customer_id: Optional[int] = None,
    internal_notes: Optional[str] = None,
    send_confirmation: bool = False,
    actor_id: Optional[int] = None,
) -> CreationResult:
    """
    Create a confirmed reservation from the store dashboard.

    Booking rules are reported as warnings. Catalog items still go through
    the commit-time availability check.
    """
    store = _get_store(request.store_id)
    if not request.items:
        raise ValueError("At least one item is required")
    start, end = _overall_window(request.start_date, request.end_date, request.items)
    warnings = rules_service.violations_as_warnings(
        rules_service.evaluate_reservation_rules(start, end, store)
    )

    priced_items: list[PricedItem] = []
    for item in request.items:
        item_start, item_end = _item_window(item, start, end)
        if item.product_id:
            product = _load_product(store, item.product_id)
            priced_items.append(price_catalog_item(store, product, item, item_start, item_end))
        else:
            priced_items.append(price_custom_item(store, item, item_start, item_end))

    subtotal = sum(p.total_price_cents for p in priced_items)
    deposit = sum(p.deposit_per_unit_cents * p.input.quantity for p in priced_items)
    strategy = _allocation_strategy()

    def _op():
        begin_write_transaction()
        db.session.expire_all()

        catalog = [p for p in priced_items if p.product is not None]
        products = _lock_products({p.product.id for p in catalog})
        allocations = iter(availability_service.allocate_request_capacity(
            store, products, _capacity_requests(catalog), start, end, strategy=strategy
        ))

        if customer_id is not None:
            customer = db.session.query(Customer).filter_by(id=customer_id, store_id=store.id).first()
            if customer is None:
                raise ValueError(f"Customer {customer_id} not found")
        else:
            customer = upsert_customer(store, request.customer)

        reservation = Reservation(
            store_id=store.id,
            customer_id=customer.id,
            number=generate_reservation_number(store.id),
            status="confirmed",
            source=SOURCE_MANUAL,
            start_date=start,
            end_date=end,
            subtotal_cents=subtotal,
            deposit_cents=deposit,
            delivery_fee_cents=0,
            total_cents=subtotal + deposit,
            internal_notes=internal_notes,
        )
        db.session.add(reservation)
        db.session.flush()

        lines = []
        for priced in priced_items:
            allocation = next(allocations) if priced.product is not None else None
            row = _build_item_row(priced, allocation)
            reservation.items.append(row)
            lines.append((row, priced.tax_rate))
        apply_taxes(store, reservation, lines)
        db.session.flush()

        log_activity(
            reservation_id=reservation.id,
            activity_type="created",
            actor_id=actor_id,
            description=rules_service.format_warnings_for_log(warnings) or None,
            metadata={"source": SOURCE_MANUAL, "validationWarnings": warnings},
        )
        db.session.commit()
        return reservation

    reservation = run_with_retry(_op)

    notifications = []
    if send_confirmation:
        notifications.append(intent("customer_reservation_confirmed", AUDIENCE_CUSTOMER, reservation))
    return CreationResult(reservation=reservation, warnings=warnings, notifications=notifications)


# =============================================================================
# READS
# =============================================================================

def get_reservation(reservation_id: int, store_id: Optional[int] = None) -> Reservation:
    query = db.session.query(Reservation).filter_by(id=reservation_id)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    reservation = query.first()
    if not reservation:
        raise ReservationNotFound(reservation_id=reservation_id)
    return reservation


# =============================================================================
# EDIT
# =============================================================================

@dataclass
class EditResult:
    reservation: Reservation
    warnings: list = field(default_factory=list)
    difference_cents: int = 0


def _reprice_existing(store: Store, row: ReservationItem, start: datetime, end: datetime) -> Optional[Decimal]:
    """Reprice one kept item in place; manual-override prices stay verbatim."""
    product = db.session.get(Product, row.product_id) if row.product_id else None
    settings = tax_service.store_tax_settings(store)

    if row.is_manual_override or product is None:
        mode = (row.pricing_breakdown or {}).get("pricingMode") or "day"
        periods = billing_periods(product, mode if mode in pricing_service.PRICING_MODES else "day", start, end)
        row.total_price_cents = row.unit_price_cents * periods * row.quantity
        if row.pricing_breakdown:
            row.pricing_breakdown = {**row.pricing_breakdown, "duration": periods}
        if product is None:
            return settings.rate if settings else None
        return tax_service.get_effective_tax_rate(settings, tax_service.product_tax_override(product))

    result = pricing_service.price_product(product, start, end, row.quantity)
    row.unit_price_cents = result.unit_price_cents
    row.total_price_cents = result.subtotal_cents
    row.pricing_breakdown = pricing_service.generate_pricing_breakdown(result)
    return tax_service.get_effective_tax_rate(settings, tax_service.product_tax_override(product))


def update_reservation(
    reservation_id: int,
    *,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    items: Optional[list] = None,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> EditResult:
    """
    Edit dates and/or items of a non-completed reservation.

    `items`, when given, replaces every line (ItemInput list). Otherwise the
    existing lines are repriced for the new window. Availability is re-proven
    for catalog lines, excluding this reservation's own holdings.

    Raises:
        ReservationNotFound, ReservationLocked, ProductUnavailable,
        ProductNoLongerAvailable
    """
    strategy = _allocation_strategy()

    def _op():
        begin_write_transaction()
        reservation = lock_for_update(
            db.session.query(Reservation).filter_by(id=reservation_id)
        ).first()
        if not reservation or (store_id is not None and reservation.store_id != store_id):
            raise ReservationNotFound(reservation_id=reservation_id)
        if reservation.status == "completed":
            raise ReservationLocked(status=reservation.status)

        store = reservation.store
        start = start_date or reservation.start_date
        end = end_date or reservation.end_date
        if end <= start:
            raise ValueError("end_date must be after start_date")

        warnings = rules_service.violations_as_warnings(
            rules_service.evaluate_reservation_rules(start, end, store)
        )
        previous = {
            "start_date": reservation.start_date.isoformat(),
            "end_date": reservation.end_date.isoformat(),
            "subtotal_cents": reservation.subtotal_cents,
            "deposit_cents": reservation.deposit_cents,
            "item_count": len(reservation.items),
        }

        lines = []
        if items is not None:
            priced_items = []
            for item in items:
                if item.product_id:
                    product = _load_product(store, item.product_id)
                    priced_items.append(price_catalog_item(store, product, item, start, end))
                else:
                    priced_items.append(price_custom_item(store, item, start, end))
            catalog = [p for p in priced_items if p.product is not None]
            products = _lock_products({p.product.id for p in catalog})
            allocations = iter(availability_service.allocate_request_capacity(
                store, products, _capacity_requests(catalog), start, end,
                exclude_reservation_id=reservation.id, strategy=strategy,
            ))
            for row in list(reservation.items):
                if row.unit_assignments:
                    raise ValueError("Unassign units before replacing items")
                reservation.items.remove(row)
            db.session.flush()
            for priced in priced_items:
                allocation = next(allocations) if priced.product is not None else None
                row = _build_item_row(priced, allocation)
                reservation.items.append(row)
                lines.append((row, priced.tax_rate))
        else:
            requests = []
            products = _lock_products({row.product_id for row in reservation.items if row.product_id})
            for row in reservation.items:
                if row.product_id and row.product_id in products:
                    requests.append({
                        "product_id": row.product_id,
                        "quantity": row.quantity,
                        "selected_attributes": row.selected_attributes,
                        "name": (row.product_snapshot or {}).get("name"),
                    })
            availability_service.allocate_request_capacity(
                store, products, requests, start, end,
                exclude_reservation_id=reservation.id, strategy=strategy,
            )
            for row in reservation.items:
                lines.append((row, _reprice_existing(store, row, start, end)))

        reservation.start_date = start
        reservation.end_date = end
        reservation.subtotal_cents = sum(row.total_price_cents for row, _ in lines)
        reservation.deposit_cents = sum(row.deposit_per_unit_cents * row.quantity for row, _ in lines)
        reservation.total_cents = reservation.subtotal_cents + reservation.deposit_cents + reservation.delivery_fee_cents
        apply_taxes(store, reservation, lines)

        difference = reservation.subtotal_cents - previous["subtotal_cents"]
        log_activity(
            reservation_id=reservation.id,
            activity_type="modified",
            actor_id=actor_id,
            description=rules_service.format_warnings_for_log(warnings) or None,
            metadata={
                "previous": previous,
                "updated": {
                    "start_date": start.isoformat(),
                    "end_date": end.isoformat(),
                    "subtotal_cents": reservation.subtotal_cents,
                    "deposit_cents": reservation.deposit_cents,
                    "item_count": len(lines),
                },
                "difference_cents": difference,
                "validationWarnings": warnings,
            },
        )
        db.session.commit()
        return EditResult(reservation=reservation, warnings=warnings, difference_cents=difference)

    return run_with_retry(_op)


# =============================================================================
# UNIT ASSIGNMENT
# =============================================================================

def assign_units_to_item(
    item_id: int,
    unit_ids: list,
    *,
    store_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> ReservationItem:
    """
    Replace the serialized units assigned to a reservation item.

    An empty list clears the assignments. identifier_snapshot keeps the unit
    identifier as it was at assignment time.
    """
    def _op():
        begin_write_transaction()
        query = (
            db.session.query(ReservationItem)
            .join(Reservation, Reservation.id == ReservationItem.reservation_id)
            .filter(ReservationItem.id == item_id)
        )
        if store_id is not None:
            query = query.filter(Reservation.store_id == store_id)
        item = query.first()
        if not item:
            raise ReservationNotFound(item_id=item_id)

        unique_ids = list(dict.fromkeys(unit_ids))
        if len(unique_ids) > item.quantity:
            raise TooManyUnitsAssigned(max_units=item.quantity)

        units = []
        if unique_ids:
            units = db.session.query(ProductUnit).filter(ProductUnit.id.in_(unique_ids)).all()
            if len(units) != len(unique_ids):
                raise InvalidUnits()
            if any(u.product_id != item.product_id for u in units):
                raise UnitProductMismatch()
            assignable = {u.id for u in _assignable_units(item)}
            blocked = [u.identifier for u in units if u.id not in assignable]
            if blocked:
                raise InvalidUnits(unit_identifiers=sorted(blocked))

        for assignment in list(item.unit_assignments):
            item.unit_assignments.remove(assignment)
        db.session.flush()

        by_id = {u.id: u for u in units}
        for unit_id in unique_ids:
            item.unit_assignments.append(
                ReservationItemUnit(product_unit_id=unit_id, identifier_snapshot=by_id[unit_id].identifier)
            )

        if unique_ids:
            metadata = {
                "action": "units_assigned",
                "reservation_item_id": item.id,
                "unit_identifiers": [by_id[u].identifier for u in unique_ids],
            }
        else:
            metadata = {"action": "units_unassigned", "reservation_item_id": item.id}
        log_activity(
            reservation_id=item.reservation_id,
            activity_type="modified",
            actor_id=actor_id,
            metadata=metadata,
        )
        db.session.commit()
        return item

    return run_with_retry(_op)


def list_assignable_units(item_id: int, *, store_id: Optional[int] = None) -> dict:
    """Units free for this item's window plus those it already holds."""
    query = (
        db.session.query(ReservationItem)
        .join(Reservation, Reservation.id == ReservationItem.reservation_id)
        .filter(ReservationItem.id == item_id)
    )
    if store_id is not None:
        query = query.filter(Reservation.store_id == store_id)
    item = query.first()
    if not item:
        raise ReservationNotFound(item_id=item_id)
    if not item.product_id:
        return {"units": [], "assigned": []}

    assigned_ids = [a.product_unit_id for a in item.unit_assignments]
    return {"units": [u.to_dict() for u in _assignable_units(item)], "assigned": assigned_ids}


def _assignable_units(item: ReservationItem) -> list[ProductUnit]:
    """In-service units free over the item's window, plus those the item already holds."""
    reservation = item.reservation
    free = availability_service.get_available_units(
        item.product, reservation.start_date, reservation.end_date, exclude_reservation_id=reservation.id
    )
    assigned_ids = [a.product_unit_id for a in item.unit_assignments]
    free_ids = {u.id for u in free}
    held = []
    if assigned_ids:
        held = (
            db.session.query(ProductUnit)
            .filter(ProductUnit.id.in_(assigned_ids), ProductUnit.status == "available")
            .all()
        )
    return free + [u for u in held if u.id not in free_ids]
