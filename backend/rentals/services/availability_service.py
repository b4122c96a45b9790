# Overview: Service-layer availability reads; counts free capacity over a time window.

"""
Availability Module

Read-only. Nothing here commits capacity: the reservation engine re-runs
`allocate_request_capacity` inside its write transaction, after taking the
write lock, so the check and the insert cannot interleave with another booking.

OVERLAP (half-open):
    existing.start_date < requested.end AND existing.end_date > requested.start

BLOCKING STATUSES (per store):
    pending_blocks_availability = True  -> pending, confirmed, ongoing
    pending_blocks_availability = False -> confirmed, ongoing

CAPACITY:
    untracked product -> product.quantity
    tracked product   -> count of units with status "available", partitioned
                         by attribute-combination signature
    available = max(0, capacity - reserved)
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence

from ..extensions import db
from ..models import Product, ProductUnit, Reservation, ReservationItem, ReservationItemUnit, Store
from ..errors import ProductNoLongerAvailable
from .combination_service import (
    DEFAULT_COMBINATION_KEY,
    CombinationCapacity,
    allocate_across_combinations,
    resolved_attributes,
    unit_combination_key,
    canonicalize_attributes,
)


STATUS_AVAILABLE = "available"
STATUS_LIMITED = "limited"
STATUS_UNAVAILABLE = "unavailable"

UNIT_STATUS_AVAILABLE = "available"


@dataclass
class ProductAvailability:
    product_id: int
    total: int
    reserved: int
    available: int
    status: str
    combinations: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "total": self.total,
            "reserved": self.reserved,
            "available": self.available,
            "status": self.status,
            "combinations": [
                {"combination_key": c.key, "attributes": c.attributes, "available": c.remaining}
                for c in self.combinations
            ],
        }


@dataclass
class ItemAllocation:
    """Capacity granted to one requested item."""
    product_id: int
    quantity: int
    combination_key: Optional[str] = None
    selected_attributes: Optional[dict] = None
    combination_allocation: Optional[dict] = None


# =============================================================================
# RESERVED QUANTITIES
# =============================================================================

def find_overlapping_reservations(
    store: Store,
    start: datetime,
    end: datetime,
    *,
    exclude_reservation_id: Optional[int] = None,
) -> list[Reservation]:
    query = db.session.query(Reservation).filter(
        Reservation.store_id == store.id,
        Reservation.status.in_(store.blocking_statuses),
        Reservation.start_date < end,
        Reservation.end_date > start,
    )
    if exclude_reservation_id is not None:
        query = query.filter(Reservation.id != exclude_reservation_id)
    return query.all()


def item_allocation(item: ReservationItem) -> dict:
    """Combination -> quantity held by an existing item."""
    if item.combination_allocation:
        return {key: int(qty) for key, qty in item.combination_allocation.items()}
    return {item.combination_key or DEFAULT_COMBINATION_KEY: item.quantity}


def reserved_quantities(reservations: Iterable[Reservation]) -> tuple[dict, dict]:
    """
    Sum item quantities of the given reservations.

    Returns (by_product, by_product_combination) where the second map is
    keyed by (product_id, combination_key).
    """
    by_product: dict[int, int] = defaultdict(int)
    by_combination: dict[tuple, int] = defaultdict(int)
    for reservation in reservations:
        for item in reservation.items:
            if not item.product_id:
                continue
            by_product[item.product_id] += item.quantity
            for key, qty in item_allocation(item).items():
                by_combination[(item.product_id, key)] += qty
    return by_product, by_combination


# =============================================================================
# CAPACITY
# =============================================================================

def unit_combinations(product: Product) -> dict:
    """Signature -> {"attributes", "total"} over the product's available units."""
    combos: dict[str, dict] = {}
    units = (
        db.session.query(ProductUnit)
        .filter_by(product_id=product.id, status=UNIT_STATUS_AVAILABLE)
        .all()
    )
    axes = product.booking_attribute_axes or []
    for unit in units:
        key = unit_combination_key(axes, unit.attributes)
        entry = combos.setdefault(key, {"attributes": canonicalize_attributes(axes, unit.attributes), "total": 0})
        entry["total"] += 1
    return combos


def product_capacity(product: Product) -> int:
    if product.track_units:
        return sum(c["total"] for c in unit_combinations(product).values())
    return product.quantity


def combination_capacities(
    product: Product,
    reserved_by_combination: Mapping,
) -> list[CombinationCapacity]:
    capacities = []
    for key, entry in unit_combinations(product).items():
        reserved = reserved_by_combination.get((product.id, key), 0)
        capacities.append(
            CombinationCapacity(key=key, attributes=entry["attributes"], remaining=max(0, entry["total"] - reserved))
        )
    return capacities


def _status_for(available: int, requested: int) -> str:
    if available <= 0:
        return STATUS_UNAVAILABLE
    if available < requested:
        return STATUS_LIMITED
    return STATUS_AVAILABLE


def get_product_availability(
    product: Product,
    start: datetime,
    end: datetime,
    *,
    quantity: int = 1,
    exclude_reservation_id: Optional[int] = None,
) -> ProductAvailability:
    overlapping = find_overlapping_reservations(
        product.store, start, end, exclude_reservation_id=exclude_reservation_id
    )
    by_product, by_combination = reserved_quantities(overlapping)

    total = product_capacity(product)
    reserved = by_product.get(product.id, 0)
    available = max(0, total - reserved)
    combinations = combination_capacities(product, by_combination) if product.track_units else []

    return ProductAvailability(
        product_id=product.id,
        total=total,
        reserved=reserved,
        available=available,
        status=_status_for(available, quantity),
        combinations=combinations,
    )


def check_availability(
    store: Store,
    product_ids: Sequence[int],
    start: datetime,
    end: datetime,
    *,
    exclude_reservation_id: Optional[int] = None,
) -> dict[int, ProductAvailability]:
    """Availability for several products of one store, sharing one overlap query."""
    overlapping = find_overlapping_reservations(store, start, end, exclude_reservation_id=exclude_reservation_id)
    by_product, by_combination = reserved_quantities(overlapping)

    products = (
        db.session.query(Product)
        .filter(Product.store_id == store.id, Product.id.in_(list(product_ids)))
        .all()
    )
    result = {}
    for product in products:
        total = product_capacity(product)
        reserved = by_product.get(product.id, 0)
        available = max(0, total - reserved)
        result[product.id] = ProductAvailability(
            product_id=product.id,
            total=total,
            reserved=reserved,
            available=available,
            status=_status_for(available, 1),
            combinations=combination_capacities(product, by_combination) if product.track_units else [],
        )
    return result


# =============================================================================
# UNIT LEVEL
# =============================================================================

def get_available_units(
    product: Product,
    start: datetime,
    end: datetime,
    *,
    exclude_reservation_id: Optional[int] = None,
    combination_key: Optional[str] = None,
) -> list[ProductUnit]:
    """
    Units that are "available" and not assigned to an overlapping blocking
    reservation (other than `exclude_reservation_id`).
    """
    units = (
        db.session.query(ProductUnit)
        .filter_by(product_id=product.id, status=UNIT_STATUS_AVAILABLE)
        .order_by(ProductUnit.identifier)
        .all()
    )
    if combination_key:
        axes = product.booking_attribute_axes or []
        units = [u for u in units if unit_combination_key(axes, u.attributes) == combination_key]
    if not units:
        return []

    assigned_query = (
        db.session.query(ReservationItemUnit.product_unit_id)
        .join(ReservationItem, ReservationItem.id == ReservationItemUnit.reservation_item_id)
        .join(Reservation, Reservation.id == ReservationItem.reservation_id)
        .filter(
            ReservationItemUnit.product_unit_id.in_([u.id for u in units]),
            Reservation.status.in_(product.store.blocking_statuses),
            Reservation.start_date < end,
            Reservation.end_date > start,
        )
    )
    if exclude_reservation_id is not None:
        assigned_query = assigned_query.filter(Reservation.id != exclude_reservation_id)
    assigned = {row[0] for row in assigned_query.all()}

    return [u for u in units if u.id not in assigned]


def check_units_availability(
    products: Sequence[Product],
    start: datetime,
    end: datetime,
    *,
    exclude_reservation_id: Optional[int] = None,
) -> dict[int, int]:
    """product_id -> count of assignable units (tracked products only)."""
    return {
        product.id: len(get_available_units(product, start, end, exclude_reservation_id=exclude_reservation_id))
        for product in products
        if product.track_units
    }


# =============================================================================
# COMMIT-TIME ALLOCATION
# =============================================================================

def allocate_request_capacity(
    store: Store,
    products: Mapping[int, Product],
    requests: Sequence[dict],
    start: datetime,
    end: datetime,
    *,
    exclude_reservation_id: Optional[int] = None,
    strategy=None,
) -> list[ItemAllocation]:
    """
    Prove every requested item fits, accounting for earlier items of the same
    request. Each request is {"product_id", "quantity", "selected_attributes",
    "name"}; raises ProductNoLongerAvailable naming the first item that does
    not fit. All-or-nothing: no allocation is returned on failure.
    """
    overlapping = find_overlapping_reservations(store, start, end, exclude_reservation_id=exclude_reservation_id)
    by_product, by_combination = reserved_quantities(overlapping)

    allocations: list[ItemAllocation] = []
    for request in requests:
        product = products[request["product_id"]]
        quantity = request["quantity"]
        selected = request.get("selected_attributes") or {}

        if not product.track_units:
            reserved = by_product.get(product.id, 0)
            if quantity > max(0, product.quantity - reserved):
                raise ProductNoLongerAvailable(product_name=request.get("name") or product.name)
            by_product[product.id] = reserved + quantity
            allocations.append(ItemAllocation(product_id=product.id, quantity=quantity))
            continue

        capacities = combination_capacities(product, by_combination)
        plan = allocate_across_combinations(capacities, selected, quantity, strategy)
        if plan is None:
            raise ProductNoLongerAvailable(product_name=request.get("name") or product.name)

        for key, qty in plan.items():
            by_combination[(product.id, key)] += qty
        by_product[product.id] = by_product.get(product.id, 0) + quantity

        primary_key = max(plan.items(), key=lambda kv: kv[1])[0] if plan else None
        primary_attrs = next((c.attributes for c in capacities if c.key == primary_key), {})
        allocations.append(
            ItemAllocation(
                product_id=product.id,
                quantity=quantity,
                combination_key=primary_key,
                selected_attributes=resolved_attributes(selected, primary_attrs),
                combination_allocation=plan,
            )
        )
    return allocations
