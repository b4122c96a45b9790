from __future__ import annotations

from ..extensions import db
from rentals.time_utils import to_utc_z


class Reservation(db.Model):
    """
    Booking document.

    Created once by the reservation engine (status "pending", or "confirmed"
    for manual bookings); afterwards mutated only through the lifecycle
    service. [start_date, end_date) is half-open, UTC-naive.

    All amounts are integer cents. Deposit is never taxed, so
    total_cents = subtotal_cents + deposit_cents + delivery_fee_cents.
    """
    __tablename__ = "reservations"
    __table_args__ = (
        db.UniqueConstraint("store_id", "number", name="uq_reservations_store_number"),
        db.Index("ix_reservations_store_status_window", "store_id", "status", "start_date", "end_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    # Human-readable number (e.g., "R2610-4821")
    number = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    source = db.Column(db.String(16), nullable=False, default="online")  # online, manual

    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    deposit_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    # Tax (null when untaxed)
    tax_rate_bps = db.Column(db.Integer, nullable=True)
    subtotal_excl_tax_cents = db.Column(db.Integer, nullable=True)
    tax_cents = db.Column(db.Integer, nullable=True)

    # Deposit authorization sub-state
    deposit_status = db.Column(db.String(16), nullable=False, default="none", index=True)
    provider_customer_id = db.Column(db.String(128), nullable=True)
    provider_payment_method_id = db.Column(db.String(128), nullable=True)
    deposit_payment_intent_id = db.Column(db.String(128), nullable=True)
    deposit_authorization_expires_at = db.Column(db.DateTime, nullable=True)

    # Delivery
    delivery_option = db.Column(db.String(16), nullable=False, default="pickup")  # pickup, delivery
    delivery_address = db.Column(db.String(255), nullable=True)
    delivery_city = db.Column(db.String(120), nullable=True)
    delivery_postal_code = db.Column(db.String(32), nullable=True)
    delivery_country = db.Column(db.String(64), nullable=True)
    delivery_latitude = db.Column(db.Float, nullable=True)
    delivery_longitude = db.Column(db.Float, nullable=True)
    delivery_distance_km = db.Column(db.Numeric(10, 2), nullable=True)

    customer_notes = db.Column(db.Text, nullable=True)
    internal_notes = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    picked_up_at = db.Column(db.DateTime, nullable=True)
    returned_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("reservations", lazy=True))
    customer = db.relationship("Customer", backref=db.backref("reservations", lazy=True))
    items = db.relationship(
        "ReservationItem",
        back_populates="reservation",
        order_by="ReservationItem.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "customer_id": self.customer_id,
            "number": self.number,
            "status": self.status,
            "source": self.source,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "subtotal_cents": self.subtotal_cents,
            "deposit_cents": self.deposit_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "total_cents": self.total_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "subtotal_excl_tax_cents": self.subtotal_excl_tax_cents,
            "tax_cents": self.tax_cents,
            "deposit_status": self.deposit_status,
            "deposit_authorization_expires_at": to_utc_z(self.deposit_authorization_expires_at),
            "delivery_option": self.delivery_option,
            "delivery_address": self.delivery_address,
            "delivery_city": self.delivery_city,
            "delivery_postal_code": self.delivery_postal_code,
            "delivery_country": self.delivery_country,
            "delivery_distance_km": str(self.delivery_distance_km) if self.delivery_distance_km is not None else None,
            "customer_notes": self.customer_notes,
            "internal_notes": self.internal_notes,
            "rejection_reason": self.rejection_reason,
            "cancellation_reason": self.cancellation_reason,
            "picked_up_at": to_utc_z(self.picked_up_at),
            "returned_at": to_utc_z(self.returned_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ReservationItem(db.Model):
    """
    Line item on a reservation.

    product_snapshot is copied at booking time and never re-joined to the live
    product. combination_allocation maps combination key -> quantity when the
    item was resolved against attribute combinations.
    """
    __tablename__ = "reservation_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    is_custom_item = db.Column(db.Boolean, nullable=False, default=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    deposit_per_unit_cents = db.Column(db.Integer, nullable=False, default=0)
    total_price_cents = db.Column(db.Integer, nullable=False)

    product_snapshot = db.Column(db.JSON, nullable=False)
    pricing_breakdown = db.Column(db.JSON, nullable=True)
    combination_key = db.Column(db.String(255), nullable=True)
    selected_attributes = db.Column(db.JSON, nullable=True)
    combination_allocation = db.Column(db.JSON, nullable=True)

    tax_rate_bps = db.Column(db.Integer, nullable=True)
    tax_cents = db.Column(db.Integer, nullable=True)
    price_excl_tax_cents = db.Column(db.Integer, nullable=True)
    total_excl_tax_cents = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    reservation = db.relationship("Reservation", back_populates="items")
    product = db.relationship("Product")
    unit_assignments = db.relationship(
        "ReservationItemUnit",
        back_populates="item",
        cascade="all, delete-orphan",
        lazy=True,
    )

    @property
    def is_manual_override(self) -> bool:
        return bool((self.pricing_breakdown or {}).get("isManualOverride"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reservation_id": self.reservation_id,
            "product_id": self.product_id,
            "is_custom_item": self.is_custom_item,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "deposit_per_unit_cents": self.deposit_per_unit_cents,
            "total_price_cents": self.total_price_cents,
            "product_snapshot": self.product_snapshot,
            "pricing_breakdown": self.pricing_breakdown,
            "combination_key": self.combination_key,
            "selected_attributes": self.selected_attributes,
            "combination_allocation": self.combination_allocation,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "price_excl_tax_cents": self.price_excl_tax_cents,
            "total_excl_tax_cents": self.total_excl_tax_cents,
            "units": [a.to_dict() for a in self.unit_assignments],
        }


class ReservationItemUnit(db.Model):
    """Assignment of a serialized unit to an item; identifier survives unit renames."""
    __tablename__ = "reservation_item_units"
    __table_args__ = (
        db.UniqueConstraint("reservation_item_id", "product_unit_id", name="uq_item_units_item_unit"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reservation_item_id = db.Column(db.Integer, db.ForeignKey("reservation_items.id"), nullable=False, index=True)
    product_unit_id = db.Column(db.Integer, db.ForeignKey("product_units.id"), nullable=False, index=True)
    identifier_snapshot = db.Column(db.String(128), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    item = db.relationship("ReservationItem", back_populates="unit_assignments")
    unit = db.relationship("ProductUnit")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reservation_item_id": self.reservation_item_id,
            "product_unit_id": self.product_unit_id,
            "identifier_snapshot": self.identifier_snapshot,
        }


class ReservationActivity(db.Model):
    """
    Append-only audit trail for a reservation.

    Rows are written in the same transaction as the change they describe and
    are never updated or deleted.
    """
    __tablename__ = "reservation_activities"
    __table_args__ = (
        db.Index("ix_reservation_activities_reservation_created", "reservation_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservations.id"), nullable=False, index=True)
    activity_type = db.Column(db.String(32), nullable=False, index=True)
    actor_id = db.Column(db.Integer, nullable=True)
    description = db.Column(db.Text, nullable=True)
    # "metadata" is reserved on declarative classes
    details = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reservation_id": self.reservation_id,
            "activity_type": self.activity_type,
            "actor_id": self.actor_id,
            "description": self.description,
            "metadata": self.details,
            "created_at": to_utc_z(self.created_at),
        }
