from __future__ import annotations

from ..extensions import db
from rentals.time_utils import to_utc_z


class Product(db.Model):
    """
    Rentable catalog product.

    Pricing is one of two mutually exclusive strategies:
    - discount tiers: base_price_cents per pricing_mode period, with PricingTier rows
    - rate table: base_price_cents per base_period_minutes, with ProductRate rows

    A product is rate-based when base_period_minutes > 0.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    images = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Pricing (cents)
    base_price_cents = db.Column(db.Integer, nullable=False, default=0)
    deposit_cents = db.Column(db.Integer, nullable=False, default=0)
    pricing_mode = db.Column(db.String(8), nullable=False, default="day")  # hour, day, week
    base_period_minutes = db.Column(db.Integer, nullable=True)
    enforce_strict_tiers = db.Column(db.Boolean, nullable=False, default=False)

    # Stock
    quantity = db.Column(db.Integer, nullable=False, default=1)
    track_units = db.Column(db.Boolean, nullable=False, default=False)
    # Ordered [{"key": "size", "label": "Size"}, ...]
    booking_attribute_axes = db.Column(db.JSON, nullable=True)

    # Tax override
    tax_inherit_from_store = db.Column(db.Boolean, nullable=False, default=True)
    tax_rate_bps = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    tiers = db.relationship(
        "PricingTier",
        order_by="PricingTier.min_duration",
        cascade="all, delete-orphan",
        lazy=True,
    )
    rates = db.relationship(
        "ProductRate",
        order_by="ProductRate.period_minutes",
        cascade="all, delete-orphan",
        lazy=True,
    )
    units = db.relationship("ProductUnit", back_populates="product", lazy=True)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_rate_based(self) -> bool:
        return bool(self.base_period_minutes and self.base_period_minutes > 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "description": self.description,
            "images": self.images or [],
            "is_active": self.is_active,
            "base_price_cents": self.base_price_cents,
            "deposit_cents": self.deposit_cents,
            "pricing_mode": self.pricing_mode,
            "base_period_minutes": self.base_period_minutes,
            "enforce_strict_tiers": self.enforce_strict_tiers,
            "quantity": self.quantity,
            "track_units": self.track_units,
            "booking_attribute_axes": self.booking_attribute_axes or [],
            "tax_inherit_from_store": self.tax_inherit_from_store,
            "tax_rate_bps": self.tax_rate_bps,
            "tiers": [t.to_dict() for t in self.tiers],
            "rates": [r.to_dict() for r in self.rates],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PricingTier(db.Model):
    """Discount applied once the rental reaches min_duration periods."""
    __tablename__ = "pricing_tiers"
    __table_args__ = (
        db.UniqueConstraint("product_id", "min_duration", name="uq_pricing_tiers_product_duration"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    min_duration = db.Column(db.Integer, nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    display_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "min_duration": self.min_duration,
            "discount_percent": str(self.discount_percent),
            "display_order": self.display_order,
        }


class ProductRate(db.Model):
    """Flat price for a block of period_minutes."""
    __tablename__ = "product_rates"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    period_minutes = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    display_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "period_minutes": self.period_minutes,
            "price_cents": self.price_cents,
            "display_order": self.display_order,
        }


class ProductUnit(db.Model):
    """
    Serialized physical unit of a tracked product.

    status: available, maintenance, retired. Only "available" units count
    toward capacity. Units referenced by an assignment are never deleted.
    """
    __tablename__ = "product_units"
    __table_args__ = (
        db.UniqueConstraint("product_id", "identifier", name="uq_product_units_product_identifier"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    identifier = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="available", index=True)
    attributes = db.Column(db.JSON, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", back_populates="units")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "identifier": self.identifier,
            "status": self.status,
            "attributes": self.attributes or {},
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
