from __future__ import annotations

from ..extensions import db
from rentals.time_utils import to_utc_z


class Store(db.Model):
    """
    A rental store and its booking configuration.

    Settings that shape the engine's decisions are plain columns (tax,
    availability, booking rules) or JSON documents where the original shape
    is nested (business hours, delivery).

    business_hours:
        {
            "enabled": true,
            "schedule": {"0": {"isOpen": false, "openTime": "09:00", "closeTime": "18:00"}, ...},
            "closurePeriods": [{"startDate": "2026-12-24", "endDate": "2026-12-26", "name": "..."}]
        }
        Schedule keys are weekdays with 0 = Sunday.

    delivery_settings:
        {
            "enabled": true, "mode": "optional" | "required" | "included",
            "pricePerKmCents": 150, "roundTrip": false, "minimumFeeCents": 500,
            "maximumDistanceKm": 50, "freeDeliveryThresholdCents": null
        }
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("slug", name="uq_stores_slug"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(120), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    timezone = db.Column(db.String(64), nullable=False, default="UTC")
    currency = db.Column(db.String(3), nullable=False, default="EUR")

    # Tax (basis points, e.g. 2000 = 20%)
    tax_enabled = db.Column(db.Boolean, nullable=False, default=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_display_mode = db.Column(db.String(16), nullable=False, default="inclusive")

    # Availability / booking rules
    pending_blocks_availability = db.Column(db.Boolean, nullable=False, default=True)
    advance_notice_minutes = db.Column(db.Integer, nullable=False, default=0)
    min_rental_minutes = db.Column(db.Integer, nullable=False, default=0)
    max_rental_minutes = db.Column(db.Integer, nullable=True)
    business_hours = db.Column(db.JSON, nullable=True)

    # Delivery
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    delivery_settings = db.Column(db.JSON, nullable=True)

    # "request" (store accepts manually) or "payment" (pay online at checkout)
    reservation_mode = db.Column(db.String(16), nullable=False, default="request")
    online_payment_percent = db.Column(db.Integer, nullable=False, default=100)
    payment_account_id = db.Column(db.String(128), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def blocking_statuses(self) -> tuple[str, ...]:
        if self.pending_blocks_availability:
            return ("pending", "confirmed", "ongoing")
        return ("confirmed", "ongoing")

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "email": self.email,
            "timezone": self.timezone,
            "currency": self.currency,
            "tax_enabled": self.tax_enabled,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_display_mode": self.tax_display_mode,
            "pending_blocks_availability": self.pending_blocks_availability,
            "advance_notice_minutes": self.advance_notice_minutes,
            "min_rental_minutes": self.min_rental_minutes,
            "max_rental_minutes": self.max_rental_minutes,
            "business_hours": self.business_hours,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "delivery_settings": self.delivery_settings,
            "reservation_mode": self.reservation_mode,
            "online_payment_percent": self.online_payment_percent,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
