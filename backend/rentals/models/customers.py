from __future__ import annotations

from ..extensions import db
from rentals.time_utils import to_utc_z


class Customer(db.Model):
    """Store-scoped customer, unique by email within a store."""
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("store_id", "email", name="uq_customers_store_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    email = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    customer_type = db.Column(db.String(16), nullable=False, default="individual")
    company_name = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(120), nullable=True)
    postal_code = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "customer_type": self.customer_type,
            "company_name": self.company_name,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "postal_code": self.postal_code,
            "created_at": to_utc_z(self.created_at),
        }
