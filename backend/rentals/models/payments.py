from __future__ import annotations

from ..extensions import db
from rentals.time_utils import to_utc_z


class Payment(db.Model):
    """
    One monetary movement on a reservation.

    TYPES:
    - rental: rental fee charge
    - deposit: deposit collected (cash/card)
    - deposit_return: deposit paid back to the customer
    - damage: damage charge against the deposit
    - deposit_hold: provider authorization (funds reserved, not charged)
    - deposit_capture: captured part of a hold
    - adjustment: manual correction, the only type that may be negative

    Rows are immutable except the hold row moving authorized -> completed
    (capture) or authorized -> cancelled (release). Refunds are new rows.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_reservation_type_status", "reservation_id", "type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservations.id"), nullable=False, index=True)

    type = db.Column(db.String(32), nullable=False)
    method = db.Column(db.String(32), nullable=False)  # cash, card, transfer, check, other, provider
    status = db.Column(db.String(16), nullable=False, default="completed", index=True)

    # Signed amount in cents
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    captured_amount_cents = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    # Provider references
    provider_payment_intent_id = db.Column(db.String(128), nullable=True, index=True)
    provider_charge_id = db.Column(db.String(128), nullable=True)
    provider_refund_id = db.Column(db.String(128), nullable=True)
    provider_checkout_session_id = db.Column(db.String(128), nullable=True)
    refunded_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)

    paid_at = db.Column(db.DateTime, nullable=True)
    created_by_actor_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    reservation = db.relationship("Reservation", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reservation_id": self.reservation_id,
            "type": self.type,
            "method": self.method,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "captured_amount_cents": self.captured_amount_cents,
            "notes": self.notes,
            "provider_payment_intent_id": self.provider_payment_intent_id,
            "provider_charge_id": self.provider_charge_id,
            "provider_refund_id": self.provider_refund_id,
            "provider_checkout_session_id": self.provider_checkout_session_id,
            "refunded_payment_id": self.refunded_payment_id,
            "paid_at": to_utc_z(self.paid_at),
            "created_by_actor_id": self.created_by_actor_id,
            "created_at": to_utc_z(self.created_at),
        }
