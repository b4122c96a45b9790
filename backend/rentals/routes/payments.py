# Overview: Flask API routes for the reservation payment ledger and deposit holds.

"""
Payment & Deposit API Routes

- GET    /api/reservations/:id/payments              rows + derived summary
- POST   /api/reservations/:id/payments              manual payment
- DELETE /api/payments/:id                           manual rows only
- POST   /api/reservations/:id/deposit/return
- POST   /api/reservations/:id/deposit/damage
- POST   /api/reservations/:id/deposit/card          card saved for a hold
- POST   /api/reservations/:id/deposit/hold          authorize
- POST   /api/reservations/:id/deposit/capture       capture (reason required)
- POST   /api/reservations/:id/deposit/release
- POST   /api/reservations/:id/refunds               provider refund
- POST   /api/checkout/:session_id/complete          paid checkout, confirms a pending reservation
- POST   /api/checkout/:session_id/expire            abandoned checkout

Amounts are integer cents.
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import RentalError
from ..services import lifecycle_service, payment_service
from ..services.notification_service import dispatch_notifications
from ..validation import (
    ValidationError,
    optional_str,
    parse_cents,
    parse_datetime,
    parse_int,
    require_fields,
    require_json,
)
from .payloads import error_response, validation_response


payments_bp = Blueprint("payments", __name__, url_prefix="/api")


def _actor_id():
    raw = request.headers.get("X-Actor-Id")
    return int(raw) if raw and raw.isdigit() else None


def _handle(action: str, func):
    """Run a ledger call and map its errors the way every route here does."""
    try:
        return func()
    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except ValueError as e:
        return jsonify({"error": "ValidationError", "message": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to %s", action)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# LEDGER
# =============================================================================

@payments_bp.get("/reservations/<int:reservation_id>/payments")
def list_payments_route(reservation_id: int):
    def _run():
        payments = payment_service.list_payments(reservation_id)
        return jsonify({
            "payments": [p.to_dict() for p in payments],
            "summary": payment_service.get_payment_summary(reservation_id),
        }), 200

    return _handle("list payments", _run)


@payments_bp.post("/reservations/<int:reservation_id>/payments")
def record_payment_route(reservation_id: int):
    """
    Request body:
    {
        "type": "rental",          // rental, deposit, deposit_return, damage, adjustment
        "amount_cents": 12000,     // negative only for adjustment
        "method": "cash",          // cash, card, transfer, check, other
        "paid_at": "...",          // optional
        "notes": "..."             // optional
    }
    """
    def _run():
        payload = require_json(request.get_json(silent=True))
        require_fields(payload, "type", "amount_cents", "method")
        payment = payment_service.record_payment(
            reservation_id,
            payment_type=payload["type"],
            amount_cents=parse_cents(payload["amount_cents"], "amount_cents", allow_negative=True),
            method=payload["method"],
            paid_at=parse_datetime(payload["paid_at"], "paid_at") if payload.get("paid_at") else None,
            notes=optional_str(payload.get("notes"), "notes"),
            actor_id=_actor_id(),
        )
        return jsonify({"success": True, "payment": payment.to_dict()}), 201

    return _handle("record payment", _run)


@payments_bp.delete("/payments/<int:payment_id>")
def delete_payment_route(payment_id: int):
    def _run():
        payment_service.delete_payment(payment_id, actor_id=_actor_id())
        return jsonify({"success": True}), 200

    return _handle("delete payment", _run)


# =============================================================================
# DEPOSIT (MANUAL)
# =============================================================================

@payments_bp.post("/reservations/<int:reservation_id>/deposit/return")
def return_deposit_route(reservation_id: int):
    def _run():
        payload = require_json(request.get_json(silent=True))
        require_fields(payload, "amount_cents", "method")
        payment = payment_service.return_deposit(
            reservation_id,
            amount_cents=parse_cents(payload["amount_cents"], "amount_cents"),
            method=payload["method"],
            notes=optional_str(payload.get("notes"), "notes"),
            actor_id=_actor_id(),
        )
        return jsonify({"success": True, "payment": payment.to_dict()}), 201

    return _handle("return deposit", _run)


@payments_bp.post("/reservations/<int:reservation_id>/deposit/damage")
def record_damage_route(reservation_id: int):
    def _run():
        payload = require_json(request.get_json(silent=True))
        require_fields(payload, "amount_cents", "method")
        payment = payment_service.record_damage(
            reservation_id,
            amount_cents=parse_cents(payload["amount_cents"], "amount_cents"),
            method=payload["method"],
            notes=optional_str(payload.get("notes"), "notes") or "",
            actor_id=_actor_id(),
        )
        return jsonify({"success": True, "payment": payment.to_dict()}), 201

    return _handle("record damage", _run)


# =============================================================================
# DEPOSIT HOLDS (PROVIDER)
# =============================================================================

@payments_bp.post("/reservations/<int:reservation_id>/deposit/card")
def save_deposit_card_route(reservation_id: int):
    def _run():
        payload = require_json(request.get_json(silent=True))
        require_fields(payload, "provider_customer_id", "payment_method_id")
        reservation = lifecycle_service.save_deposit_card(
            reservation_id,
            provider_customer_id=str(payload["provider_customer_id"]),
            payment_method_id=str(payload["payment_method_id"]),
            actor_id=_actor_id(),
        )
        return jsonify({"success": True, "deposit_status": reservation.deposit_status}), 200

    return _handle("save deposit card", _run)


@payments_bp.post("/reservations/<int:reservation_id>/deposit/hold")
def create_deposit_hold_route(reservation_id: int):
    def _run():
        reservation = lifecycle_service.create_deposit_hold(reservation_id, actor_id=_actor_id())
        return jsonify({
            "success": True,
            "deposit_status": reservation.deposit_status,
            "payment_intent_id": reservation.deposit_payment_intent_id,
        }), 200

    return _handle("create deposit hold", _run)


@payments_bp.post("/reservations/<int:reservation_id>/deposit/capture")
def capture_deposit_route(reservation_id: int):
    """Request body: {"amount_cents": 3000, "reason": "Broken lens"}"""
    def _run():
        payload = require_json(request.get_json(silent=True))
        require_fields(payload, "amount_cents")
        reservation = lifecycle_service.capture_deposit_hold(
            reservation_id,
            parse_cents(payload["amount_cents"], "amount_cents"),
            payload.get("reason") or "",
            actor_id=_actor_id(),
        )
        return jsonify({"success": True, "deposit_status": reservation.deposit_status}), 200

    return _handle("capture deposit", _run)


@payments_bp.post("/reservations/<int:reservation_id>/deposit/release")
def release_deposit_route(reservation_id: int):
    def _run():
        reservation = lifecycle_service.release_deposit_hold(reservation_id, actor_id=_actor_id())
        return jsonify({"success": True, "deposit_status": reservation.deposit_status}), 200

    return _handle("release deposit", _run)


# =============================================================================
# REFUNDS
# =============================================================================

@payments_bp.post("/reservations/<int:reservation_id>/refunds")
def refund_route(reservation_id: int):
    """Request body: {"payment_id": 12, "amount_cents": 5000 (optional), "reason": "..."}"""
    def _run():
        payload = require_json(request.get_json(silent=True))
        require_fields(payload, "payment_id")
        payment_id = parse_int(payload["payment_id"], "payment_id", minimum=1)
        amount = payload.get("amount_cents")
        row = payment_service.process_provider_refund(
            payment_id,
            amount_cents=parse_cents(amount, "amount_cents") if amount is not None else None,
            reason=optional_str(payload.get("reason"), "reason", 255),
            reservation_id=reservation_id,
            actor_id=_actor_id(),
        )
        return jsonify({"success": True, "payment": row.to_dict()}), 201

    return _handle("refund payment", _run)


# =============================================================================
# ONLINE CHECKOUT (PROVIDER CALLBACKS)
# =============================================================================

@payments_bp.post("/checkout/<session_id>/complete")
def complete_checkout_route(session_id: str):
    """
    Request body (all optional):
    {
        "amount_minor": 30000,             // amount the provider collected
        "payment_intent_id": "pi_...",
        "charge_id": "ch_...",
        "provider_customer_id": "cus_...", // with payment_method_id, saves the card
        "payment_method_id": "pm_..."
    }

    Returns:
        200: {"success": true, "reservation": {...}}
        404: PaymentNotFound
        409: InvalidPaymentStatus (checkout already expired)
    """
    try:
        payload = request.get_json(silent=True) or {}
        amount = payload.get("amount_minor")
        result = lifecycle_service.complete_checkout_payment(
            session_id,
            amount_minor=parse_int(amount, "amount_minor", minimum=0) if amount is not None else None,
            payment_intent_id=optional_str(payload.get("payment_intent_id"), "payment_intent_id", 128),
            charge_id=optional_str(payload.get("charge_id"), "charge_id", 128),
            provider_customer_id=optional_str(payload.get("provider_customer_id"), "provider_customer_id", 128),
            payment_method_id=optional_str(payload.get("payment_method_id"), "payment_method_id", 128),
        )
    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete checkout %s", session_id)
        return jsonify({"error": "Internal server error"}), 500

    dispatch_notifications(result.notifications)
    return jsonify(result.to_dict()), 200


@payments_bp.post("/checkout/<session_id>/expire")
def expire_checkout_route(session_id: str):
    def _run():
        payment = lifecycle_service.expire_checkout_payment(session_id)
        return jsonify({"success": True, "payment": payment.to_dict()}), 200

    return _handle("expire checkout", _run)
