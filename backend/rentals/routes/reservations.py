# Overview: Flask API routes for reservations; store dashboard operations.

"""
Reservation API Routes

Store dashboard endpoints. The store scope comes from the URL (or from the
reservation itself); authentication is handled in front of this service.

- GET   /api/stores/:store_id/availability
- POST  /api/stores/:store_id/reservations           manual booking (confirmed)
- GET   /api/reservations/:id
- PATCH /api/reservations/:id                        edit dates/items
- POST  /api/reservations/:id/status                 status transition
- POST  /api/reservations/:id/cancel
- GET   /api/reservations/items/:item_id/units       assignable units
- PUT   /api/reservations/items/:item_id/units       replace assignments
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..errors import ProductUnavailable, RentalError, StoreNotFound
from ..models import Product, Store
from ..services import availability_service, lifecycle_service, reservation_service
from ..services.activity_service import list_activities
from ..services.notification_service import dispatch_notifications
from ..validation import (
    ValidationError,
    optional_str,
    parse_datetime,
    parse_int,
    parse_window,
    require_json,
)
from .payloads import error_response, parse_items, parse_reservation_request, validation_response


reservations_bp = Blueprint("reservations", __name__, url_prefix="/api")


def _actor_id():
    raw = request.headers.get("X-Actor-Id")
    return int(raw) if raw and raw.isdigit() else None


# =============================================================================
# AVAILABILITY
# =============================================================================

@reservations_bp.get("/stores/<int:store_id>/availability")
def availability_route(store_id: int):
    """
    Query parameters:
        start, end (required): ISO-8601 instants
        product_id (optional, repeatable): defaults to every active product
        quantity (optional): requested quantity, drives the "limited" status
        exclude_reservation_id (optional): ignore this booking's own holdings
    """
    try:
        store = db.session.get(Store, store_id)
        if not store:
            raise StoreNotFound(store_id=store_id)

        start, end = parse_window(request.args, "start", "end")
        quantity = parse_int(request.args.get("quantity", "1"), "quantity", minimum=1)
        exclude = request.args.get("exclude_reservation_id")
        exclude = parse_int(exclude, "exclude_reservation_id") if exclude else None
        product_ids = [parse_int(v, "product_id") for v in request.args.getlist("product_id")]

        if len(product_ids) == 1:
            product = db.session.query(Product).filter_by(id=product_ids[0], store_id=store.id).first()
            if not product:
                raise ProductUnavailable(product_id=product_ids[0])
            result = availability_service.get_product_availability(
                product, start, end, quantity=quantity, exclude_reservation_id=exclude
            )
            return jsonify({"availability": [result.to_dict()]}), 200

        if not product_ids:
            product_ids = [
                p.id for p in db.session.query(Product.id).filter_by(store_id=store.id, is_active=True).all()
            ]
        results = availability_service.check_availability(
            store, product_ids, start, end, exclude_reservation_id=exclude
        )
        return jsonify({"availability": [results[pid].to_dict() for pid in sorted(results)]}), 200

    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute availability")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# MANUAL CREATION / READ / EDIT
# =============================================================================

@reservations_bp.post("/stores/<int:store_id>/reservations")
def create_manual_reservation_route(store_id: int):
    """
    Create a confirmed reservation from the dashboard.

    Request body: same shape as the storefront request, plus
        customer_id (instead of customer), internal_notes,
        send_confirmation_email, items[].price_override_cents and custom
        items {name, unit_price_cents, deposit_per_unit_cents, quantity}.

    Booking-rule violations come back as "warnings" rather than errors.
    """
    try:
        payload = require_json(request.get_json(silent=True))
        customer_id = payload.get("customer_id")
        customer_id = parse_int(customer_id, "customer_id", minimum=1) if customer_id is not None else None
        if customer_id is None and payload.get("customer") is None:
            raise ValidationError("customer or customer_id required")

        req = parse_reservation_request(store_id, payload, allow_custom=True)
        result = reservation_service.create_manual_reservation(
            req,
            customer_id=customer_id,
            internal_notes=optional_str(payload.get("internal_notes"), "internal_notes"),
            send_confirmation=bool(payload.get("send_confirmation_email")),
            actor_id=_actor_id(),
        )
    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except ValueError as e:
        return jsonify({"error": "ValidationError", "message": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create manual reservation")
        return jsonify({"error": "Internal server error"}), 500

    dispatch_notifications(result.notifications)
    return jsonify(result.to_dict()), 201


@reservations_bp.get("/reservations/<int:reservation_id>")
def get_reservation_route(reservation_id: int):
    try:
        reservation = reservation_service.get_reservation(reservation_id)
        body = reservation.to_dict()
        body["activities"] = [a.to_dict() for a in list_activities(reservation.id)]
        return jsonify({"reservation": body}), 200
    except RentalError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load reservation")
        return jsonify({"error": "Internal server error"}), 500


@reservations_bp.patch("/reservations/<int:reservation_id>")
def update_reservation_route(reservation_id: int):
    """
    Edit a reservation that is not completed.

    Request body (all optional):
    {
        "start_date": "...", "end_date": "...",
        "items": [...]   // replaces every line when present
    }
    """
    try:
        payload = require_json(request.get_json(silent=True))
        start = parse_datetime(payload["start_date"], "start_date") if payload.get("start_date") else None
        end = parse_datetime(payload["end_date"], "end_date") if payload.get("end_date") else None
        items = parse_items(payload["items"], allow_custom=True) if "items" in payload else None

        result = reservation_service.update_reservation(
            reservation_id,
            start_date=start,
            end_date=end,
            items=items,
            actor_id=_actor_id(),
        )
        return jsonify({
            "success": True,
            "reservation": result.reservation.to_dict(),
            "warnings": result.warnings,
            "difference_cents": result.difference_cents,
        }), 200

    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except ValueError as e:
        return jsonify({"error": "ValidationError", "message": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update reservation")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# LIFECYCLE
# =============================================================================

@reservations_bp.post("/reservations/<int:reservation_id>/status")
def update_status_route(reservation_id: int):
    """
    Request body: {"status": "confirmed", "rejection_reason": "..."}

    Returns:
        200: {"success": true, "reservation": {...}, "warnings": [...]}
        409: InvalidStatusTransition
    """
    try:
        payload = require_json(request.get_json(silent=True))
        new_status = payload.get("status")
        if new_status not in lifecycle_service.VALID_STATUSES:
            raise ValidationError("status is invalid")

        result = lifecycle_service.update_reservation_status(
            reservation_id,
            new_status,
            rejection_reason=optional_str(payload.get("rejection_reason"), "rejection_reason", 255),
            cancellation_reason=optional_str(payload.get("cancellation_reason"), "cancellation_reason", 255),
            actor_id=_actor_id(),
        )
    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update reservation status")
        return jsonify({"error": "Internal server error"}), 500

    dispatch_notifications(result.notifications)
    return jsonify(result.to_dict()), 200


@reservations_bp.post("/reservations/<int:reservation_id>/cancel")
def cancel_reservation_route(reservation_id: int):
    try:
        payload = request.get_json(silent=True) or {}
        result = lifecycle_service.cancel_reservation(
            reservation_id,
            reason=optional_str(payload.get("reason"), "reason", 255),
            actor_id=_actor_id(),
        )
    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel reservation")
        return jsonify({"error": "Internal server error"}), 500

    dispatch_notifications(result.notifications)
    return jsonify(result.to_dict()), 200


# =============================================================================
# UNIT ASSIGNMENT
# =============================================================================

@reservations_bp.get("/reservations/items/<int:item_id>/units")
def list_units_route(item_id: int):
    try:
        return jsonify(reservation_service.list_assignable_units(item_id)), 200
    except RentalError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list assignable units")
        return jsonify({"error": "Internal server error"}), 500


@reservations_bp.put("/reservations/items/<int:item_id>/units")
def assign_units_route(item_id: int):
    """Request body: {"unit_ids": [3, 7]}; an empty list clears assignments."""
    try:
        payload = require_json(request.get_json(silent=True))
        unit_ids = payload.get("unit_ids")
        if not isinstance(unit_ids, list):
            raise ValidationError("unit_ids must be a list")
        unit_ids = [parse_int(u, "unit_ids", minimum=1) for u in unit_ids]

        item = reservation_service.assign_units_to_item(item_id, unit_ids, actor_id=_actor_id())
        return jsonify({"success": True, "item": item.to_dict()}), 200

    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to assign units")
        return jsonify({"error": "Internal server error"}), 500
