# Overview: Public storefront API; customer-facing reservation requests.

"""
Storefront Reservation Routes

- POST /api/storefront/:store_id/reservations - submit a booking request

Amounts in the body (subtotal_cents, deposit_cents, total_cents and per-item
unit_price_cents) are what the customer saw. They are compared with the
server's own computation and never stored.
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import RentalError
from ..services import reservation_service
from ..services.notification_service import dispatch_notifications
from ..validation import ValidationError
from .payloads import error_response, parse_reservation_request, validation_response


storefront_bp = Blueprint("storefront", __name__, url_prefix="/api/storefront")


@storefront_bp.post("/<int:store_id>/reservations")
def create_reservation_route(store_id: int):
    """
    Create a pending reservation.

    Request body:
    {
        "customer": {"email": "...", "first_name": "...", "last_name": "...", ...},
        "start_date": "2026-06-01T09:00:00Z",
        "end_date": "2026-06-04T09:00:00Z",
        "items": [{"product_id": 1, "quantity": 2, "selected_attributes": {"size": "M"}}],
        "delivery": {"option": "delivery", "latitude": 48.85, "longitude": 2.35, ...},
        "subtotal_cents": 18000, "deposit_cents": 5000, "total_cents": 23000,
        "locale": "fr"
    }

    Returns:
        201: {"success": true, "reservation_id", "reservation_number", "payment_url"}
        400: validation or booking-rule error {"error": kind, "error_params"}
        404: store not found
        409: ProductNoLongerAvailable
    """
    try:
        req = parse_reservation_request(store_id, request.get_json(silent=True))
        result = reservation_service.create_reservation(req)
    except ValidationError as e:
        return validation_response(e)
    except RentalError as e:
        return error_response(e)
    except ValueError as e:
        return jsonify({"error": "ValidationError", "message": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create reservation")
        return jsonify({"error": "Internal server error"}), 500

    dispatch_notifications(result.notifications)
    return jsonify(result.to_dict()), 201
