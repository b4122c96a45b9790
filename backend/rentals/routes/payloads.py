# Overview: JSON body -> service request objects for reservation routes.

from __future__ import annotations

from flask import jsonify

from ..errors import RentalError, http_status_for
from ..services.reservation_service import CustomerInput, ItemInput, ReservationRequest
from ..validation import (
    ValidationError,
    optional_str,
    parse_cents,
    parse_datetime,
    parse_int,
    require_fields,
    require_json,
)


def error_response(exc: RentalError):
    return jsonify(exc.to_dict()), http_status_for(exc)


def validation_response(exc: ValidationError):
    return jsonify({"error": "ValidationError", "message": str(exc)}), 400


def _optional_cents(payload: dict, field: str, *, allow_negative: bool = False):
    if payload.get(field) is None:
        return None
    return parse_cents(payload[field], field, allow_negative=allow_negative)


def _optional_datetime(payload: dict, field: str):
    if payload.get(field) in (None, ""):
        return None
    return parse_datetime(payload[field], field)


def parse_customer(data) -> CustomerInput:
    data = require_json(data)
    require_fields(data, "email", "first_name", "last_name")
    email = optional_str(data.get("email"), "email", 255)
    if "@" not in email:
        raise ValidationError("email is invalid")
    return CustomerInput(
        email=email,
        first_name=optional_str(data.get("first_name"), "first_name", 120),
        last_name=optional_str(data.get("last_name"), "last_name", 120),
        phone=optional_str(data.get("phone"), "phone", 64),
        customer_type=optional_str(data.get("customer_type"), "customer_type", 16) or "individual",
        company_name=optional_str(data.get("company_name"), "company_name", 255),
        address=optional_str(data.get("address"), "address", 255),
        city=optional_str(data.get("city"), "city", 120),
        postal_code=optional_str(data.get("postal_code"), "postal_code", 32),
    )


def parse_item(data, *, allow_custom: bool = False) -> ItemInput:
    data = require_json(data)
    quantity = parse_int(data.get("quantity", 1), "quantity", minimum=1)
    selected = data.get("selected_attributes")
    if selected is not None and not isinstance(selected, dict):
        raise ValidationError("selected_attributes must be an object")

    item = ItemInput(
        quantity=quantity,
        start_date=_optional_datetime(data, "start_date"),
        end_date=_optional_datetime(data, "end_date"),
        selected_attributes=selected,
        client_unit_price_cents=_optional_cents(data, "unit_price_cents") if data.get("product_id") else None,
    )

    if data.get("product_id") is not None:
        item.product_id = parse_int(data["product_id"], "product_id", minimum=1)
        if allow_custom:
            item.price_override_cents = _optional_cents(data, "price_override_cents")
        return item

    if not allow_custom:
        raise ValidationError("product_id required")
    require_fields(data, "name", "unit_price_cents")
    item.name = optional_str(data.get("name"), "name", 255)
    item.description = optional_str(data.get("description"), "description")
    item.unit_price_cents = parse_cents(data["unit_price_cents"], "unit_price_cents")
    item.deposit_per_unit_cents = _optional_cents(data, "deposit_per_unit_cents") or 0
    item.pricing_mode = data.get("pricing_mode") or "day"
    if item.pricing_mode not in ("hour", "day", "week"):
        raise ValidationError("pricing_mode must be hour, day or week")
    return item


def parse_items(data, *, allow_custom: bool = False) -> list[ItemInput]:
    if not isinstance(data, list) or not data:
        raise ValidationError("items must be a non-empty list")
    return [parse_item(entry, allow_custom=allow_custom) for entry in data]


def parse_reservation_request(store_id: int, payload, *, allow_custom: bool = False) -> ReservationRequest:
    payload = require_json(payload)
    delivery = payload.get("delivery")
    if delivery is not None and not isinstance(delivery, dict):
        raise ValidationError("delivery must be an object")

    customer = payload.get("customer")
    return ReservationRequest(
        store_id=store_id,
        customer=parse_customer(customer) if customer is not None or not allow_custom else None,
        items=parse_items(payload.get("items"), allow_custom=allow_custom),
        start_date=_optional_datetime(payload, "start_date"),
        end_date=_optional_datetime(payload, "end_date"),
        customer_notes=optional_str(payload.get("customer_notes"), "customer_notes", 2000),
        delivery=delivery,
        locale=optional_str(payload.get("locale"), "locale", 8),
        subtotal_cents=_optional_cents(payload, "subtotal_cents"),
        deposit_cents=_optional_cents(payload, "deposit_cents"),
        total_cents=_optional_cents(payload, "total_cents"),
    )
