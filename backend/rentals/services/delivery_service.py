# Overview: Server-side delivery distance and fee computation.

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..errors import (
    DeliveryAddressInvalid,
    DeliveryNotEnabled,
    DeliveryRequired,
    DeliveryTooFar,
)
from .tax_service import round_cents


EARTH_RADIUS_KM = 6371.0

MODE_OPTIONAL = "optional"
MODE_REQUIRED = "required"
MODE_INCLUDED = "included"

OPTION_PICKUP = "pickup"
OPTION_DELIVERY = "delivery"


@dataclass
class DeliveryQuote:
    option: str
    fee_cents: int = 0
    distance_km: Optional[Decimal] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def calculate_delivery_fee(distance_km: float, settings: dict, subtotal_cents: int) -> int:
    """
    Fee in cents for a delivery distance.

    distanceTiers (when configured) take precedence over pricePerKmCents:
        [{"maxDistanceKm": 5, "feeCents": 500}, {"maxDistanceKm": 15, "feeCents": 900}]
    Round trips double the per-km fee. minimumFeeCents is a floor.
    Orders at or above freeDeliveryThresholdCents deliver for free.
    """
    threshold = settings.get("freeDeliveryThresholdCents")
    if threshold is not None and subtotal_cents >= threshold:
        return 0

    tiers = sorted(settings.get("distanceTiers") or [], key=lambda t: t["maxDistanceKm"])
    fee = None
    for tier in tiers:
        if distance_km <= tier["maxDistanceKm"]:
            fee = int(tier["feeCents"])
            break

    if fee is None:
        per_km = Decimal(settings.get("pricePerKmCents") or 0)
        multiplier = 2 if settings.get("roundTrip") else 1
        fee = round_cents(per_km * Decimal(str(distance_km)) * multiplier)

    minimum = settings.get("minimumFeeCents") or 0
    return max(fee, minimum)


def quote_delivery(store, delivery: Optional[dict], subtotal_cents: int) -> DeliveryQuote:
    """
    Validate the customer's delivery choice and price it server-side.

    `delivery` is {"option": "pickup"|"delivery", "latitude", "longitude",
    "address", "city", "postal_code", "country"}; any client-submitted fee is
    ignored.
    """
    settings = store.delivery_settings or {}
    enabled = bool(settings.get("enabled"))
    mode = settings.get("mode") or MODE_OPTIONAL
    option = (delivery or {}).get("option") or OPTION_PICKUP

    if enabled and mode in (MODE_REQUIRED, MODE_INCLUDED) and option != OPTION_DELIVERY:
        raise DeliveryRequired()

    if option != OPTION_DELIVERY:
        return DeliveryQuote(option=OPTION_PICKUP)

    if not enabled:
        raise DeliveryNotEnabled()

    lat = delivery.get("latitude")
    lon = delivery.get("longitude")
    try:
        lat = float(lat)
        lon = float(lon)
    except (TypeError, ValueError):
        raise DeliveryAddressInvalid()
    if not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        raise DeliveryAddressInvalid()

    if store.latitude is None or store.longitude is None:
        raise DeliveryNotEnabled("Store has no coordinates")

    distance = haversine_km(store.latitude, store.longitude, lat, lon)
    maximum = settings.get("maximumDistanceKm")
    if maximum is not None and distance > maximum:
        raise DeliveryTooFar(max_distance_km=maximum, distance_km=round(distance, 2))

    fee = 0 if mode == MODE_INCLUDED else calculate_delivery_fee(distance, settings, subtotal_cents)

    return DeliveryQuote(
        option=OPTION_DELIVERY,
        fee_cents=fee,
        distance_km=Decimal(str(round(distance, 2))),
        address=delivery.get("address"),
        city=delivery.get("city"),
        postal_code=delivery.get("postal_code"),
        country=delivery.get("country"),
        latitude=lat,
        longitude=lon,
    )
