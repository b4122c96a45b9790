# Overview: Service-layer pricing; computes authoritative rental prices from product definitions.

"""
Pricing Module

Two mutually exclusive strategies, chosen per product:

DISCOUNT TIERS (pricing_mode = hour | day | week):
    duration  = ceil((end - start) / period), minimum 1
    tier      = tier with the greatest min_duration <= duration
    effective = base * (1 - discount_percent / 100)
    subtotal  = effective * duration * quantity

RATE TABLE (base_period_minutes > 0):
    The base price per base period plus every ProductRate form a set of
    fixed-length blocks. The subtotal is the cheapest combination of blocks
    whose total length covers the requested minutes (ties: fewest blocks).
    originalSubtotal = ceil(minutes / base_period) * base_price * quantity

All money is integer cents; intermediate math is Decimal, rounded half-up once
at the end. Client-submitted prices never enter this module.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from functools import reduce
from typing import Optional, Sequence

from .tax_service import TaxBreakdown, round_cents


PRICING_MODES = ("hour", "day", "week")
PERIOD_SECONDS = {
    "hour": 60 * 60,
    "day": 60 * 60 * 24,
    "week": 60 * 60 * 24 * 7,
}
PERIOD_LABELS = {
    "hour": ("hour", "hours"),
    "day": ("day", "days"),
    "week": ("week", "weeks"),
}

MAX_DISCOUNT_PERCENT = Decimal("99")


class PricingError(ValueError):
    """Invalid pricing configuration."""


@dataclass(frozen=True)
class Tier:
    min_duration: int
    discount_percent: Decimal
    id: Optional[int] = None


@dataclass(frozen=True)
class Rate:
    period_minutes: int
    price_cents: int
    id: Optional[int] = None


@dataclass
class PriceResult:
    subtotal_cents: int
    deposit_cents: int
    base_price_cents: int
    effective_price_cents: int
    duration: int
    duration_unit: str
    quantity: int
    original_subtotal_cents: int
    savings_cents: int
    savings_percent: Decimal
    discount_percent: Optional[Decimal] = None
    tier: Optional[Tier] = None
    applied_rate: Optional[Rate] = None
    rate_plan: list = field(default_factory=list)

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.deposit_cents

    @property
    def unit_price_cents(self) -> int:
        """Price stored on the line item for one unit."""
        if self.duration_unit == "minute":
            return round_cents(Decimal(self.subtotal_cents) / max(self.quantity, 1))
        return self.effective_price_cents


# =============================================================================
# DURATION
# =============================================================================

def calculate_duration(start: datetime, end: datetime, pricing_mode: str) -> int:
    """Billable periods between two instants; any partial period is a full period."""
    seconds = PERIOD_SECONDS.get(pricing_mode, PERIOD_SECONDS["day"])
    diff = (end - start).total_seconds()
    return max(1, math.ceil(diff / seconds))


def calculate_duration_minutes(start: datetime, end: datetime) -> int:
    diff = (end - start).total_seconds()
    return max(1, math.ceil(diff / 60))


# =============================================================================
# DISCOUNT TIERS
# =============================================================================

def tiers_for_product(product) -> list[Tier]:
    return [
        Tier(min_duration=t.min_duration, discount_percent=Decimal(t.discount_percent), id=t.id)
        for t in product.tiers
    ]


def sort_tiers(tiers: Sequence[Tier]) -> list[Tier]:
    return sorted(tiers, key=lambda t: t.min_duration)


def find_applicable_tier(tiers: Sequence[Tier], duration: int) -> Optional[Tier]:
    """Tier with the greatest min_duration the duration qualifies for."""
    candidates = [t for t in tiers if t.min_duration and t.min_duration > 0]
    for tier in sorted(candidates, key=lambda t: t.min_duration, reverse=True):
        if duration >= tier.min_duration:
            return tier
    return None


def calculate_effective_price(base_price_cents: int, tier: Optional[Tier]) -> Decimal:
    """Unrounded per-period price after the tier discount."""
    if tier is None:
        return Decimal(base_price_cents)
    return Decimal(base_price_cents) * (Decimal(1) - Decimal(tier.discount_percent) / Decimal(100))


def _savings_percent(savings_cents: int, original_cents: int) -> Decimal:
    if original_cents <= 0:
        return Decimal("0")
    return (Decimal(savings_cents) * 100 / Decimal(original_cents)).quantize(Decimal("0.01"))


def calculate_rental_price(
    *,
    base_price_cents: int,
    deposit_cents: int,
    tiers: Sequence[Tier],
    duration: int,
    quantity: int,
    pricing_mode: str = "day",
) -> PriceResult:
    tier = find_applicable_tier(tiers, duration)
    effective = calculate_effective_price(base_price_cents, tier)

    original = base_price_cents * duration * quantity
    subtotal = round_cents(effective * duration * quantity)
    savings = original - subtotal

    return PriceResult(
        subtotal_cents=subtotal,
        deposit_cents=deposit_cents * quantity,
        base_price_cents=base_price_cents,
        effective_price_cents=round_cents(effective),
        duration=duration,
        duration_unit=pricing_mode,
        quantity=quantity,
        original_subtotal_cents=original,
        savings_cents=savings,
        savings_percent=_savings_percent(savings, original),
        discount_percent=Decimal(tier.discount_percent) if tier else None,
        tier=tier,
    )


def validate_pricing_tiers(tiers: Sequence[Tier]) -> None:
    """
    Raise PricingError unless the tier set is well formed.

    Rules:
    - every min_duration is unique and >= 1
    - 0 <= discount_percent <= 99
    - discounts never shrink as min_duration grows, so the effective price
      is non-increasing in duration
    """
    durations = [t.min_duration for t in tiers]
    if len(durations) != len(set(durations)):
        raise PricingError("Each tier must have a unique minimum duration")

    for tier in tiers:
        if tier.min_duration is None or tier.min_duration < 1:
            raise PricingError("Minimum duration must be at least 1")
        discount = Decimal(tier.discount_percent)
        if discount < 0 or discount > MAX_DISCOUNT_PERCENT:
            raise PricingError("Discount must be between 0 and 99%")

    ordered = sort_tiers(tiers)
    for previous, current in zip(ordered, ordered[1:]):
        if Decimal(current.discount_percent) < Decimal(previous.discount_percent):
            raise PricingError(
                f"Tier {current.min_duration}+ discounts less than tier {previous.min_duration}+"
            )


def get_available_durations(tiers: Sequence[Tier], enforce_strict_tiers: bool) -> Optional[list[int]]:
    """
    Allowed durations under package pricing: 1 plus every tier threshold.
    None means any duration is allowed.
    """
    if not enforce_strict_tiers or not tiers:
        return None
    return sorted({1, *(t.min_duration for t in tiers)})


def snap_to_nearest_tier(duration: int, available_durations: Sequence[int]) -> int:
    """Round a duration up to the next allowed bracket (or the largest one)."""
    for value in available_durations:
        if value >= duration:
            return value
    return available_durations[-1]


def tier_label(tier: Optional[Tier], pricing_mode: str) -> Optional[str]:
    if tier is None:
        return None
    singular, plural = PERIOD_LABELS.get(pricing_mode, PERIOD_LABELS["day"])
    return f"{tier.min_duration}+ {plural if tier.min_duration > 1 else singular}"


# =============================================================================
# RATE TABLE
# =============================================================================

@dataclass
class RatePlan:
    total_cost_cents: int
    covered_minutes: int
    plan: list  # [(Rate, quantity)]


def rates_for_product(product) -> list[Rate]:
    return [Rate(period_minutes=r.period_minutes, price_cents=r.price_cents, id=r.id) for r in product.rates]


def calculate_best_rate(duration_minutes: int, rates: Sequence[Rate]) -> RatePlan:
    """
    Cheapest multiset of rate blocks covering duration_minutes.

    Unbounded-knapsack style DP over a grid whose step is the gcd of all
    periods. Coverage may overshoot by up to one longest block, since a
    longer block is sometimes cheaper than the exact fit.
    """
    normalized = sorted(
        (r for r in rates if r.period_minutes > 0 and r.price_cents >= 0),
        key=lambda r: r.period_minutes,
    )
    if not normalized:
        return RatePlan(total_cost_cents=0, covered_minutes=duration_minutes, plan=[])

    target = max(1, math.ceil(duration_minutes))
    scale = reduce(math.gcd, (r.period_minutes for r in normalized))
    steps = [max(1, r.period_minutes // scale) for r in normalized]
    target_steps = max(1, math.ceil(target / scale))
    max_steps = target_steps + max(steps)

    inf = float("inf")
    cost = [inf] * (max_steps + 1)
    segments = [inf] * (max_steps + 1)
    prev_step = [-1] * (max_steps + 1)
    prev_rate = [-1] * (max_steps + 1)
    cost[0] = 0
    segments[0] = 0

    for step in range(1, max_steps + 1):
        for idx, rate in enumerate(normalized):
            source = step - steps[idx]
            if source < 0 or cost[source] == inf:
                continue
            candidate = cost[source] + rate.price_cents
            candidate_segments = segments[source] + 1
            if candidate < cost[step] or (candidate == cost[step] and candidate_segments < segments[step]):
                cost[step] = candidate
                segments[step] = candidate_segments
                prev_step[step] = source
                prev_rate[step] = idx

    best = -1
    for step in range(target_steps, max_steps + 1):
        if cost[step] == inf:
            continue
        if best == -1 or cost[step] < cost[best]:
            best = step
        elif cost[step] == cost[best] and segments[step] < segments[best]:
            best = step

    if best == -1:
        fallback = normalized[0]
        count = math.ceil(target / fallback.period_minutes)
        return RatePlan(
            total_cost_cents=count * fallback.price_cents,
            covered_minutes=count * fallback.period_minutes,
            plan=[(fallback, count)],
        )

    quantities = [0] * len(normalized)
    cursor = best
    while cursor > 0 and prev_rate[cursor] >= 0:
        quantities[prev_rate[cursor]] += 1
        cursor = prev_step[cursor]

    plan = [(rate, qty) for rate, qty in zip(normalized, quantities) if qty > 0]
    return RatePlan(total_cost_cents=int(cost[best]), covered_minutes=best * scale, plan=plan)


def calculate_rate_based_price(
    *,
    base_price_cents: int,
    base_period_minutes: int,
    rates: Sequence[Rate],
    deposit_cents: int,
    duration_minutes: int,
    quantity: int,
) -> PriceResult:
    base_rate = Rate(period_minutes=base_period_minutes, price_cents=base_price_cents)
    all_rates = [base_rate, *rates]
    best = calculate_best_rate(duration_minutes, all_rates)

    per_item = best.total_cost_cents
    floor = min(r.price_cents for r in all_rates if r.period_minutes > 0)
    per_item = max(per_item, floor)
    subtotal = per_item * quantity

    minutes = max(1, math.ceil(duration_minutes))
    original = math.ceil(minutes / base_period_minutes) * base_price_cents * quantity
    savings = original - subtotal

    dominant = None
    if best.plan:
        dominant = sorted(best.plan, key=lambda entry: entry[1], reverse=True)[0][0]

    return PriceResult(
        subtotal_cents=subtotal,
        deposit_cents=deposit_cents * quantity,
        base_price_cents=base_price_cents,
        effective_price_cents=per_item,
        duration=minutes,
        duration_unit="minute",
        quantity=quantity,
        original_subtotal_cents=original,
        savings_cents=savings,
        savings_percent=_savings_percent(savings, original),
        applied_rate=dominant,
        rate_plan=[
            {"periodMinutes": rate.period_minutes, "priceCents": rate.price_cents, "quantity": qty}
            for rate, qty in best.plan
        ],
    )


def get_available_duration_minutes(rates: Sequence[Rate], enforce_strict_tiers: bool) -> Optional[list[int]]:
    if not enforce_strict_tiers or not rates:
        return None
    return sorted({r.period_minutes for r in rates if r.period_minutes > 0})


def snap_to_nearest_rate_period(duration_minutes: int, available_periods: Sequence[int]) -> int:
    for period in available_periods:
        if period >= duration_minutes:
            return period
    return available_periods[-1]


# =============================================================================
# PRODUCT ENTRY POINT
# =============================================================================

def price_product(product, start: datetime, end: datetime, quantity: int) -> PriceResult:
    """
    Authoritative price for `quantity` units of a product over [start, end).

    Strict-tier products snap the duration up to the next allowed bracket.
    """
    if product.is_rate_based:
        rates = rates_for_product(product)
        minutes = calculate_duration_minutes(start, end)
        allowed = get_available_duration_minutes(
            [Rate(product.base_period_minutes, product.base_price_cents), *rates],
            product.enforce_strict_tiers,
        )
        if allowed:
            minutes = snap_to_nearest_rate_period(minutes, allowed)
        return calculate_rate_based_price(
            base_price_cents=product.base_price_cents,
            base_period_minutes=product.base_period_minutes,
            rates=rates,
            deposit_cents=product.deposit_cents,
            duration_minutes=minutes,
            quantity=quantity,
        )

    mode = product.pricing_mode if product.pricing_mode in PRICING_MODES else "day"
    tiers = tiers_for_product(product)
    duration = calculate_duration(start, end, mode)
    allowed = get_available_durations(tiers, product.enforce_strict_tiers)
    if allowed:
        duration = snap_to_nearest_tier(duration, allowed)
    return calculate_rental_price(
        base_price_cents=product.base_price_cents,
        deposit_cents=product.deposit_cents,
        tiers=tiers,
        duration=duration,
        quantity=quantity,
        pricing_mode=mode,
    )


def generate_pricing_breakdown(
    result: PriceResult,
    *,
    tax: Optional[TaxBreakdown] = None,
    is_manual_override: bool = False,
    original_price_cents: Optional[int] = None,
) -> dict:
    """JSON document stored on the reservation item."""
    breakdown = {
        "basePrice": result.base_price_cents,
        "effectivePrice": result.effective_price_cents,
        "duration": result.duration,
        "pricingMode": result.duration_unit,
        "discountPercent": str(result.discount_percent) if result.discount_percent is not None else None,
        "discountAmount": result.savings_cents,
        "tierApplied": tier_label(result.tier, result.duration_unit),
        "ratePlan": result.rate_plan or None,
        "taxRate": None,
        "taxAmount": None,
        "subtotalExclTax": None,
        "subtotalInclTax": None,
        "isManualOverride": is_manual_override,
    }
    if tax is not None:
        breakdown.update(tax.to_dict())
    if is_manual_override:
        breakdown["originalPrice"] = original_price_cents
    return breakdown
