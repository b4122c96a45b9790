# Overview: Pure tax arithmetic for inclusive/exclusive amounts.

"""
Tax Module

All amounts are integer cents; rates are Decimal fractions (0.20 = 20%).
Stores and products persist rates as basis points (2000 = 20%).

Rounding: ROUND_HALF_UP to the cent, applied once on each returned amount.
Deposits are never taxed; callers pass rental amounts only.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

DISPLAY_INCLUSIVE = "inclusive"
DISPLAY_EXCLUSIVE = "exclusive"
VALID_DISPLAY_MODES = {DISPLAY_INCLUSIVE, DISPLAY_EXCLUSIVE}

BPS_DIVISOR = Decimal("10000")


def round_cents(value) -> int:
    """Round a Decimal-compatible cent value half-up to an integer."""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def bps_to_rate(bps: Optional[int]) -> Optional[Decimal]:
    if bps is None:
        return None
    return Decimal(bps) / BPS_DIVISOR


def rate_to_bps(rate: Optional[Decimal]) -> Optional[int]:
    if rate is None:
        return None
    return round_cents(Decimal(rate) * BPS_DIVISOR)


@dataclass(frozen=True)
class TaxSettings:
    enabled: bool
    rate: Decimal
    display_mode: str = DISPLAY_INCLUSIVE


@dataclass(frozen=True)
class ProductTaxOverride:
    inherit_from_store: bool = True
    custom_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class TaxBreakdown:
    rate: Decimal
    excl_tax_cents: int
    tax_cents: int
    incl_tax_cents: int

    @property
    def rate_bps(self) -> int:
        return rate_to_bps(self.rate)

    def to_dict(self) -> dict:
        return {
            "taxRate": str(self.rate),
            "subtotalExclTax": self.excl_tax_cents,
            "taxAmount": self.tax_cents,
            "subtotalInclTax": self.incl_tax_cents,
        }


def extract_exclusive_from_inclusive(inclusive_cents: int, rate) -> int:
    """amount / (1 + rate), rounded to the cent."""
    rate = Decimal(rate)
    return round_cents(Decimal(inclusive_cents) / (Decimal(1) + rate))


def extract_tax_from_inclusive(inclusive_cents: int, rate) -> int:
    return inclusive_cents - extract_exclusive_from_inclusive(inclusive_cents, rate)


def calculate_tax_from_exclusive(exclusive_cents: int, rate) -> int:
    """amount * rate, rounded to the cent."""
    return round_cents(Decimal(exclusive_cents) * Decimal(rate))


def get_effective_tax_rate(
    store_tax: Optional[TaxSettings],
    product_tax: Optional[ProductTaxOverride],
) -> Optional[Decimal]:
    """
    Resolve the rate applying to one product.

    - None when store tax is disabled (or not configured)
    - product custom rate when the product opts out of inheriting
    - otherwise the store default
    """
    if store_tax is None or not store_tax.enabled:
        return None
    if (
        product_tax is not None
        and not product_tax.inherit_from_store
        and product_tax.custom_rate is not None
    ):
        return Decimal(product_tax.custom_rate)
    return Decimal(store_tax.rate)


def compute_tax_breakdown(amount_cents: int, rate, display_mode: str) -> Optional[TaxBreakdown]:
    """
    Split an amount into excl/tax/incl parts.

    In inclusive mode `amount_cents` already contains tax; in exclusive mode
    tax is added on top. Returns None when the rate is null or zero (untaxed).
    """
    if rate is None:
        return None
    rate = Decimal(rate)
    if rate <= 0:
        return None

    if display_mode == DISPLAY_EXCLUSIVE:
        tax = calculate_tax_from_exclusive(amount_cents, rate)
        return TaxBreakdown(rate=rate, excl_tax_cents=amount_cents, tax_cents=tax, incl_tax_cents=amount_cents + tax)

    excl = extract_exclusive_from_inclusive(amount_cents, rate)
    return TaxBreakdown(rate=rate, excl_tax_cents=excl, tax_cents=amount_cents - excl, incl_tax_cents=amount_cents)


def store_tax_settings(store) -> Optional[TaxSettings]:
    """Read TaxSettings off a Store row (None when disabled)."""
    if not store.tax_enabled:
        return None
    mode = store.tax_display_mode if store.tax_display_mode in VALID_DISPLAY_MODES else DISPLAY_INCLUSIVE
    return TaxSettings(enabled=True, rate=bps_to_rate(store.tax_rate_bps or 0), display_mode=mode)


def product_tax_override(product) -> ProductTaxOverride:
    return ProductTaxOverride(
        inherit_from_store=bool(product.tax_inherit_from_store),
        custom_rate=bps_to_rate(product.tax_rate_bps),
    )
