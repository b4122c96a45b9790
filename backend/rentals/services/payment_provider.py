# Overview: Payment provider contract and minor-unit conversion.

"""
Payment Provider Interface

The engine talks to the card processor only through PaymentProvider. Every
amount crossing this boundary is in the provider's minor units; the engine
stores cents (hundredths of the major unit) and converts here, rounding
half-up, so zero-decimal currencies (JPY, KRW, ...) get whole units.

No provider is wired by default. Apps install one with
init_payment_provider(app, provider); without it online checkout is skipped
and deposit holds fail with ProviderError.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from flask import current_app

from .tax_service import round_cents

EXTENSION_KEY = "rentals.payment_provider"

ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}


class PaymentProviderError(Exception):
    """Raised by provider implementations when a call fails."""


def to_minor_units(amount_cents: int, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return round_cents(Decimal(amount_cents) / 100)
    return int(amount_cents)


def from_minor_units(amount_minor: int, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount_minor) * 100
    return int(amount_minor)


@dataclass
class CheckoutSession:
    id: str
    url: str


@dataclass
class DepositAuthorization:
    payment_intent_id: str
    status: str
    expires_at: Optional[datetime] = None


@dataclass
class CaptureResult:
    payment_intent_id: str
    amount_minor: int
    charge_id: Optional[str] = None


@dataclass
class RefundResult:
    id: str
    amount_minor: int
    status: str = "succeeded"


class PaymentProvider:
    """Contract every provider adapter implements. All amounts are minor units."""

    def create_checkout_session(
        self,
        *,
        reservation_id: int,
        reservation_number: str,
        amount_minor: int,
        currency: str,
        customer_email: str,
    ) -> CheckoutSession:
        raise NotImplementedError

    def create_deposit_authorization(
        self,
        *,
        customer_id: str,
        payment_method_id: str,
        amount_minor: int,
        currency: str,
        reservation_id: int,
    ) -> DepositAuthorization:
        raise NotImplementedError

    def capture_deposit(self, *, payment_intent_id: str, amount_minor: int) -> CaptureResult:
        raise NotImplementedError

    def release_deposit(self, *, payment_intent_id: str) -> None:
        raise NotImplementedError

    def create_refund(self, *, charge_id: str, amount_minor: int, reason: Optional[str] = None) -> RefundResult:
        raise NotImplementedError

    def get_charge_refundable_amount(self, charge_id: str) -> int:
        raise NotImplementedError


def init_payment_provider(app, provider: Optional[PaymentProvider]) -> None:
    app.extensions[EXTENSION_KEY] = provider


def get_payment_provider() -> Optional[PaymentProvider]:
    return current_app.extensions.get(EXTENSION_KEY)
