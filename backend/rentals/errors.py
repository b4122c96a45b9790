# Overview: Domain error taxonomy shared by services and routes.

"""
Rental engine error kinds.

Every failure the engine reports to a caller is a RentalError subclass whose
`kind` is a stable identifier (the class name), plus optional structured
params. Routes translate these into JSON bodies:

    {"error": kind, "error_params": {...}}

HTTP mapping lives here so that blueprints stay thin:
- NOT_FOUND_KINDS  -> 404
- CONFLICT_KINDS   -> 409
- ProviderError    -> 502
- everything else  -> 400
"""

from __future__ import annotations


class RentalError(Exception):
    """Base class for domain errors with a stable identifier."""

    kind = "RentalError"

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls.kind = cls.__name__

    def __init__(self, message: str | None = None, **params):
        super().__init__(message or self.kind)
        self.params = {k: v for k, v in params.items() if v is not None}

    def to_dict(self) -> dict:
        body = {"error": self.kind}
        if self.params:
            body["error_params"] = self.params
        return body


# =============================================================================
# LOOKUPS
# =============================================================================

class StoreNotFound(RentalError):
    pass


class Unauthorized(RentalError):
    pass


class ReservationNotFound(RentalError):
    pass


class PaymentNotFound(RentalError):
    pass


# =============================================================================
# CATALOG / AVAILABILITY
# =============================================================================

class ProductUnavailable(RentalError):
    """Product is missing, inactive, or belongs to another store."""


class InsufficientStock(RentalError):
    """Requested quantity exceeds the product's total stock."""


class ProductNoLongerAvailable(RentalError):
    """Commit-time availability re-check failed for an item."""


# =============================================================================
# BOOKING RULES
# =============================================================================

class BusinessHoursViolation(RentalError):
    pass


class AdvanceNoticeViolation(RentalError):
    pass


class MinRentalDurationViolation(RentalError):
    pass


class MaxRentalDurationViolation(RentalError):
    pass


class ReservationRulesViolation(RentalError):
    """
    One or more store booking rules failed.

    `violations` keeps every failed rule so the caller can report them
    together; the instance `kind` is the first violation's kind.
    """

    def __init__(self, violations: list):
        self.violations = list(violations)
        super().__init__()
        if self.violations:
            self.kind = self.violations[0].kind

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "errors": [v.to_dict() for v in self.violations],
        }


# =============================================================================
# DELIVERY
# =============================================================================

class DeliveryRequired(RentalError):
    pass


class DeliveryTooFar(RentalError):
    pass


class DeliveryAddressInvalid(RentalError):
    pass


class DeliveryNotEnabled(RentalError):
    pass


class PriceMismatch(RentalError):
    """Client total diverged beyond the configured reject threshold."""


# =============================================================================
# LIFECYCLE / LEDGER
# =============================================================================

class InvalidStatusTransition(RentalError):
    pass


class ReservationLocked(RentalError):
    """Completed reservations cannot be edited."""


class InvalidDepositStatus(RentalError):
    pass


class NoActiveAuthorization(RentalError):
    pass


class AmountExceedsDeposit(RentalError):
    pass


class ReasonRequired(RentalError):
    pass


class InvalidAmount(RentalError):
    pass


class PaymentNotDeletable(RentalError):
    pass


class InvalidPaymentStatus(RentalError):
    """A provider checkout row can only leave "pending" once."""


class ProviderError(RentalError):
    """Payment provider call failed."""


# =============================================================================
# UNIT ASSIGNMENT
# =============================================================================

class TooManyUnitsAssigned(RentalError):
    pass


class UnitProductMismatch(RentalError):
    pass


class InvalidUnits(RentalError):
    pass


NOT_FOUND_KINDS = {"StoreNotFound", "ReservationNotFound", "PaymentNotFound"}
CONFLICT_KINDS = {
    "ProductNoLongerAvailable",
    "InvalidStatusTransition",
    "ReservationLocked",
    "InvalidDepositStatus",
    "NoActiveAuthorization",
    "InvalidPaymentStatus",
}


def http_status_for(error: RentalError) -> int:
    if error.kind in NOT_FOUND_KINDS:
        return 404
    if error.kind == "Unauthorized":
        return 403
    if error.kind in CONFLICT_KINDS:
        return 409
    if error.kind == "ProviderError":
        return 502
    return 400
