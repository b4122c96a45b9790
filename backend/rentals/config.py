# backend/rentals/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the app unless DATABASE_URL points elsewhere
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///rentals.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "EUR")

    # Client/server price divergence handling (amounts in cents).
    # Unset reject threshold = log only.
    PRICE_MISMATCH_TOLERANCE_CENTS = _int_env("PRICE_MISMATCH_TOLERANCE_CENTS", 1)
    PRICE_MISMATCH_REJECT_CENTS = _int_env("PRICE_MISMATCH_REJECT_CENTS", None)

    # "most_capacity" or "deterministic"
    COMBINATION_ALLOCATION_STRATEGY = os.environ.get(
        "COMBINATION_ALLOCATION_STRATEGY", "most_capacity"
    )

    RESERVATION_NUMBER_ATTEMPTS = _int_env("RESERVATION_NUMBER_ATTEMPTS", 5)
    TRANSACTION_RETRY_ATTEMPTS = _int_env("TRANSACTION_RETRY_ATTEMPTS", 3)

    # Smallest online payment the provider accepts
    DEPOSIT_PAYMENT_MIN_CENTS = _int_env("DEPOSIT_PAYMENT_MIN_CENTS", 50)

    # Run notification dispatch inline instead of on the background pool
    NOTIFICATIONS_SYNC = os.environ.get("NOTIFICATIONS_SYNC", "").lower() in ("1", "true", "yes")
