# backend/rentals/routes/system.py
"""
System health and version endpoints.
"""

import sys
import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import Product, Reservation, Store
from ..services.payment_provider import get_payment_provider
from rentals.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """Database connectivity plus a row count per core table."""
    start_time = time.time()
    try:
        details = {
            "stores": db.session.query(Store).count(),
            "products": db.session.query(Product).count(),
            "reservations": db.session.query(Reservation).count(),
        }
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2), "details": details}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": round(elapsed_ms, 2), "error": "Database error"}


def check_payment_provider() -> dict:
    # No provider is a valid setup (request-mode stores), so it only degrades
    if get_payment_provider() is None:
        return {"status": "degraded", "details": "No payment provider configured"}
    return {"status": "healthy"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    provider_health = check_payment_provider()

    if database_health["status"] == "unhealthy":
        overall_status, http_status = "unhealthy", 503
    elif provider_health["status"] == "degraded":
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "payment_provider": provider_health,
        },
    }, http_status


@system_bp.get("/version")
def version():
    env = "production" if not current_app.debug else "development"
    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
