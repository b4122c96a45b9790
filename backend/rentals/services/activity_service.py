# Overview: Append-only reservation activity log.

from __future__ import annotations

from typing import Optional

from ..extensions import db
from ..models import ReservationActivity
"""
Reservation Activity Invariants (authoritative)

- Append-only: rows are never updated or deleted.
- Written inside the same DB transaction as the change they record; the
  caller commits.
- Every status or deposit transition writes exactly one row.
"""


ACTIVITY_TYPES = {
    "created",
    "confirmed",
    "rejected",
    "picked_up",
    "returned",
    "cancelled",
    "modified",
    "payment_added",
    "payment_updated",
    "payment_initiated",
    "payment_received",
    "payment_expired",
    "deposit_card_saved",
    "deposit_authorized",
    "deposit_captured",
    "deposit_released",
    "deposit_failed",
}


def log_activity(
    *,
    reservation_id: int,
    activity_type: str,
    description: Optional[str] = None,
    metadata: Optional[dict] = None,
    actor_id: Optional[int] = None,
) -> ReservationActivity:
    """
    Append one activity row and flush it.

    - No domain logic here.
    - No deletes/updates of existing rows.
    """
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"Unknown activity type '{activity_type}'")

    activity = ReservationActivity(
        reservation_id=reservation_id,
        activity_type=activity_type,
        actor_id=actor_id,
        description=description,
        details=metadata or None,
    )
    db.session.add(activity)
    db.session.flush()
    return activity


def list_activities(reservation_id: int) -> list[ReservationActivity]:
    return (
        db.session.query(ReservationActivity)
        .filter_by(reservation_id=reservation_id)
        .order_by(ReservationActivity.id.asc())
        .all()
    )
