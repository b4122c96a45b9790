# Overview: Post-commit notification intents and their fire-and-forget dispatch.

"""
Lifecycle operations never send anything themselves. They return a list of
NotificationIntent values; the route dispatches them after the transaction
has committed. A failing dispatcher is logged and ignored: it can never roll
back or fail the transition that produced the intent.

Dispatch runs on a small background pool unless NOTIFICATIONS_SYNC is set
(tests), in which case it runs inline but is still isolated by try/except.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Optional

from flask import current_app

AUDIENCE_CUSTOMER = "customer"
AUDIENCE_ADMIN = "admin"
AUDIENCE_STORE = "store"

EXTENSION_KEY = "rentals.notifications"

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="rentals-notify")


@dataclass(frozen=True)
class NotificationIntent:
    event: str
    audience: str
    reservation_id: int
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "audience": self.audience,
            "reservation_id": self.reservation_id,
            "context": self.context,
        }


class NotificationDispatcher:
    """Transport for notifications (email, SMS, webhooks...)."""

    def send(self, intent: NotificationIntent) -> None:
        raise NotImplementedError


class LoggingDispatcher(NotificationDispatcher):
    """Default transport: records the intent in the application log."""

    def send(self, intent: NotificationIntent) -> None:
        current_app.logger.info(
            "notification %s -> %s (reservation %s)",
            intent.event,
            intent.audience,
            intent.reservation_id,
        )


def init_notifications(app, dispatcher: Optional[NotificationDispatcher] = None) -> None:
    app.extensions[EXTENSION_KEY] = dispatcher or LoggingDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return current_app.extensions.get(EXTENSION_KEY) or LoggingDispatcher()


def reservation_context(reservation) -> dict:
    return {
        "number": reservation.number,
        "status": reservation.status,
        "store_id": reservation.store_id,
        "customer_id": reservation.customer_id,
        "total_cents": reservation.total_cents,
    }


def intent(event: str, audience: str, reservation, **extra) -> NotificationIntent:
    context = reservation_context(reservation)
    context.update({k: v for k, v in extra.items() if v is not None})
    return NotificationIntent(event=event, audience=audience, reservation_id=reservation.id, context=context)


def _send_safely(app, dispatcher: NotificationDispatcher, item: NotificationIntent) -> None:
    with app.app_context():
        try:
            dispatcher.send(item)
        except Exception:
            app.logger.exception(
                "Failed to dispatch notification %s for reservation %s", item.event, item.reservation_id
            )


def dispatch_notifications(
    intents: Iterable[NotificationIntent],
    dispatcher: Optional[NotificationDispatcher] = None,
) -> None:
    """Send intents without blocking or raising. Call only after commit."""
    app = current_app._get_current_object()
    dispatcher = dispatcher or get_dispatcher()
    for item in intents:
        if app.config.get("NOTIFICATIONS_SYNC"):
            _send_safely(app, dispatcher, item)
        else:
            _executor.submit(_send_safely, app, dispatcher, item)
