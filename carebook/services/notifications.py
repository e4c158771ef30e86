"""
Status-change notification dispatcher
Email and calendar collaborators subscribe here; delivery itself lives outside the engine.
A failing listener is logged and never breaks the operation that emitted the event.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional

import httpx

from ..config import NOTIFICATION_TIMEOUT_SECONDS, NOTIFICATION_WEBHOOK_URL
from ..shared.timeutils import format_iso_instant, utcnow

logger = logging.getLogger(__name__)


@dataclass
class StatusChangeEvent:
    appointment_id: int
    from_status: str
    to_status: str
    actor_role: str
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    patient_id: Optional[int] = None
    therapist_id: Optional[int] = None
    meta: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = format_iso_instant(self.occurred_at)
        payload["type"] = "appointment.status_changed"
        return payload


Listener = Callable[[StatusChangeEvent], None]


class NotificationDispatcher:
    """Fan-out of status-change events to registered listeners"""

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def dispatch(self, event: StatusChangeEvent) -> int:
        """Returns the number of listeners that handled the event without error"""
        delivered = 0
        for listener in self._listeners:
            try:
                listener(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"❌ Notification listener {getattr(listener, '__name__', listener)} failed "
                    f"for appointment {event.appointment_id}: {str(e)}"
                )
        return delivered


def log_status_change(event: StatusChangeEvent) -> None:
    logger.info(
        f"📣 Appointment {event.appointment_id}: {event.from_status} → {event.to_status} "
        f"by {event.actor_role}{f' {event.actor_id}' if event.actor_id else ''}"
    )


def post_status_change(event: StatusChangeEvent) -> None:
    """Forward the event to NOTIFICATION_WEBHOOK_URL (email/calendar workers)"""
    if not NOTIFICATION_WEBHOOK_URL:
        return
    try:
        with httpx.Client(timeout=NOTIFICATION_TIMEOUT_SECONDS) as client:
            response = client.post(NOTIFICATION_WEBHOOK_URL, json=event.to_payload())
        if response.status_code >= 400:
            logger.error(
                f"❌ Notification webhook returned {response.status_code} "
                f"for appointment {event.appointment_id}"
            )
    except httpx.HTTPError as e:
        logger.error(f"❌ Notification webhook error: {str(e)}")


def create_dispatcher() -> NotificationDispatcher:
    dispatcher = NotificationDispatcher()
    dispatcher.subscribe(log_status_change)
    dispatcher.subscribe(post_status_change)
    return dispatcher


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = create_dispatcher()
    return _dispatcher
