# clubhouse/events.py
"""
Domain event sink.

Events are written to the audit_events table in the caller's transaction and
fanned out to in-process subscribers. Delivery to subscribers is best-effort:
a failing subscriber is logged and never blocks the operation that emitted.
"""
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from clubhouse import models

BOOKING_CONFIRMED = "BookingConfirmed"
BOOKING_CHECKED_IN = "BookingCheckedIn"
BOOKING_CANCELLED = "BookingCancelled"
BOOKING_COMPLETED = "BookingCompleted"
CHARGE_POSTED = "ChargePosted"
CHARGE_VOIDED = "ChargeVoided"
PAYMENT_ADDED = "PaymentAdded"
REFUND_ADDED = "RefundAdded"
FOLIO_SETTLED = "FolioSettled"
FOLIO_REOPENED = "FolioReopened"
FOLIO_VOIDED = "FolioVoided"
BOOKING_RESOURCES_CHANGED = "BookingResourcesChanged"

Subscriber = Callable[[str, dict], None]


class EventSink:
    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = {}

    def subscribe(self, event_type: str, handler: Subscriber) -> None:
        """Register a handler; use "*" to receive every event."""
        self._subscribers.setdefault(event_type, []).append(handler)

    def clear(self) -> None:
        self._subscribers.clear()

    def emit(
        self,
        db: Session,
        event_type: str,
        booking_id: Optional[int] = None,
        folio_id: Optional[int] = None,
        **payload,
    ) -> None:
        db.add(models.AuditEvent(event_type=event_type, booking_id=booking_id, folio_id=folio_id, payload=payload))
        print(f"[AUDIT] {event_type} booking={booking_id} folio={folio_id}")

        data = {"booking_id": booking_id, "folio_id": folio_id, **payload}
        for handler in self._subscribers.get(event_type, []) + self._subscribers.get("*", []):
            try:
                handler(event_type, data)
            except Exception as e:
                print(f"[AUDIT] Subscriber failed for {event_type}: {type(e).__name__}: {str(e)[:160]}")


# Singleton instance
event_sink = EventSink()
