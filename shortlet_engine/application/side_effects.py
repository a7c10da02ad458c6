# shortlet_engine/application/side_effects.py

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy.orm import Session

from shortlet_engine.config import Settings, get_settings
from shortlet_engine.domain.exceptions import BookingNotFoundError
from shortlet_engine.domain.values import Audience, EventKind
from shortlet_engine.infrastructure.db.models import Booking
from shortlet_engine.infrastructure.db.session import utcnow
from shortlet_engine.infrastructure.db.statements import dump_json
from shortlet_engine.infrastructure.repositories.booking_repository import BookingRepository
from shortlet_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from shortlet_engine.infrastructure.repositories.unit_repository import UnitRepository

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(
        self,
        event_kind: str,
        audience: str,
        recipient_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        ...


class LoggingNotificationSender:
    """Default transport: hands the notification to the log stream."""

    def send(
        self,
        event_kind: str,
        audience: str,
        recipient_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        logger.info(
            "notification %s -> %s (%s) for booking %s",
            event_kind,
            audience,
            recipient_id or "-",
            payload.get("booking_id"),
        )


def dedupe_key(booking_id: str, event_kind: EventKind, audience: Audience) -> str:
    return f"shortlet_booking:{booking_id}:{event_kind.value}:{audience.value}"


def _recipient(booking: Booking, audience: Audience) -> str | None:
    if audience == Audience.GUEST:
        return booking.guest_id
    if audience == Audience.HOST:
        return booking.host_id
    return None


class SideEffectDispatcher:
    """
    Exactly-once notifications. The outbox row is inserted already
    claimed; whoever's insert lands is the only caller that delivers.
    Delivery failures drop the row back to PENDING for the sweeper, and a
    claim whose holder died mid-delivery lapses after outbox_claim_seconds.
    """

    def __init__(
        self,
        db: Session,
        sender: NotificationSender | None = None,
        now: Callable[[], datetime] = utcnow,
        settings: Settings | None = None,
    ):
        self.db = db
        self.sender = sender or LoggingNotificationSender()
        self.now = now
        self.settings = settings or get_settings()
        self.outbox_repository = OutboxRepository(db)
        self.booking_repository = BookingRepository(db)
        self.unit_repository = UnitRepository(db)

    def dispatch(
        self,
        event_kind: EventKind,
        booking_id: str,
        audience: Audience,
    ) -> bool:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise BookingNotFoundError(f"Booking {booking_id} not found")

        key = dedupe_key(booking.id, event_kind, audience)
        recipient_id = _recipient(booking, audience)
        payload = self._payload(booking, audience, recipient_id)
        event_id = str(uuid4())

        inserted = self.outbox_repository.insert_claimed(
            event_id=event_id,
            booking_id=booking.id,
            event_kind=event_kind.value,
            audience=audience.value,
            recipient_id=recipient_id,
            payload_json=dump_json(payload),
            dedupe_key=key,
            now=self.now(),
            claimed_until=self._claim_deadline(),
        )
        if not inserted:
            logger.debug("Side effect %s already recorded", key)
            return False

        # The claim must be durable before anything leaves the process.
        self.db.commit()
        self._deliver(event_id, event_kind.value, audience.value, recipient_id, payload)
        return True

    def redeliver_pending(self, limit: int) -> int:
        delivered = 0
        for event in self.outbox_repository.list_redeliverable(self.now(), limit):
            claimed = self.outbox_repository.claim_for_redelivery(
                event.id,
                self.now(),
                self._claim_deadline(),
            )
            if not claimed:
                self.db.rollback()
                continue
            self.db.commit()
            if self._deliver(
                event.id,
                event.event_kind,
                event.audience,
                event.recipient_id,
                json.loads(event.payload or "{}"),
            ):
                delivered += 1
        return delivered

    def _claim_deadline(self) -> datetime:
        return self.now() + timedelta(seconds=self.settings.outbox_claim_seconds)

    def _deliver(
        self,
        event_id: str,
        event_kind: str,
        audience: str,
        recipient_id: str | None,
        payload: dict[str, Any],
    ) -> bool:
        try:
            self.sender.send(event_kind, audience, recipient_id, payload)
        except Exception as exc:
            logger.exception("Delivery of side effect %s failed; left for redelivery", event_id)
            self.outbox_repository.release_for_retry(event_id, str(exc) or type(exc).__name__)
            self.db.commit()
            return False

        self.outbox_repository.mark_delivered(event_id, self.now())
        self.db.commit()
        return True

    def _payload(
        self,
        booking: Booking,
        audience: Audience,
        recipient_id: str | None,
    ) -> dict[str, Any]:
        unit = self.unit_repository.get_by_id(booking.unit_id)
        return {
            "booking_id": booking.id,
            "unit_id": booking.unit_id,
            "listing_title": unit.title if unit else None,
            "date_from": booking.date_from.isoformat(),
            "date_to": booking.date_to.isoformat(),
            "nights": booking.nights,
            "amount_minor": booking.total_amount_minor,
            "currency": booking.currency,
            "audience": audience.value,
            "recipient_id": recipient_id,
        }

