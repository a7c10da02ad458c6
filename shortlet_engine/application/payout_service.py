# shortlet_engine/application/payout_service.py

import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from sqlalchemy.orm import Session

from shortlet_engine.domain.exceptions import InvalidBookingStatusError, PayoutNotFoundError
from shortlet_engine.domain.values import PayoutStatus
from shortlet_engine.infrastructure.db.models import Booking, Payout
from shortlet_engine.infrastructure.db.session import utcnow
from shortlet_engine.infrastructure.repositories.payout_repository import PayoutRepository

logger = logging.getLogger(__name__)


class PayoutService:
    """Host payout records: one per confirmed booking, eligible until an admin pays it."""

    def __init__(self, db: Session, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.now = now
        self.payout_repository = PayoutRepository(db)

    def get_payout(self, payout_id: str) -> Payout:
        payout = self.payout_repository.get_by_id(payout_id)
        if not payout:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return payout

    def ensure_for_booking(self, booking: Booking) -> Payout:
        """Upsert on booking id; a replay returns the existing row untouched."""
        created = self.payout_repository.insert_eligible(
            payout_id=str(uuid4()),
            booking_id=booking.id,
            host_id=booking.host_id,
            amount_minor=booking.total_amount_minor,
            currency=booking.currency,
            now=self.now(),
        )
        self.db.commit()
        if created:
            logger.info("Payout eligible for booking %s", booking.id)
        return self.payout_repository.get_by_booking(booking.id)

    def void_for_booking(self, booking_id: str) -> bool:
        voided = self.payout_repository.void_for_booking(booking_id, self.now())
        self.db.commit()
        if voided:
            logger.info("Payout for booking %s voided", booking_id)
        return voided

    def mark_paid(
        self,
        payout_id: str,
        paid_ref: str | None = None,
        note: str | None = None,
    ) -> Payout:
        self.get_payout(payout_id)
        if self.payout_repository.mark_paid(payout_id, paid_ref, note, self.now()):
            self.db.commit()
            logger.info("Payout %s marked paid (%s)", payout_id, paid_ref or "-")
            return self.get_payout(payout_id)

        self.db.rollback()
        current = self.get_payout(payout_id)
        if current.status != PayoutStatus.PAID:
            raise InvalidBookingStatusError(
                f"Payout {payout_id} cannot be paid in status {current.status.value}"
            )
        return current

    def list_payouts(self, status: PayoutStatus, limit: int) -> list[Payout]:
        return self.payout_repository.list_by_status(status, limit)
