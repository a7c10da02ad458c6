# shortlet_engine/application/booking_service.py

import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shortlet_engine.application.payout_service import PayoutService
from shortlet_engine.application.pricing import build_price_snapshot
from shortlet_engine.application.side_effects import SideEffectDispatcher
from shortlet_engine.config import Settings, get_settings
from shortlet_engine.domain.exceptions import (
    BookingNotFoundError,
    DateInPastError,
    DatesUnavailableError,
    ForbiddenError,
    InvalidBookingStatusError,
    InvalidDateRangeError,
    NightsAboveMaximumError,
    NightsBelowMinimumError,
    NoticeWindowViolatedError,
    UnitNotBookableError,
    UnitNotFoundError,
)
from shortlet_engine.domain.state_machine import BookingStateMachine, BookingStatus
from shortlet_engine.domain.values import Audience, BookingMode, EventKind, HostAction
from shortlet_engine.infrastructure.db.models import Booking, Unit
from shortlet_engine.infrastructure.db.session import utcnow
from shortlet_engine.infrastructure.db.statements import dump_json
from shortlet_engine.infrastructure.repositories.booking_repository import BookingRepository
from shortlet_engine.infrastructure.repositories.payment_repository import (
    PaymentAttemptRepository,
)
from shortlet_engine.infrastructure.repositories.unit_repository import UnitRepository

logger = logging.getLogger(__name__)


class BookingService:
    """Application service coordinating the booking lifecycle."""

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        now: Callable[[], datetime] = utcnow,
        dispatcher: SideEffectDispatcher | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.now = now
        self.dispatcher = dispatcher or SideEffectDispatcher(db, now=now, settings=self.settings)
        self.booking_repository = BookingRepository(db)
        self.unit_repository = UnitRepository(db)
        self.payment_repository = PaymentAttemptRepository(db)
        self.payout_service = PayoutService(db, now)

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        return booking

    def effective_status(self, booking: Booking) -> BookingStatus:
        return BookingStateMachine.effective_status(
            booking.status,
            booking.date_to,
            self.now().date(),
        )

    def create_booking(
        self,
        unit_id: str,
        guest_id: str,
        date_from: date,
        date_to: date,
        mode: BookingMode | None = None,
        pricing_snapshot: dict[str, Any] | None = None,
    ) -> Booking:
        unit = self.unit_repository.get_by_id(unit_id)
        if not unit:
            raise UnitNotFoundError(f"Unit {unit_id} not found")
        if not unit.is_active:
            raise UnitNotBookableError(f"Unit {unit_id} is not accepting bookings")

        if date_from >= date_to:
            raise InvalidDateRangeError("date_from must be before date_to")

        now = self.now()
        if date_from < now.date():
            raise DateInPastError(f"{date_from.isoformat()} is in the past")

        if mode is not None and BookingMode(mode) != unit.booking_mode:
            raise UnitNotBookableError(
                f"Unit {unit_id} only accepts {unit.booking_mode.value} bookings"
            )

        nights = (date_to - date_from).days
        if nights < unit.min_nights:
            raise NightsBelowMinimumError(
                f"Minimum stay is {unit.min_nights} night(s); requested {nights}"
            )
        if unit.max_nights is not None and nights > unit.max_nights:
            raise NightsAboveMaximumError(
                f"Maximum stay is {unit.max_nights} night(s); requested {nights}"
            )

        check_in_at = datetime.combine(date_from, time.min, tzinfo=timezone.utc)
        if check_in_at - now < timedelta(hours=unit.advance_notice_hours):
            raise NoticeWindowViolatedError(
                f"Unit {unit_id} needs {unit.advance_notice_hours}h notice before check-in"
            )

        total, currency, snapshot = build_price_snapshot(unit, nights, pricing_snapshot)
        booking_id = str(uuid4())

        try:
            inserted = self.booking_repository.insert_if_free(
                booking_id=booking_id,
                unit_id=unit.id,
                guest_id=guest_id,
                host_id=unit.host_id,
                date_from=date_from,
                date_to=date_to,
                nights=nights,
                booking_mode=unit.booking_mode,
                total_amount_minor=total,
                currency=currency,
                pricing_snapshot=dump_json(snapshot),
                expires_at=now + self._hold_window(unit),
                now=now,
            )
        except IntegrityError as exc:
            # Exclusion constraint caught a concurrent insert.
            self.db.rollback()
            raise DatesUnavailableError(
                f"Unit {unit_id} is not available for {date_from} to {date_to}"
            ) from exc

        if not inserted:
            self.db.rollback()
            raise DatesUnavailableError(
                f"Unit {unit_id} is not available for {date_from} to {date_to}"
            )

        self.db.commit()
        logger.info(
            "Booking %s created for unit %s [%s, %s) status=pending_payment",
            booking_id,
            unit_id,
            date_from,
            date_to,
        )
        return self.get_booking(booking_id)

    def cancel_booking(
        self,
        booking_id: str,
        actor_id: str,
        reason: str | None = None,
        is_admin: bool = False,
    ) -> Booking:
        booking = self.get_booking(booking_id)

        if not is_admin and actor_id not in (booking.guest_id, booking.host_id):
            raise ForbiddenError(f"Actor {actor_id} may not cancel booking {booking_id}")

        BookingStateMachine.validate_transition(
            self.effective_status(booking),
            BookingStatus.CANCELLED,
        )

        now = self.now()
        moved = self.booking_repository.transition(
            booking.id,
            BookingStatus.CANCELLED,
            now,
            cancel_reason=(reason or "")[:255] or None,
            cancelled_at=now,
            expires_at=None,
        )
        if not moved:
            self.db.rollback()
            current = self.get_booking(booking_id)
            raise InvalidBookingStatusError(
                f"Cannot cancel booking in status {current.status.value}"
            )
        self.db.commit()
        logger.info("Booking %s cancelled by %s", booking_id, actor_id)

        if self.payment_repository.has_succeeded(booking.id):
            self._require_refund(booking.id, now)
        self.payout_service.void_for_booking(booking.id)

        self.dispatcher.dispatch(EventKind.BOOKING_CANCELLED, booking.id, Audience.GUEST)
        self.dispatcher.dispatch(EventKind.BOOKING_CANCELLED, booking.id, Audience.HOST)
        return self.get_booking(booking_id)

    def confirm_after_payment(self, booking_id: str) -> Booking:
        """
        Drive pending_payment -> confirmed once a payment succeeded.
        Request-mode bookings stay pending until the host responds.
        Safe to repeat: a confirmed booking only re-runs the deduplicated
        side effects, and a booking cancelled in the meantime is flagged
        for refund instead.
        """
        booking = self.get_booking(booking_id)
        now = self.now()

        if (
            booking.booking_mode == BookingMode.REQUEST
            and booking.status == BookingStatus.PENDING_PAYMENT
        ):
            logger.info("Booking %s paid; awaiting host response", booking_id)
            self.dispatcher.dispatch(EventKind.BOOKING_REQUESTED, booking.id, Audience.GUEST)
            self.dispatcher.dispatch(EventKind.BOOKING_REQUESTED, booking.id, Audience.HOST)
            return self.get_booking(booking_id)

        moved = self.booking_repository.transition(
            booking_id,
            BookingStatus.CONFIRMED,
            now,
            expires_at=None,
        )
        if moved:
            self.db.commit()
            logger.info("Booking %s confirmed after payment", booking_id)

        booking = self.get_booking(booking_id)
        if booking.status in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
            self._after_confirmation(booking)
        elif booking.status == BookingStatus.CANCELLED:
            logger.warning("Payment succeeded for cancelled booking %s", booking_id)
            self._require_refund(booking.id, now)

        return self.get_booking(booking_id)

    def respond_booking(
        self,
        booking_id: str,
        actor_id: str,
        action: HostAction | str,
        reason: str | None = None,
        is_admin: bool = False,
    ) -> Booking:
        """
        Host decision on a request-mode booking. Accept needs a
        succeeded payment; decline releases the dates and refunds any
        payment already taken.
        """
        action = HostAction(action)
        booking = self.get_booking(booking_id)

        if not is_admin and actor_id != booking.host_id:
            raise ForbiddenError(f"Actor {actor_id} may not respond to booking {booking_id}")
        if booking.booking_mode != BookingMode.REQUEST:
            raise InvalidBookingStatusError(f"Booking {booking_id} does not need host approval")
        if booking.status != BookingStatus.PENDING_PAYMENT:
            raise InvalidBookingStatusError(
                f"Booking {booking_id} is no longer awaiting a response ({booking.status.value})"
            )

        paid = self.payment_repository.has_succeeded(booking.id)
        if action == HostAction.ACCEPT and not paid:
            raise InvalidBookingStatusError(f"Booking {booking_id} has not been paid yet")

        now = self.now()
        if action == HostAction.ACCEPT:
            moved = self.booking_repository.transition(
                booking.id,
                BookingStatus.CONFIRMED,
                now,
                or_(Booking.expires_at.is_(None), Booking.expires_at > now),
                expires_at=None,
            )
        else:
            cancel_reason = f"host_declined: {reason}" if reason else "host_declined"
            moved = self.booking_repository.transition(
                booking.id,
                BookingStatus.CANCELLED,
                now,
                Booking.status == BookingStatus.PENDING_PAYMENT,
                cancel_reason=cancel_reason[:255],
                cancelled_at=now,
                expires_at=None,
            )
        if not moved:
            self.db.rollback()
            current = self.get_booking(booking_id)
            raise InvalidBookingStatusError(
                f"Booking {booking_id} is no longer awaiting a response ({current.status.value})"
            )
        self.db.commit()
        logger.info("Host response %s on booking %s by %s", action.value, booking_id, actor_id)

        booking = self.get_booking(booking_id)
        if action == HostAction.ACCEPT:
            self._after_confirmation(booking)
        else:
            if paid:
                self._require_refund(booking.id, now)
            self.dispatcher.dispatch(EventKind.BOOKING_DECLINED, booking.id, Audience.GUEST)

        return self.get_booking(booking_id)

    def expire_due(self, limit: int) -> int:
        """Cancel pending_payment holds whose expires_at has passed."""
        now = self.now()
        expired = 0

        for booking_id in self.booking_repository.list_expired_ids(now, limit):
            paid = self.payment_repository.has_succeeded(booking_id)
            cancel_reason = "hold_expired"
            if paid:
                booking = self.get_booking(booking_id)
                if booking.booking_mode == BookingMode.INSTANT:
                    # Paid but never confirmed: finish the confirmation instead.
                    self.confirm_after_payment(booking_id)
                    continue
                cancel_reason = "host_no_response"

            moved = self.booking_repository.transition(
                booking_id,
                BookingStatus.CANCELLED,
                now,
                Booking.expires_at <= now,
                cancel_reason=cancel_reason,
                cancelled_at=now,
                expires_at=None,
            )
            if not moved:
                self.db.rollback()
                continue

            self.db.commit()
            expired += 1
            logger.info("Booking %s expired (%s); dates released", booking_id, cancel_reason)
            if paid:
                self._require_refund(booking_id, now)
            self.dispatcher.dispatch(EventKind.BOOKING_EXPIRED, booking_id, Audience.GUEST)

        return expired

    def complete_past(self, limit: int) -> int:
        """Persist the passive confirmed -> completed transition."""
        now = self.now()
        today = now.date()
        completed = 0

        for booking_id in self.booking_repository.list_completable_ids(today, limit):
            if self.booking_repository.transition(
                booking_id,
                BookingStatus.COMPLETED,
                now,
                Booking.date_to <= today,
            ):
                completed += 1

        self.db.commit()
        return completed

    def _hold_window(self, unit: Unit) -> timedelta:
        if unit.hold_window_minutes:
            return timedelta(minutes=unit.hold_window_minutes)
        if unit.booking_mode == BookingMode.INSTANT:
            return timedelta(minutes=self.settings.instant_hold_minutes)
        return timedelta(minutes=self.settings.request_hold_minutes)

    def _after_confirmation(self, booking: Booking) -> None:
        self.payout_service.ensure_for_booking(booking)
        self.dispatcher.dispatch(EventKind.BOOKING_CONFIRMED, booking.id, Audience.GUEST)
        self.dispatcher.dispatch(EventKind.BOOKING_CONFIRMED, booking.id, Audience.HOST)
        self.dispatcher.dispatch(EventKind.PAYOUT_ELIGIBLE, booking.id, Audience.HOST)

    def _require_refund(self, booking_id: str, now: datetime) -> None:
        if self.booking_repository.flag_refund_required(booking_id, now):
            self.db.commit()
            logger.warning("Booking %s needs a refund", booking_id)
        self.dispatcher.dispatch(EventKind.REFUND_REQUIRED, booking_id, Audience.ADMIN)
