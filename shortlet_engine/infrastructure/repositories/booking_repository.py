# shortlet_engine/infrastructure/repositories/booking_repository.py

from datetime import date, datetime

from sqlalchemy import cast, exists, insert, literal, select, update
from sqlalchemy.orm import Session

from shortlet_engine.domain.state_machine import (
    BLOCKING_STATUSES,
    BookingStateMachine,
    BookingStatus,
)
from shortlet_engine.domain.values import BookingMode
from shortlet_engine.infrastructure.db.models import Block, Booking


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def insert_if_free(
        self,
        *,
        booking_id: str,
        unit_id: str,
        guest_id: str,
        host_id: str,
        date_from: date,
        date_to: date,
        nights: int,
        booking_mode: BookingMode,
        total_amount_minor: int,
        currency: str,
        pricing_snapshot: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        """
        Insert a pending_payment booking only if no blocking booking and
        no block overlaps [date_from, date_to). One statement, so the
        availability check and the write cannot interleave with another
        writer. Returns True when the row was inserted.
        """
        table = Booking.__table__
        values = {
            "id": booking_id,
            "unit_id": unit_id,
            "guest_id": guest_id,
            "host_id": host_id,
            "date_from": date_from,
            "date_to": date_to,
            "nights": nights,
            "booking_mode": booking_mode,
            "status": BookingStatus.PENDING_PAYMENT,
            "total_amount_minor": total_amount_minor,
            "currency": currency,
            "pricing_snapshot": pricing_snapshot,
            "expires_at": expires_at,
            "refund_required": False,
            "created_at": now,
            "updated_at": now,
        }
        names = list(values)

        columns = []
        for name in names:
            column_type = table.c[name].type
            column = literal(values[name], column_type)
            if name in ("status", "booking_mode"):
                # PostgreSQL has no assignment cast from text to an enum.
                column = cast(column, column_type)
            columns.append(column)

        existing = table.alias("existing")
        overlapping_booking = (
            select(existing.c.id)
            .where(existing.c.unit_id == unit_id)
            .where(existing.c.status.in_(BLOCKING_STATUSES))
            .where(existing.c.date_from < date_to)
            .where(existing.c.date_to > date_from)
        )
        overlapping_block = (
            select(Block.id)
            .where(Block.unit_id == unit_id)
            .where(Block.date_from < date_to)
            .where(Block.date_to > date_from)
        )

        source = (
            select(*columns)
            .where(~exists(overlapping_booking))
            .where(~exists(overlapping_block))
        )
        stmt = insert(table).from_select(names, source)
        return self.db.execute(stmt).rowcount == 1

    def transition(
        self,
        booking_id: str,
        to_status: BookingStatus,
        now: datetime,
        *extra_conditions,
        **values,
    ) -> bool:
        """
        Conditional status update guarded by every state from which
        to_status is reachable. Returns False when another writer got
        there first or the booking is in a state that cannot move.
        """
        sources = BookingStateMachine.sources_for(to_status)
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status.in_(sources))
            .where(*extra_conditions)
            .values(status=to_status, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def flag_refund_required(self, booking_id: str, now: datetime) -> bool:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.refund_required.is_(False))
            .values(refund_required=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def set_payment_reference(
        self,
        booking_id: str,
        reference: str,
        now: datetime,
    ) -> None:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .values(payment_reference=reference, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def list_expired_ids(self, now: datetime, limit: int) -> list[str]:
        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.PENDING_PAYMENT)
            .where(Booking.expires_at.is_not(None))
            .where(Booking.expires_at <= now)
            .order_by(Booking.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_completable_ids(self, today: date, limit: int) -> list[str]:
        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.CONFIRMED)
            .where(Booking.date_to <= today)
            .order_by(Booking.date_to)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_blocking(
        self,
        unit_id: str,
        date_from: date,
        date_to: date,
    ) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.unit_id == unit_id)
            .where(Booking.status.in_(BLOCKING_STATUSES))
            .where(Booking.date_from < date_to)
            .where(Booking.date_to > date_from)
            .order_by(Booking.date_from)
        )
        return list(self.db.execute(stmt).scalars().all())
