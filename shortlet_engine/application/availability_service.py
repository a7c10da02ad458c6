# shortlet_engine/application/availability_service.py

from datetime import date, timedelta

from sqlalchemy.orm import Session

from shortlet_engine.domain.exceptions import InvalidDateRangeError, UnitNotFoundError
from shortlet_engine.domain.values import Range
from shortlet_engine.infrastructure.repositories.booking_repository import BookingRepository
from shortlet_engine.infrastructure.repositories.unit_repository import UnitRepository


class AvailabilityService:
    """
    Read-only projection over committed bookings and host blocks.
    Writers never consult it; the booking insert re-checks atomically.
    """

    def __init__(self, db: Session):
        self.db = db
        self.booking_repository = BookingRepository(db)
        self.unit_repository = UnitRepository(db)

    def list_blocking_ranges(
        self,
        unit_id: str,
        date_from: date,
        date_to: date,
    ) -> list[Range]:
        if date_from >= date_to:
            raise InvalidDateRangeError("date_from must be before date_to")
        if not self.unit_repository.get_by_id(unit_id):
            raise UnitNotFoundError(f"Unit {unit_id} not found")

        ranges = [
            Range(
                source="booking",
                ref_id=booking.id,
                date_from=booking.date_from,
                date_to=booking.date_to,
                detail=booking.status.value,
            )
            for booking in self.booking_repository.list_blocking(unit_id, date_from, date_to)
        ]
        ranges.extend(
            Range(
                source="block",
                ref_id=block.id,
                date_from=block.date_from,
                date_to=block.date_to,
                detail=block.reason.value,
            )
            for block in self.unit_repository.list_blocks(unit_id, date_from, date_to)
        )
        return sorted(ranges, key=lambda item: (item.date_from, item.date_to, item.ref_id))

    def is_free(self, unit_id: str, date_from: date, date_to: date) -> bool:
        return not self.list_blocking_ranges(unit_id, date_from, date_to)

    def unavailable_dates(
        self,
        unit_id: str,
        date_from: date,
        date_to: date,
    ) -> list[date]:
        """Nights inside [date_from, date_to) that cannot be booked."""
        nights: set[date] = set()
        for blocking in self.list_blocking_ranges(unit_id, date_from, date_to):
            cursor = max(blocking.date_from, date_from)
            end = min(blocking.date_to, date_to)
            while cursor < end:
                nights.add(cursor)
                cursor += timedelta(days=1)
        return sorted(nights)
