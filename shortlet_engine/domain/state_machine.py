# shortlet_engine/domain/state_machine.py

from datetime import date
from enum import Enum
from typing import Dict, Set

from shortlet_engine.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Statuses that hold a unit's dates.
BLOCKING_STATUSES = (
    BookingStatus.PENDING_PAYMENT,
    BookingStatus.CONFIRMED,
    BookingStatus.COMPLETED,
)


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.
    Defines the legal state transitions.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING_PAYMENT: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.COMPLETED: set(),
        BookingStatus.CANCELLED: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def sources_for(cls, to_status: BookingStatus) -> Set[BookingStatus]:
        """
        Returns every state from which to_status may be reached.
        Used as the guard of conditional status updates.
        """
        cls._ensure_valid_status(to_status)
        return {
            from_status
            for from_status, targets in cls._ALLOWED_TRANSITIONS.items()
            if to_status in targets
        }

    @classmethod
    def effective_status(
        cls,
        status: BookingStatus,
        date_to: date,
        today: date,
    ) -> BookingStatus:
        """
        Completion is passive: a confirmed stay whose checkout
        has passed reads as completed even before the sweeper persists it.
        """
        cls._ensure_valid_status(status)
        if status == BookingStatus.CONFIRMED and date_to <= today:
            return BookingStatus.COMPLETED
        return status

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        """
        Guard against invalid status types.
        """
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
