# shortlet_engine/domain/exceptions.py


class ShortletEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the shortlet reservation engine.
    """

    code = "SHORTLET_ENGINE_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)


# ---------------------
# Validation
# ---------------------

class BookingValidationError(ShortletEngineError):
    """Rejected synchronously, never retried."""

    code = "BOOKING_VALIDATION_FAILED"


class InvalidDateRangeError(BookingValidationError):
    code = "INVALID_DATE_RANGE"


class DateInPastError(BookingValidationError):
    code = "DATE_IN_PAST"


class NightsBelowMinimumError(BookingValidationError):
    code = "NIGHTS_BELOW_MINIMUM"


class NightsAboveMaximumError(BookingValidationError):
    code = "NIGHTS_ABOVE_MAXIMUM"


class NoticeWindowViolatedError(BookingValidationError):
    code = "NOTICE_WINDOW_VIOLATED"


class UnitNotBookableError(BookingValidationError):
    code = "UNIT_NOT_BOOKABLE"


# ---------------------
# Contention
# ---------------------

class DatesUnavailableError(ShortletEngineError):
    """Another non-cancelled booking or a block already covers part of the range."""

    code = "DATES_UNAVAILABLE"


# ---------------------
# Lookup / authorization / state
# ---------------------

class UnitNotFoundError(ShortletEngineError):
    code = "UNIT_NOT_FOUND"


class BookingNotFoundError(ShortletEngineError):
    code = "BOOKING_NOT_FOUND"


class PaymentNotFoundError(ShortletEngineError):
    code = "PAYMENT_NOT_FOUND"


class PayoutNotFoundError(ShortletEngineError):
    code = "PAYOUT_NOT_FOUND"


class ForbiddenError(ShortletEngineError):
    code = "FORBIDDEN"


class InvalidBookingStatusError(ShortletEngineError):
    code = "INVALID_STATUS"


class InvalidStateTransitionError(InvalidBookingStatusError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class IdempotencyConflictError(ShortletEngineError):
    """Raised when an idempotent request conflicts with previous data."""

    code = "IDEMPOTENCY_CONFLICT"


# ---------------------
# Payment providers
# ---------------------

class ProviderError(ShortletEngineError):
    """
    The provider could not give an authoritative answer.
    Always routed to needs_reconcile, never treated as a final failure.
    """

    code = "PROVIDER_ERROR"


class ProviderTimeoutError(ProviderError):
    code = "PROVIDER_TIMEOUT"


class ProviderMalformedPayloadError(ProviderError):
    code = "PROVIDER_MALFORMED_PAYLOAD"


class ProviderNotConfiguredError(ProviderError):
    code = "PROVIDER_NOT_CONFIGURED"
