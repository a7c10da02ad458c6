# tests/integration/test_booking_service.py

import threading
from datetime import date, timedelta

import pytest

from shortlet_engine.application.booking_service import BookingService
from shortlet_engine.domain.exceptions import (
    BookingValidationError,
    DateInPastError,
    DatesUnavailableError,
    ForbiddenError,
    InvalidBookingStatusError,
    InvalidStateTransitionError,
    NightsAboveMaximumError,
    NoticeWindowViolatedError,
    UnitNotBookableError,
    UnitNotFoundError,
)
from shortlet_engine.domain.state_machine import BookingStatus, PaymentStatus
from shortlet_engine.domain.values import BlockReason, BookingMode, ProviderNotification
from shortlet_engine.infrastructure.db.session import SessionLocal, as_utc
from shortlet_engine.infrastructure.repositories.unit_repository import UnitRepository

CHECK_IN = date(2026, 3, 10)
CHECK_OUT = date(2026, 3, 13)


def _pay(services, booking):
    initiation = services.payments.initiate_payment(booking.id, booking.guest_id, "fakepay")
    return services.payments.handle_notification(
        ProviderNotification(
            provider="fakepay",
            reference=initiation.attempt.provider_reference,
            status=PaymentStatus.SUCCEEDED,
        )
    )


# ---------------------
# CREATE
# ---------------------

def test_create_freezes_price_and_sets_hold(services, make_unit, clock):
    make_unit()
    booking = services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)

    assert booking.status == BookingStatus.PENDING_PAYMENT
    assert booking.nights == 3
    assert booking.total_amount_minor == 120000
    assert booking.currency == "NGN"
    assert booking.host_id == "host-1"
    assert as_utc(booking.expires_at) == clock() + timedelta(minutes=30)


def test_request_mode_and_unit_hold_windows(services, make_unit, clock):
    make_unit("U2", booking_mode=BookingMode.REQUEST)
    make_unit("U3", hold_window_minutes=10)

    request_booking = services.bookings.create_booking("U2", "guest-1", CHECK_IN, CHECK_OUT)
    custom_booking = services.bookings.create_booking("U3", "guest-1", CHECK_IN, CHECK_OUT)

    assert as_utc(request_booking.expires_at) == clock() + timedelta(hours=24)
    assert as_utc(custom_booking.expires_at) == clock() + timedelta(minutes=10)


def test_supplied_pricing_snapshot_is_used(services, make_unit):
    make_unit()
    booking = services.bookings.create_booking(
        "U1",
        "guest-1",
        CHECK_IN,
        CHECK_OUT,
        pricing_snapshot={"total_amount_minor": 99000, "promo": "MARCH"},
    )
    assert booking.total_amount_minor == 99000


def test_validation_rules(services, make_unit):
    make_unit(max_nights=2, advance_notice_hours=48)
    make_unit("U9", is_active=False)

    with pytest.raises(UnitNotFoundError):
        services.bookings.create_booking("nope", "guest-1", CHECK_IN, CHECK_OUT)
    with pytest.raises(UnitNotBookableError):
        services.bookings.create_booking("U9", "guest-1", CHECK_IN, CHECK_OUT)
    with pytest.raises(DateInPastError):
        services.bookings.create_booking("U1", "guest-1", date(2026, 2, 27), date(2026, 2, 28))
    with pytest.raises(NightsAboveMaximumError):
        services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)
    with pytest.raises(NoticeWindowViolatedError):
        services.bookings.create_booking("U1", "guest-1", date(2026, 3, 2), date(2026, 3, 3))
    with pytest.raises(UnitNotBookableError):
        services.bookings.create_booking(
            "U1", "guest-1", CHECK_IN, date(2026, 3, 11), mode=BookingMode.REQUEST
        )

    # Every validation failure shares one base class.
    with pytest.raises(BookingValidationError):
        services.bookings.create_booking("U1", "guest-1", CHECK_OUT, CHECK_IN)

    booking = services.bookings.create_booking("U1", "guest-1", date(2026, 3, 4), date(2026, 3, 5))
    assert booking.nights == 1


def test_host_block_rejects_overlap(services, make_unit, db):
    make_unit()
    UnitRepository(db).create_block("U1", date(2026, 3, 12), date(2026, 3, 14), BlockReason.HOST_BLOCK)
    db.commit()

    with pytest.raises(DatesUnavailableError):
        services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)

    booking = services.bookings.create_booking("U1", "guest-1", CHECK_IN, date(2026, 3, 12))
    assert booking.date_to == date(2026, 3, 12)


def test_concurrent_requests_yield_single_booking(make_unit, settings, clock):
    make_unit()
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def attempt(index):
        session = SessionLocal()
        try:
            service = BookingService(session, settings, clock)
            barrier.wait()
            try:
                service.create_booking("U1", f"guest-{index}", CHECK_IN, CHECK_OUT)
                outcome = "created"
            except DatesUnavailableError:
                outcome = "unavailable"
        finally:
            session.close()
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(outcomes) == ["created"] + ["unavailable"] * (workers - 1)


# ---------------------
# CANCEL
# ---------------------

def test_guest_host_and_admin_may_cancel(services, make_unit, sender):
    make_unit()
    first = services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)
    second = services.bookings.create_booking("U1", "guest-2", date(2026, 3, 20), date(2026, 3, 22))
    third = services.bookings.create_booking("U1", "guest-3", date(2026, 3, 25), date(2026, 3, 27))

    with pytest.raises(ForbiddenError):
        services.bookings.cancel_booking(first.id, "guest-2")

    assert services.bookings.cancel_booking(first.id, "guest-1").status == BookingStatus.CANCELLED
    assert services.bookings.cancel_booking(second.id, "host-1").status == BookingStatus.CANCELLED
    assert (
        services.bookings.cancel_booking(third.id, "admin-1", is_admin=True).status
        == BookingStatus.CANCELLED
    )

    assert ("booking_cancelled", "guest", "guest-1", first.id) in sender.sent
    assert ("booking_cancelled", "host", "host-1", first.id) in sender.sent


def test_cancelling_twice_is_invalid(services, make_unit):
    make_unit()
    booking = services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)
    services.bookings.cancel_booking(booking.id, "guest-1", reason="changed plans")

    with pytest.raises(InvalidStateTransitionError):
        services.bookings.cancel_booking(booking.id, "guest-1")

    assert services.bookings.get_booking(booking.id).cancel_reason == "changed plans"


def test_cancel_after_payment_requires_refund(services, make_unit, sender):
    make_unit()
    booking = services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)
    _pay(services, booking)

    cancelled = services.bookings.cancel_booking(booking.id, "host-1")

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.refund_required is True
    assert ("refund_required", "admin", None, booking.id) in sender.sent


def test_finished_stay_reads_completed_and_cannot_be_cancelled(services, make_unit, clock):
    make_unit()
    booking = services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)
    _pay(services, booking)

    clock.advance(days=12)
    current = services.bookings.get_booking(booking.id)
    assert current.status == BookingStatus.CONFIRMED
    assert services.bookings.effective_status(current) == BookingStatus.COMPLETED

    with pytest.raises(InvalidBookingStatusError):
        services.bookings.cancel_booking(booking.id, "guest-1")

    assert services.bookings.complete_past(50) == 1
    assert services.bookings.get_booking(booking.id).status == BookingStatus.COMPLETED


# ---------------------
# HOST RESPONSE
# ---------------------

@pytest.fixture
def request_booking(services, make_unit):
    make_unit(booking_mode=BookingMode.REQUEST)
    return services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)


def test_paid_request_waits_for_host(services, request_booking, sender):
    result = _pay(services, request_booking)

    assert result.ok is True
    assert result.booking_status == BookingStatus.PENDING_PAYMENT
    assert ("booking_requested", "guest", "guest-1", request_booking.id) in sender.sent
    assert ("booking_requested", "host", "host-1", request_booking.id) in sender.sent
    assert not [item for item in sender.sent if item[0] == "booking_confirmed"]
    assert services.bookings.payout_service.payout_repository.get_by_booking(request_booking.id) is None


def test_host_accept_confirms_paid_request(services, request_booking, sender):
    _pay(services, request_booking)

    booking = services.bookings.respond_booking(request_booking.id, "host-1", "accept")

    assert booking.status == BookingStatus.CONFIRMED
    assert booking.expires_at is None
    assert ("booking_confirmed", "guest", "guest-1", booking.id) in sender.sent
    assert ("payout_eligible", "host", "host-1", booking.id) in sender.sent

    with pytest.raises(InvalidBookingStatusError):
        services.bookings.respond_booking(request_booking.id, "host-1", "decline")


def test_host_decline_cancels_and_refunds(services, request_booking, sender):
    _pay(services, request_booking)

    booking = services.bookings.respond_booking(
        request_booking.id, "host-1", "decline", reason="maintenance"
    )

    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancel_reason == "host_declined: maintenance"
    assert booking.refund_required is True
    assert ("booking_declined", "guest", "guest-1", booking.id) in sender.sent
    assert ("refund_required", "admin", None, booking.id) in sender.sent

    # Dates are free again.
    rebooked = services.bookings.create_booking("U1", "guest-2", CHECK_IN, CHECK_OUT)
    assert rebooked.status == BookingStatus.PENDING_PAYMENT


def test_unpaid_request_can_be_declined_not_accepted(services, request_booking, sender):
    with pytest.raises(InvalidBookingStatusError):
        services.bookings.respond_booking(request_booking.id, "host-1", "accept")

    booking = services.bookings.respond_booking(request_booking.id, "admin-1", "decline", is_admin=True)

    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancel_reason == "host_declined"
    assert booking.refund_required is False
    assert not [item for item in sender.sent if item[0] == "refund_required"]


def test_only_host_responds_and_only_to_requests(services, request_booking, make_unit):
    with pytest.raises(ForbiddenError):
        services.bookings.respond_booking(request_booking.id, "guest-1", "decline")

    make_unit("U2")
    instant = services.bookings.create_booking("U2", "guest-1", CHECK_IN, CHECK_OUT)
    with pytest.raises(InvalidBookingStatusError):
        services.bookings.respond_booking(instant.id, "host-1", "decline")

    with pytest.raises(ValueError):
        services.bookings.respond_booking(request_booking.id, "host-1", "maybe")


def test_lapsed_request_hold_cannot_be_accepted(services, request_booking, clock):
    _pay(services, request_booking)
    clock.advance(hours=25)

    with pytest.raises(InvalidBookingStatusError):
        services.bookings.respond_booking(request_booking.id, "host-1", "accept")
    assert services.bookings.get_booking(request_booking.id).status == BookingStatus.PENDING_PAYMENT


def test_paid_request_without_response_expires_with_refund(services, request_booking, clock, sender):
    _pay(services, request_booking)
    clock.advance(hours=25)

    assert services.bookings.expire_due(50) == 1

    booking = services.bookings.get_booking(request_booking.id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancel_reason == "host_no_response"
    assert booking.refund_required is True
    assert ("booking_expired", "guest", "guest-1", booking.id) in sender.sent
