# tests/integration/test_payment_ledger.py

import threading
from datetime import date

import pytest

from shortlet_engine.application.payment_service import PaymentService
from shortlet_engine.domain.exceptions import (
    IdempotencyConflictError,
    InvalidBookingStatusError,
    PaymentNotFoundError,
)
from shortlet_engine.domain.state_machine import BookingStatus, PaymentStatus
from shortlet_engine.domain.values import ProviderNotification
from shortlet_engine.infrastructure.db.session import SessionLocal
from shortlet_engine.infrastructure.repositories.payment_repository import (
    PaymentAttemptRepository,
)

CHECK_IN = date(2026, 3, 10)
CHECK_OUT = date(2026, 3, 13)


@pytest.fixture
def booking(services, make_unit):
    make_unit()
    return services.bookings.create_booking("U1", "guest-1", CHECK_IN, CHECK_OUT)


def _notify(services, reference, status, **fields):
    return services.payments.handle_notification(
        ProviderNotification(provider="fakepay", reference=reference, status=status, **fields)
    )


# ---------------------
# ATTEMPT RECORDING
# ---------------------

def test_record_attempt_is_insert_if_absent(services, booking):
    first = services.payments.record_payment_attempt(booking.id, "fakepay", "ref-1", 120000, "ngn")
    again = services.payments.record_payment_attempt(booking.id, "fakepay", "ref-1", 120000, "NGN")

    assert first.id == again.id
    assert first.currency == "NGN"
    assert first.status == PaymentStatus.INITIATED
    assert PaymentAttemptRepository(services.payments.db).count_for_booking(booking.id) == 1


def test_reference_reuse_by_another_booking_conflicts(services, booking):
    other = services.bookings.create_booking("U1", "guest-2", date(2026, 3, 20), date(2026, 3, 22))
    services.payments.record_payment_attempt(booking.id, "fakepay", "ref-1", 120000, "NGN")

    with pytest.raises(IdempotencyConflictError):
        services.payments.record_payment_attempt(other.id, "fakepay", "ref-1", 80000, "NGN")


def test_unknown_reference_is_not_found(services):
    with pytest.raises(PaymentNotFoundError):
        _notify(services, "missing", PaymentStatus.SUCCEEDED)


def test_initiate_sets_sequential_references(services, booking):
    first = services.payments.initiate_payment(booking.id, "guest-1", "fakepay")
    second = services.payments.initiate_payment(booking.id, "guest-1", "fakepay")

    assert first.attempt.provider_reference.endswith("_1")
    assert second.attempt.provider_reference.endswith("_2")
    assert first.checkout.redirect_url.endswith(first.attempt.provider_reference)
    assert services.bookings.get_booking(booking.id).payment_reference == (
        second.attempt.provider_reference
    )


# ---------------------
# SUCCESS / FAILURE
# ---------------------

def test_duplicate_success_keeps_first_confirmation(services, booking, clock, sender):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference
    paid_at = clock()

    first = _notify(services, reference, PaymentStatus.SUCCEEDED, tx_id="tx-1")
    clock.advance(minutes=2)
    second = _notify(services, reference, PaymentStatus.SUCCEEDED, tx_id="tx-2")

    assert first.ok and not first.already_succeeded
    assert second.ok and second.already_succeeded
    assert second.confirmed_at == first.confirmed_at == paid_at
    assert first.booking_status == BookingStatus.CONFIRMED

    attempt = services.payments.get_attempt("fakepay", reference)
    assert attempt.provider_tx_id == "tx-2"
    assert len([item for item in sender.sent if item[0] == "booking_confirmed"]) == 2


def test_failure_after_success_is_ignored(services, booking):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference
    _notify(services, reference, PaymentStatus.SUCCEEDED)

    result = _notify(services, reference, PaymentStatus.FAILED)

    assert result.ok is False
    assert result.reason == "ignored"
    assert result.already_succeeded is True
    assert services.payments.get_attempt("fakepay", reference).status == PaymentStatus.SUCCEEDED
    assert services.bookings.get_booking(booking.id).status == BookingStatus.CONFIRMED


def test_late_success_after_failure_still_confirms(services, booking):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference

    failed = _notify(services, reference, PaymentStatus.FAILED)
    assert failed.reason == "failed"
    assert services.bookings.get_booking(booking.id).status == BookingStatus.PENDING_PAYMENT

    result = _notify(services, reference, PaymentStatus.SUCCEEDED)
    assert result.ok
    assert services.bookings.get_booking(booking.id).status == BookingStatus.CONFIRMED


def test_amount_mismatch_is_flagged_not_applied(services, booking):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference

    result = _notify(services, reference, PaymentStatus.SUCCEEDED, amount_minor=100, currency="NGN")

    assert result.ok is False
    assert result.reason == "provider_mismatch"
    attempt = services.payments.get_attempt("fakepay", reference)
    assert attempt.status == PaymentStatus.INITIATED
    assert attempt.needs_reconcile is True
    assert attempt.reconcile_reason == "provider_mismatch"
    assert services.bookings.get_booking(booking.id).status == BookingStatus.PENDING_PAYMENT


def test_currency_mismatch_is_flagged(services, booking):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference

    result = _notify(services, reference, PaymentStatus.SUCCEEDED, amount_minor=120000, currency="USD")
    assert result.reason == "provider_mismatch"


def test_unclassified_status_routes_to_reconcile(services, booking):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference

    result = _notify(services, reference, None)

    assert result.reason == "provider_status_unknown"
    assert services.payments.get_attempt("fakepay", reference).needs_reconcile is True

    pending = _notify(services, reference, PaymentStatus.INITIATED)
    assert pending.reason == "pending"


def test_late_success_on_cancelled_booking_requires_refund(services, booking, sender):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference
    services.bookings.cancel_booking(booking.id, "guest-1")

    result = _notify(services, reference, PaymentStatus.SUCCEEDED)

    assert result.ok is True
    assert result.booking_status == BookingStatus.CANCELLED
    current = services.bookings.get_booking(booking.id)
    assert current.status == BookingStatus.CANCELLED
    assert current.refund_required is True
    assert ("refund_required", "admin", None, booking.id) in sender.sent
    assert not [item for item in sender.sent if item[0] == "booking_confirmed"]


# ---------------------
# INITIATION
# ---------------------

def test_provider_failure_on_initialize_routes_to_reconcile(services, booking, fake_provider):
    fake_provider.fail_initialize = True

    initiation = services.payments.initiate_payment(booking.id, "guest-1", "fakepay")

    assert initiation.checkout is None
    assert initiation.attempt.needs_reconcile is True
    assert initiation.attempt.reconcile_reason == "provider_initialize_failed"
    assert initiation.attempt.status == PaymentStatus.INITIATED


def test_synchronous_success_confirms_immediately(services, booking, fake_provider):
    fake_provider.initialize_status = PaymentStatus.SUCCEEDED

    initiation = services.payments.initiate_payment(booking.id, "guest-1", "fakepay")

    assert initiation.result.ok is True
    assert initiation.attempt.status == PaymentStatus.SUCCEEDED
    assert services.bookings.get_booking(booking.id).status == BookingStatus.CONFIRMED

    with pytest.raises(InvalidBookingStatusError):
        services.payments.initiate_payment(booking.id, "guest-1", "fakepay")


def test_replayed_success_with_other_amount_keeps_attempt_final(services, booking):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference
    _notify(services, reference, PaymentStatus.SUCCEEDED, amount_minor=120000, currency="NGN")

    replay = _notify(services, reference, PaymentStatus.SUCCEEDED, amount_minor=1, currency="NGN")

    assert replay.ok is True
    assert replay.already_succeeded is True
    attempt = services.payments.get_attempt("fakepay", reference)
    assert attempt.status == PaymentStatus.SUCCEEDED
    assert attempt.needs_reconcile is False
    assert attempt.reconcile_reason is None
    assert services.bookings.get_booking(booking.id).status == BookingStatus.CONFIRMED


def test_succeeded_attempt_cannot_be_flagged(services, booking):
    reference = services.payments.initiate_payment(booking.id, "guest-1", "fakepay").attempt.provider_reference
    _notify(services, reference, PaymentStatus.SUCCEEDED)
    attempt = services.payments.get_attempt("fakepay", reference)

    assert services.payments.mark_needs_reconcile(attempt.id, "provider_mismatch") is False
    assert services.payments.get_attempt("fakepay", reference).needs_reconcile is False


def test_concurrent_initiations_get_distinct_references(
    services, booking, settings, clock, providers, fake_provider
):
    workers = 4
    barrier = threading.Barrier(workers)
    references = []
    errors = []

    def initiate():
        session = SessionLocal()
        try:
            payments = PaymentService(session, providers, settings, clock)
            barrier.wait()
            initiation = payments.initiate_payment(booking.id, "guest-1", "fakepay")
            references.append(initiation.attempt.provider_reference)
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=initiate) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert len(set(references)) == workers
    assert sorted(fake_provider.initialized) == sorted(references)
    assert PaymentAttemptRepository(services.payments.db).count_for_booking(booking.id) == workers
