# shortlet_engine/application/payment_service.py

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from shortlet_engine.application.booking_service import BookingService
from shortlet_engine.application.side_effects import SideEffectDispatcher
from shortlet_engine.config import Settings, get_settings
from shortlet_engine.domain.exceptions import (
    ForbiddenError,
    IdempotencyConflictError,
    InvalidBookingStatusError,
    PaymentNotFoundError,
    ProviderError,
)
from shortlet_engine.domain.state_machine import BookingStatus, PaymentStatus
from shortlet_engine.domain.values import PaymentResult, ProviderCheckout, ProviderNotification
from shortlet_engine.infrastructure.db.models import Booking, PaymentAttempt
from shortlet_engine.infrastructure.db.session import as_utc, utcnow
from shortlet_engine.infrastructure.db.statements import dump_json
from shortlet_engine.infrastructure.providers.base import normalize_currency
from shortlet_engine.infrastructure.providers.registry import ProviderRegistry
from shortlet_engine.infrastructure.repositories.booking_repository import BookingRepository
from shortlet_engine.infrastructure.repositories.payment_repository import (
    PaymentAttemptRepository,
)

logger = logging.getLogger(__name__)

MAX_REFERENCE_CLAIMS = 20


@dataclass
class PaymentInitiation:
    attempt: PaymentAttempt
    checkout: ProviderCheckout | None
    result: PaymentResult | None = None


def payment_reference(booking_id: str, sequence: int) -> str:
    return f"shl_{booking_id.replace('-', '')}_{sequence}"


class PaymentService:
    """
    Payment ledger. Each write is individually idempotent so the chain
    ledger -> booking -> side effects can be replayed from any point.
    """

    def __init__(
        self,
        db: Session,
        providers: ProviderRegistry,
        settings: Settings | None = None,
        now: Callable[[], datetime] = utcnow,
        dispatcher: SideEffectDispatcher | None = None,
    ):
        self.db = db
        self.providers = providers
        self.settings = settings or get_settings()
        self.now = now
        self.booking_service = BookingService(db, self.settings, now, dispatcher)
        self.payment_repository = PaymentAttemptRepository(db)
        self.booking_repository = BookingRepository(db)

    def get_attempt(self, provider: str, provider_reference: str) -> PaymentAttempt:
        attempt = self.payment_repository.get_by_reference(provider_reference, provider)
        if not attempt:
            raise PaymentNotFoundError(
                f"No {provider} payment attempt with reference {provider_reference}"
            )
        return attempt

    def record_payment_attempt(
        self,
        booking_id: str,
        provider: str,
        provider_reference: str,
        amount_total_minor: int,
        currency: str,
    ) -> PaymentAttempt:
        """Insert-if-absent on provider_reference; an existing row comes back untouched."""
        self.booking_service.get_booking(booking_id)

        self.payment_repository.insert_if_absent(
            attempt_id=str(uuid4()),
            booking_id=booking_id,
            provider=provider,
            provider_reference=provider_reference,
            amount_total_minor=amount_total_minor,
            currency=normalize_currency(currency),
            now=self.now(),
        )

        attempt = self.payment_repository.get_by_reference(provider_reference)
        if attempt.booking_id != booking_id or attempt.provider != provider:
            raise IdempotencyConflictError(
                f"Reference {provider_reference} already belongs to another payment"
            )
        return attempt

    def mark_payment_succeeded(
        self,
        provider: str,
        provider_reference: str,
        provider_payload: dict[str, Any] | None = None,
        provider_tx_id: str | None = None,
    ) -> PaymentResult:
        self.get_attempt(provider, provider_reference)
        now = self.now()
        payload_json = dump_json(provider_payload)

        won = self.payment_repository.mark_succeeded(
            provider,
            provider_reference,
            payload_json,
            provider_tx_id,
            now,
        )
        if not won:
            self.payment_repository.update_diagnostics(
                provider,
                provider_reference,
                payload_json,
                provider_tx_id,
                now,
            )

        attempt = self.get_attempt(provider, provider_reference)
        if won:
            logger.info("Payment %s/%s succeeded", provider, provider_reference)
        else:
            logger.info("Payment %s/%s already succeeded; replay ignored", provider, provider_reference)

        return PaymentResult(
            ok=True,
            already_succeeded=not won,
            attempt_id=attempt.id,
            booking_id=attempt.booking_id,
            confirmed_at=as_utc(attempt.confirmed_at),
        )

    def mark_payment_failed(
        self,
        provider: str,
        provider_reference: str,
        reason: str | None = None,
        provider_payload: dict[str, Any] | None = None,
    ) -> bool:
        attempt = self.get_attempt(provider, provider_reference)
        applied = self.payment_repository.mark_failed(
            provider,
            provider_reference,
            reason,
            self.now(),
            dump_json(provider_payload) if provider_payload is not None else None,
        )
        if applied:
            logger.info("Payment %s/%s failed (%s)", provider, provider_reference, reason)
        else:
            logger.warning(
                "Ignoring failure for %s/%s in status %s",
                provider,
                provider_reference,
                attempt.status.value,
            )
        return applied

    def mark_needs_reconcile(
        self,
        attempt_id: str,
        reason: str,
        provider_payload: dict[str, Any] | None = None,
    ) -> bool:
        return self.payment_repository.flag_needs_reconcile(
            attempt_id,
            reason,
            self.now(),
            dump_json(provider_payload) if provider_payload is not None else None,
        )

    def initiate_payment(
        self,
        booking_id: str,
        guest_id: str,
        provider: str,
        customer_email: str | None = None,
    ) -> PaymentInitiation:
        booking = self.booking_service.get_booking(booking_id)
        if booking.guest_id != guest_id:
            raise ForbiddenError(f"Only the guest may pay for booking {booking_id}")
        if booking.status != BookingStatus.PENDING_PAYMENT:
            raise InvalidBookingStatusError(
                f"Booking {booking_id} is not payable in status {booking.status.value}"
            )
        if self.payment_repository.has_succeeded(booking_id):
            raise InvalidBookingStatusError(f"Booking {booking_id} is already paid")

        adapter = self.providers.get(provider)
        now = self.now()

        attempt = self._claim_next_reference(booking, adapter.name, now)
        reference = attempt.provider_reference
        self.booking_repository.set_payment_reference(booking.id, reference, now)
        self.db.commit()

        unit = self.booking_service.unit_repository.get_by_id(booking.unit_id)
        context = {
            "booking_id": booking.id,
            "guest_id": booking.guest_id,
            "customer_email": customer_email,
            "listing_title": unit.title if unit else None,
            "date_from": booking.date_from.isoformat(),
            "date_to": booking.date_to.isoformat(),
            "nights": booking.nights,
        }

        try:
            checkout = adapter.initialize(
                reference=reference,
                amount_minor=booking.total_amount_minor,
                currency=booking.currency,
                context=context,
            )
        except ProviderError as exc:
            # Whether the provider created anything is unknown; let the sweeper ask.
            logger.warning("Initialising %s for %s failed: %s", adapter.name, reference, exc)
            self.payment_repository.flag_needs_reconcile(
                attempt.id,
                "provider_initialize_failed",
                self.now(),
            )
            self.db.commit()
            return PaymentInitiation(
                attempt=self.payment_repository.get_by_id(attempt.id),
                checkout=None,
            )

        self.payment_repository.store_checkout_payload(
            attempt.id,
            dump_json(checkout.payload),
            checkout.tx_id,
            self.now(),
        )
        self.db.commit()

        result = None
        if checkout.status == PaymentStatus.SUCCEEDED:
            result = self.handle_notification(
                ProviderNotification(
                    provider=adapter.name,
                    reference=reference,
                    status=PaymentStatus.SUCCEEDED,
                    payload=checkout.payload,
                    tx_id=checkout.tx_id,
                )
            )

        return PaymentInitiation(
            attempt=self.payment_repository.get_by_id(attempt.id),
            checkout=checkout,
            result=result,
        )

    def handle_notification(self, notification: ProviderNotification) -> PaymentResult:
        """
        Apply one provider answer, from a webhook, a poll or the sweeper.
        Replays of the same answer are no-ops at every step.
        """
        attempt = self.get_attempt(notification.provider, notification.reference)

        if notification.status == PaymentStatus.SUCCEEDED:
            # A settled attempt only takes diagnostics from replays.
            mismatch = None
            if attempt.status != PaymentStatus.SUCCEEDED:
                mismatch = self._mismatch_reason(attempt, notification)
            if mismatch:
                logger.warning(
                    "Payment %s/%s reported paid but %s",
                    notification.provider,
                    notification.reference,
                    mismatch,
                )
                self.mark_needs_reconcile(attempt.id, "provider_mismatch", notification.payload)
                self.db.commit()
                return self._result(attempt, ok=False, reason="provider_mismatch")

            result = self.mark_payment_succeeded(
                notification.provider,
                notification.reference,
                notification.payload,
                notification.tx_id,
            )
            self.db.commit()
            booking = self.booking_service.confirm_after_payment(result.booking_id)
            return replace(result, booking_status=booking.status)

        if notification.status == PaymentStatus.FAILED:
            applied = self.mark_payment_failed(
                notification.provider,
                notification.reference,
                "provider_declined",
                notification.payload,
            )
            self.db.commit()
            return self._result(attempt, ok=False, reason="failed" if applied else "ignored")

        if notification.status is None:
            self.mark_needs_reconcile(attempt.id, "provider_status_unknown", notification.payload)
            self.db.commit()
            return self._result(attempt, ok=False, reason="provider_status_unknown")

        return self._result(attempt, ok=False, reason="pending")

    def _claim_next_reference(
        self,
        booking: Booking,
        provider: str,
        now: datetime,
    ) -> PaymentAttempt:
        """
        References run shl_<booking>_1, _2, ... The unique key on
        provider_reference settles concurrent initiations; whoever loses
        a number moves on to the next one.
        """
        sequence = self.payment_repository.count_for_booking(booking.id)
        for _ in range(MAX_REFERENCE_CLAIMS):
            sequence += 1
            reference = payment_reference(booking.id, sequence)
            claimed = self.payment_repository.insert_if_absent(
                attempt_id=str(uuid4()),
                booking_id=booking.id,
                provider=provider,
                provider_reference=reference,
                amount_total_minor=booking.total_amount_minor,
                currency=normalize_currency(booking.currency),
                now=now,
            )
            if claimed:
                return self.payment_repository.get_by_reference(reference)

        self.db.rollback()
        raise IdempotencyConflictError(
            f"Could not allocate a payment reference for booking {booking.id}"
        )

    def _mismatch_reason(
        self,
        attempt: PaymentAttempt,
        notification: ProviderNotification,
    ) -> str | None:
        if (
            notification.amount_minor is not None
            and notification.amount_minor != attempt.amount_total_minor
        ):
            return (
                f"amount {notification.amount_minor} differs from "
                f"expected {attempt.amount_total_minor}"
            )
        if (
            notification.currency
            and normalize_currency(notification.currency) != normalize_currency(attempt.currency)
        ):
            return f"currency {notification.currency} differs from expected {attempt.currency}"
        return None

    def _result(self, attempt: PaymentAttempt, ok: bool, reason: str) -> PaymentResult:
        current = self.payment_repository.get_by_id(attempt.id)
        booking = self.booking_repository.get_by_id(current.booking_id)
        return PaymentResult(
            ok=ok,
            already_succeeded=current.status == PaymentStatus.SUCCEEDED,
            attempt_id=current.id,
            booking_id=current.booking_id,
            confirmed_at=as_utc(current.confirmed_at),
            booking_status=booking.status if booking else None,
            reason=reason,
        )
