# shortlet_engine/infrastructure/providers/stripe_checkout.py

import json
import logging
from typing import Any

import stripe

from shortlet_engine.domain.exceptions import (
    ProviderError,
    ProviderMalformedPayloadError,
    ProviderTimeoutError,
)
from shortlet_engine.domain.state_machine import PaymentStatus
from shortlet_engine.domain.values import ProviderCheckout, ProviderNotification
from shortlet_engine.infrastructure.providers.base import (
    PaymentProviderAdapter,
    classify_status,
    normalize_currency,
    to_minor,
)

logger = logging.getLogger(__name__)

_SESSION_FIELDS = (
    "id",
    "status",
    "payment_status",
    "amount_total",
    "currency",
    "payment_intent",
    "client_reference_id",
    "url",
)


def _session_payload(session: Any) -> dict[str, Any]:
    payload = {}
    for field_name in _SESSION_FIELDS:
        value = getattr(session, field_name, None)
        if value is not None and not isinstance(value, (str, int, float, bool)):
            value = getattr(value, "id", None)
        payload[field_name] = value
    return payload


def _session_status(payload: dict[str, Any]) -> PaymentStatus | None:
    payment_status = str(payload.get("payment_status") or "").lower()
    if payment_status in ("paid", "no_payment_required"):
        return PaymentStatus.SUCCEEDED
    if str(payload.get("status") or "").lower() == "expired":
        return PaymentStatus.FAILED
    return classify_status(payment_status)


class StripeCheckoutAdapter(PaymentProviderAdapter):
    """
    Stripe Checkout Sessions. The ledger reference travels as
    client_reference_id; the session id is kept as the provider tx id
    until a payment intent replaces it.
    """

    name = "stripe"

    def __init__(
        self,
        *,
        secret_key: str,
        success_url: str,
        cancel_url: str,
        webhook_secret: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        if not secret_key:
            raise ValueError("Stripe secret key must be provided")
        self._secret_key = secret_key
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._webhook_secret = webhook_secret

        stripe.default_http_client = stripe.new_default_http_client(timeout=timeout)
        stripe.max_network_retries = 1

    def initialize(
        self,
        *,
        reference: str,
        amount_minor: int,
        currency: str,
        context: dict[str, Any],
    ) -> ProviderCheckout:
        nights = context.get("nights") or 0
        description = (
            f"{context.get('date_from')} to {context.get('date_to')} "
            f"- {nights} night{'' if nights == 1 else 's'}"
        )
        try:
            session = stripe.checkout.Session.create(
                api_key=self._secret_key,
                mode="payment",
                success_url=self._success_url,
                cancel_url=self._cancel_url,
                client_reference_id=reference,
                customer_email=context.get("customer_email") or None,
                metadata={
                    "booking_id": context.get("booking_id"),
                    "reference": reference,
                    "source": "shortlet_booking",
                },
                line_items=[
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": amount_minor,
                            "product_data": {
                                "name": context.get("listing_title") or "Shortlet booking",
                                "description": description,
                            },
                        },
                    }
                ],
            )
        except stripe.APIConnectionError as exc:
            raise ProviderTimeoutError(f"Stripe unreachable while creating {reference}") from exc
        except stripe.StripeError as exc:
            raise ProviderError(f"Stripe rejected checkout for {reference}: {exc}") from exc

        payload = _session_payload(session)
        if not payload.get("id") or not payload.get("url"):
            raise ProviderMalformedPayloadError("Stripe returned a session without id or url")

        return ProviderCheckout(
            payload=payload,
            redirect_url=payload["url"],
            tx_id=payload["id"],
        )

    def verify(
        self,
        *,
        reference: str,
        tx_id: str | None,
        payload: dict[str, Any],
    ) -> ProviderNotification:
        session_id = payload.get("id") if str(payload.get("id") or "").startswith("cs_") else None
        session_id = session_id or (tx_id if (tx_id or "").startswith("cs_") else None)
        if not session_id:
            raise ProviderError(f"No Stripe checkout session recorded for {reference}")

        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._secret_key)
        except stripe.APIConnectionError as exc:
            raise ProviderTimeoutError(f"Stripe unreachable while verifying {reference}") from exc
        except stripe.StripeError as exc:
            raise ProviderError(f"Stripe verify failed for {reference}: {exc}") from exc

        return self._notification(reference, _session_payload(session))

    def parse_notification(self, raw: dict[str, Any]) -> ProviderNotification:
        event_type = str(raw.get("type") or "")
        session = (raw.get("data") or {}).get("object")
        if not isinstance(session, dict):
            raise ProviderMalformedPayloadError("Stripe event carries no data.object")

        reference = session.get("client_reference_id") or (session.get("metadata") or {}).get("reference")
        if not reference:
            raise ProviderMalformedPayloadError("Stripe session carries no client_reference_id")

        payload = {field_name: session.get(field_name) for field_name in _SESSION_FIELDS}
        payload["event_type"] = event_type

        notification = self._notification(str(reference), payload)
        if event_type == "checkout.session.async_payment_failed":
            return ProviderNotification(
                provider=notification.provider,
                reference=notification.reference,
                status=PaymentStatus.FAILED,
                payload=notification.payload,
                tx_id=notification.tx_id,
                amount_minor=notification.amount_minor,
                currency=notification.currency,
            )
        return notification

    def verify_signature(self, body: bytes, headers: dict[str, str]) -> bool:
        if not self._webhook_secret:
            logger.warning("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
            return False
        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"),
                headers.get("stripe-signature", ""),
                self._webhook_secret,
            )
        except stripe.SignatureVerificationError:
            return False
        return True

    def _notification(self, reference: str, payload: dict[str, Any]) -> ProviderNotification:
        payment_intent = payload.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return ProviderNotification(
            provider=self.name,
            reference=reference,
            status=_session_status(payload),
            payload=json.loads(json.dumps(payload, default=str)),
            tx_id=payment_intent or payload.get("id"),
            amount_minor=to_minor(payload.get("amount_total")),
            currency=normalize_currency(payload.get("currency")) or None,
        )
