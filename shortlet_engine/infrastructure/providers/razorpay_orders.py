# shortlet_engine/infrastructure/providers/razorpay_orders.py

import logging
from typing import Any

import razorpay
import requests

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

_RAZORPAY_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
)


class RazorpayOrdersAdapter(PaymentProviderAdapter):
    """
    Razorpay Orders. The ledger reference is the order receipt; the
    order id is the provider tx id until a captured payment id replaces it.
    """

    name = "razorpay"

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        webhook_secret: str | None = None,
        timeout: float = 10.0,
        client: razorpay.Client | None = None,
    ) -> None:
        if not key_id or not key_secret:
            raise ValueError("Razorpay key id and secret must be provided")
        self._key_id = key_id
        self._webhook_secret = webhook_secret
        self._timeout = timeout
        self._client = client or razorpay.Client(auth=(key_id, key_secret))

    def _call(self, reference: str, operation, *args):
        try:
            return operation(*args, timeout=self._timeout)
        except requests.exceptions.Timeout as exc:
            raise ProviderTimeoutError(f"Razorpay timed out for {reference}") from exc
        except requests.exceptions.RequestException as exc:
            raise ProviderError(f"Razorpay unreachable for {reference}: {exc}") from exc
        except _RAZORPAY_ERRORS as exc:
            raise ProviderError(f"Razorpay rejected {reference}: {exc}") from exc

    def initialize(
        self,
        *,
        reference: str,
        amount_minor: int,
        currency: str,
        context: dict[str, Any],
    ) -> ProviderCheckout:
        order = self._call(
            reference,
            self._client.order.create,
            {
                "amount": amount_minor,
                "currency": normalize_currency(currency),
                "receipt": reference,
                "notes": {
                    "booking_id": context.get("booking_id"),
                    "reference": reference,
                },
            },
        )
        if not isinstance(order, dict) or not order.get("id"):
            raise ProviderMalformedPayloadError(f"Razorpay order for {reference} has no id")

        payload = dict(order)
        payload["order_id"] = order["id"]
        payload["key_id"] = self._key_id
        return ProviderCheckout(payload=payload, tx_id=order["id"])

    def verify(
        self,
        *,
        reference: str,
        tx_id: str | None,
        payload: dict[str, Any],
    ) -> ProviderNotification:
        order_id = payload.get("order_id")
        if not order_id and (tx_id or "").startswith("order_"):
            order_id = tx_id
        if not order_id:
            raise ProviderError(f"No Razorpay order recorded for {reference}")

        response = self._call(reference, self._client.order.payments, order_id)
        items = response.get("items") if isinstance(response, dict) else None
        if not isinstance(items, list):
            raise ProviderMalformedPayloadError(f"Razorpay payments list for {order_id} is malformed")

        result_payload = {"order_id": order_id, "payments": items}
        captured = [item for item in items if str(item.get("status")) == "captured"]
        if captured:
            payment = captured[0]
            return ProviderNotification(
                provider=self.name,
                reference=reference,
                status=PaymentStatus.SUCCEEDED,
                payload=result_payload,
                tx_id=payment.get("id"),
                amount_minor=to_minor(payment.get("amount")),
                currency=normalize_currency(payment.get("currency")) or None,
            )

        if items and all(str(item.get("status")) == "failed" for item in items):
            status = PaymentStatus.FAILED
        else:
            status = PaymentStatus.INITIATED
        return ProviderNotification(
            provider=self.name,
            reference=reference,
            status=status,
            payload=result_payload,
            tx_id=order_id,
        )

    def parse_notification(self, raw: dict[str, Any]) -> ProviderNotification:
        body = raw.get("payload") or {}
        order = (body.get("order") or {}).get("entity") or {}
        payment = (body.get("payment") or {}).get("entity") or {}

        reference = order.get("receipt") or (payment.get("notes") or {}).get("reference")
        if not reference:
            raise ProviderMalformedPayloadError("Razorpay event carries no order receipt")

        event = str(raw.get("event") or "")
        if event == "order.paid":
            status = PaymentStatus.SUCCEEDED
        else:
            status = classify_status(payment.get("status") or order.get("status"))

        source = payment or order
        return ProviderNotification(
            provider=self.name,
            reference=str(reference),
            status=status,
            payload={"event": event, "order": order, "payment": payment, "order_id": order.get("id")},
            tx_id=payment.get("id") or order.get("id"),
            amount_minor=to_minor(source.get("amount")),
            currency=normalize_currency(source.get("currency")) or None,
        )

    def verify_signature(self, body: bytes, headers: dict[str, str]) -> bool:
        if not self._webhook_secret:
            logger.warning("Razorpay webhook received but RAZORPAY_WEBHOOK_SECRET is not set")
            return False
        try:
            self._client.utility.verify_webhook_signature(
                body.decode("utf-8"),
                headers.get("x-razorpay-signature", ""),
                self._webhook_secret,
            )
        except razorpay.errors.SignatureVerificationError:
            return False
        return True
