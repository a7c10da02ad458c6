# shortlet_engine/infrastructure/providers/paystack.py

import hashlib
import hmac
import logging
from typing import Any

import httpx

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


class PaystackAdapter(PaymentProviderAdapter):
    """Paystack transactions over the REST API."""

    name = "paystack"

    def __init__(
        self,
        *,
        secret_key: str,
        callback_url: str | None = None,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not secret_key:
            raise ValueError("Paystack secret key must be provided")
        self._secret_key = secret_key
        self._callback_url = callback_url
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, json=json_body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"Paystack timed out on {path}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Paystack request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderMalformedPayloadError(
                f"Paystack returned non-JSON body ({response.status_code})"
            ) from exc

        if not isinstance(body, dict):
            raise ProviderMalformedPayloadError("Paystack returned an unexpected body")

        # Paystack answers 400 for a verify of an abandoned or unknown transaction;
        # the body still carries data worth classifying.
        if response.status_code >= 500:
            raise ProviderError(
                f"Paystack error {response.status_code}: {body.get('message')}"
            )
        return body

    def initialize(
        self,
        *,
        reference: str,
        amount_minor: int,
        currency: str,
        context: dict[str, Any],
    ) -> ProviderCheckout:
        body: dict[str, Any] = {
            "reference": reference,
            "amount": amount_minor,
            "currency": normalize_currency(currency),
            "email": context.get("customer_email") or f"{context.get('guest_id')}@guests.invalid",
            "metadata": {
                "booking_id": context.get("booking_id"),
                "source": "shortlet_booking",
            },
        }
        if self._callback_url:
            body["callback_url"] = self._callback_url

        response = self._request("POST", "/transaction/initialize", json_body=body)
        data = response.get("data")
        if not response.get("status") or not isinstance(data, dict):
            raise ProviderError(
                f"Paystack could not initialise {reference}: {response.get('message')}"
            )

        return ProviderCheckout(
            payload=response,
            redirect_url=data.get("authorization_url"),
        )

    def verify(
        self,
        *,
        reference: str,
        tx_id: str | None,
        payload: dict[str, Any],
    ) -> ProviderNotification:
        response = self._request("GET", f"/transaction/verify/{reference}")
        data = response.get("data")
        if not isinstance(data, dict):
            if response.get("status") is False:
                # Unknown to Paystack yet; keep it in flight.
                return ProviderNotification(
                    provider=self.name,
                    reference=reference,
                    status=PaymentStatus.INITIATED,
                    payload=response,
                )
            raise ProviderMalformedPayloadError(f"Paystack verify for {reference} has no data")
        return self._notification_from_data(reference, data, response)

    def parse_notification(self, raw: dict[str, Any]) -> ProviderNotification:
        data = raw.get("data")
        if not isinstance(data, dict) or not data.get("reference"):
            raise ProviderMalformedPayloadError("Paystack event carries no transaction reference")
        return self._notification_from_data(str(data["reference"]), data, raw)

    def verify_signature(self, body: bytes, headers: dict[str, str]) -> bool:
        signature = headers.get("x-paystack-signature", "")
        expected = hmac.new(
            self._secret_key.encode("utf-8"),
            body,
            hashlib.sha512,
        ).hexdigest()
        return bool(signature) and hmac.compare_digest(expected, signature)

    def _notification_from_data(
        self,
        reference: str,
        data: dict[str, Any],
        payload: dict[str, Any],
    ) -> ProviderNotification:
        tx_id = data.get("id")
        return ProviderNotification(
            provider=self.name,
            reference=reference,
            status=classify_status(data.get("status")),
            payload=payload,
            tx_id=str(tx_id) if tx_id is not None else None,
            amount_minor=to_minor(data.get("amount")),
            currency=normalize_currency(data.get("currency")) or None,
        )
