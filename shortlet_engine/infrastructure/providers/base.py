# shortlet_engine/infrastructure/providers/base.py

from abc import ABC, abstractmethod
from typing import Any

from shortlet_engine.domain.state_machine import PaymentStatus
from shortlet_engine.domain.values import ProviderCheckout, ProviderNotification

_SUCCESS_STATUSES = {"success", "succeeded", "paid", "captured"}
_FAILURE_MARKERS = ("fail", "abandon", "cancel", "revers", "declin")


def classify_status(raw_status: Any) -> PaymentStatus | None:
    """
    Map a provider's own status string onto the ledger vocabulary.
    Anything that is neither clearly paid nor clearly dead is still
    in flight and stays initiated.
    """
    normalized = str(raw_status or "").strip().lower()
    if not normalized:
        return None
    if normalized in _SUCCESS_STATUSES:
        return PaymentStatus.SUCCEEDED
    if any(marker in normalized for marker in _FAILURE_MARKERS):
        return PaymentStatus.FAILED
    return PaymentStatus.INITIATED


def normalize_currency(value: Any) -> str:
    return str(value or "").strip().upper()


def to_minor(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None


class PaymentProviderAdapter(ABC):
    """
    Uniform face of a payment provider. The ledger and the sweeper only
    talk to providers through this interface.
    """

    name: str

    @abstractmethod
    def initialize(
        self,
        *,
        reference: str,
        amount_minor: int,
        currency: str,
        context: dict[str, Any],
    ) -> ProviderCheckout:
        """Start a payment. context carries booking details for the checkout page."""

    @abstractmethod
    def verify(
        self,
        *,
        reference: str,
        tx_id: str | None,
        payload: dict[str, Any],
    ) -> ProviderNotification:
        """Ask the provider for the authoritative state of one payment."""

    @abstractmethod
    def parse_notification(self, raw: dict[str, Any]) -> ProviderNotification:
        """Normalise a webhook body."""

    def verify_signature(self, body: bytes, headers: dict[str, str]) -> bool:
        return False
