# shortlet_engine/infrastructure/providers/registry.py

import logging

from shortlet_engine.config import Settings
from shortlet_engine.domain.exceptions import ProviderNotConfiguredError
from shortlet_engine.infrastructure.providers.base import PaymentProviderAdapter
from shortlet_engine.infrastructure.providers.paystack import PaystackAdapter
from shortlet_engine.infrastructure.providers.razorpay_orders import RazorpayOrdersAdapter
from shortlet_engine.infrastructure.providers.stripe_checkout import StripeCheckoutAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:

    def __init__(self, adapters: list[PaymentProviderAdapter] | None = None):
        self._adapters: dict[str, PaymentProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: PaymentProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, provider: str) -> PaymentProviderAdapter:
        adapter = self._adapters.get(str(provider or "").strip().lower())
        if adapter is None:
            raise ProviderNotConfiguredError(f"Payment provider '{provider}' is not configured")
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        registry = cls()
        timeout = settings.provider_timeout_seconds

        if settings.stripe_secret_key:
            registry.register(
                StripeCheckoutAdapter(
                    secret_key=settings.stripe_secret_key,
                    success_url=settings.stripe_success_url,
                    cancel_url=settings.stripe_cancel_url,
                    webhook_secret=settings.stripe_webhook_secret,
                    timeout=timeout,
                )
            )
        if settings.paystack_secret_key:
            registry.register(
                PaystackAdapter(
                    secret_key=settings.paystack_secret_key,
                    callback_url=settings.paystack_callback_url,
                    timeout=timeout,
                )
            )
        if settings.razorpay_key_id and settings.razorpay_key_secret:
            registry.register(
                RazorpayOrdersAdapter(
                    key_id=settings.razorpay_key_id,
                    key_secret=settings.razorpay_key_secret,
                    webhook_secret=settings.razorpay_webhook_secret,
                    timeout=timeout,
                )
            )

        logger.info("Payment providers configured: %s", ", ".join(registry.names()) or "none")
        return registry
