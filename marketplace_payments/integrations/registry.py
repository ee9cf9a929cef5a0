"""Provider-keyed adapter registry, built once at startup."""
from typing import Dict, Iterable, Iterator, Optional, Type, TypeVar

import structlog

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.exceptions import PaymentValidationError, ProviderError
from marketplace_payments.core.lifecycle import PaymentLifecycleManager
from marketplace_payments.database.models import PaymentProvider
from marketplace_payments.integrations.base import PaymentProviderAdapter
from marketplace_payments.integrations.card import StripeAdapter
from marketplace_payments.integrations.flutterwave import FlutterwaveAdapter
from marketplace_payments.integrations.manual import BankTransferAdapter, CashAdapter
from marketplace_payments.integrations.mpesa import MpesaAdapter
from marketplace_payments.integrations.mpesa_client import DarajaClient
from marketplace_payments.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)

AdapterT = TypeVar("AdapterT", bound=PaymentProviderAdapter)


class ProviderRegistry:
    """Maps each PaymentProvider to its adapter."""

    def __init__(self, adapters: Iterable[PaymentProviderAdapter]):
        self._adapters: Dict[PaymentProvider, PaymentProviderAdapter] = {}
        for adapter in adapters:
            self._adapters[adapter.provider] = adapter

    def get(self, provider: str) -> PaymentProviderAdapter:
        """
        Look up the adapter for a provider.

        Raises:
            PaymentValidationError: If the provider is unknown or not registered
        """
        try:
            return self._adapters[PaymentProvider(provider)]
        except (ValueError, KeyError):
            raise PaymentValidationError(f"Unsupported payment provider: {provider}")

    def __contains__(self, provider: object) -> bool:
        try:
            return PaymentProvider(provider) in self._adapters
        except ValueError:
            return False

    def __iter__(self) -> Iterator[PaymentProviderAdapter]:
        return iter(self._adapters.values())

    def _typed(self, provider: PaymentProvider, adapter_type: Type[AdapterT]) -> AdapterT:
        adapter = self.get(provider.value)
        if not isinstance(adapter, adapter_type):
            raise ProviderError(
                f"{provider.value} is served by {type(adapter).__name__}, "
                f"expected {adapter_type.__name__}",
                provider=provider.value,
            )
        return adapter

    @property
    def mpesa(self) -> MpesaAdapter:
        return self._typed(PaymentProvider.MPESA, MpesaAdapter)

    @property
    def flutterwave(self) -> FlutterwaveAdapter:
        return self._typed(PaymentProvider.FLUTTERWAVE, FlutterwaveAdapter)

    async def aclose(self) -> None:
        """Close every adapter's network resources."""
        for adapter in self._adapters.values():
            await adapter.aclose()

    @classmethod
    def build(
        cls,
        lifecycle: PaymentLifecycleManager,
        settings: Optional[Settings] = None,
        daraja_client: Optional[DarajaClient] = None,
        stripe_client: Optional[StripeClient] = None,
        flutterwave: Optional[FlutterwaveAdapter] = None,
    ) -> "ProviderRegistry":
        """Create the default registry with every supported provider."""
        settings = settings or get_settings()
        registry = cls(
            [
                MpesaAdapter(lifecycle, daraja_client or DarajaClient(settings)),
                StripeAdapter(stripe_client or StripeClient(settings)),
                flutterwave or FlutterwaveAdapter(settings),
                BankTransferAdapter(),
                CashAdapter(),
            ]
        )
        logger.info(
            "provider_registry_built",
            providers=[adapter.provider.value for adapter in registry],
        )
        return registry
