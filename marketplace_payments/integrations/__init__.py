"""Payment gateway integrations."""
from .base import PaymentProviderAdapter, ProviderResult
from .card import StripeAdapter
from .flutterwave import FlutterwaveAdapter
from .manual import BankTransferAdapter, CashAdapter
from .mpesa import MpesaAdapter, normalize_phone_number
from .mpesa_client import DarajaClient
from .registry import ProviderRegistry
from .stripe_client import CircuitBreaker, StripeClient, StripeError

__all__ = [
    "BankTransferAdapter",
    "CashAdapter",
    "CircuitBreaker",
    "DarajaClient",
    "FlutterwaveAdapter",
    "MpesaAdapter",
    "PaymentProviderAdapter",
    "ProviderRegistry",
    "ProviderResult",
    "StripeAdapter",
    "StripeClient",
    "StripeError",
    "normalize_phone_number",
]
