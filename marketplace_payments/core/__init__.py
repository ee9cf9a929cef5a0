"""Core payment processing logic."""
from .exceptions import (
    AuthenticationError,
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
    ProviderError,
    RateLimitError,
    SecurityPolicyError,
)
from .lifecycle import PaymentLifecycleManager, generate_transaction_ref

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "InvalidTransitionError",
    "NotFoundError",
    "PaymentError",
    "PaymentLifecycleManager",
    "PaymentValidationError",
    "ProviderError",
    "RateLimitError",
    "SecurityPolicyError",
    "generate_transaction_ref",
]
