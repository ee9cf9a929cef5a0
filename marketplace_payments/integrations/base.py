"""Provider adapter interface shared by every payment gateway."""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from marketplace_payments.database.models import Payment, PaymentProvider, PaymentStatus


def epoch_millis() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass
class ProviderResult:
    """
    Outcome of a provider call.

    `status` is only set by status queries; None there means the provider
    has not reached a final answer yet.
    """

    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    status: Optional[PaymentStatus] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_log(self) -> Dict[str, Any]:
        """Flatten into payment-log details."""
        entry: Dict[str, Any] = {"success": self.success}
        if self.transaction_id:
            entry["transactionId"] = self.transaction_id
        if self.error:
            entry["error"] = self.error
        entry.update(self.details)
        return entry


class PaymentProviderAdapter(ABC):
    """
    Base class for payment gateway adapters.

    Synchronous adapters settle inside `process`. Asynchronous adapters
    (`is_async = True`) leave the payment in PROCESSING and finish through a
    callback, a verification call or the processing sweeper.
    """

    provider: PaymentProvider
    is_async: bool = False
    # When True the provider's transaction id replaces the payment's
    # transaction_ref once the provider accepts the payment.
    stores_provider_reference: bool = False

    @abstractmethod
    async def process(self, payment: Payment, **kwargs: Any) -> ProviderResult:
        """Charge or initiate the payment with the provider."""

    @abstractmethod
    async def refund(self, payment: Payment) -> ProviderResult:
        """Return the funds of a completed payment."""

    async def query_status(self, payment: Payment) -> Optional[ProviderResult]:
        """Ask the provider for the final status of a PROCESSING payment."""
        return None

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
        return None
