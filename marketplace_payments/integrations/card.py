"""Card payments through Stripe PaymentIntents."""
from decimal import Decimal
from typing import Any

import structlog

from marketplace_payments.database.models import Payment, PaymentProvider
from marketplace_payments.integrations.base import PaymentProviderAdapter, ProviderResult
from marketplace_payments.integrations.stripe_client import StripeClient, StripeError

logger = structlog.get_logger(__name__)


def to_minor_units(amount: Any) -> int:
    """Convert a two-decimal major-unit amount to the minor unit."""
    return int((Decimal(str(amount)) * 100).to_integral_value())


class StripeAdapter(PaymentProviderAdapter):
    """Synchronous card adapter; the PaymentIntent id becomes the payment reference."""

    provider = PaymentProvider.STRIPE
    stores_provider_reference = True

    def __init__(self, client: StripeClient):
        self.client = client

    async def process(self, payment: Payment, **kwargs: Any) -> ProviderResult:
        try:
            intent = await self.client.create_payment_intent(
                amount_minor=to_minor_units(payment.amount),
                currency=payment.currency,
                idempotency_key=f"payment-{payment.id}",
                metadata={"payment_id": payment.id, "transaction_ref": payment.transaction_ref},
                description=payment.description,
            )
        except StripeError as e:
            return ProviderResult(
                success=False,
                error=str(e),
                details={"errorType": e.error_type.value},
            )

        if intent.status == "canceled":
            return ProviderResult(
                success=False,
                transaction_id=intent.id,
                error="Card payment was canceled",
                details={"intentStatus": intent.status},
            )
        return ProviderResult(
            success=True,
            transaction_id=intent.id,
            details={"intentStatus": intent.status},
        )

    async def refund(self, payment: Payment) -> ProviderResult:
        try:
            refund = await self.client.create_refund(
                payment.transaction_ref,
                idempotency_key=f"refund-{payment.id}",
                reason="requested_by_customer",
            )
        except StripeError as e:
            return ProviderResult(success=False, error=str(e))

        if refund.status in ("failed", "canceled"):
            return ProviderResult(
                success=False,
                transaction_id=refund.id,
                error=f"Stripe refund {refund.status}",
            )
        return ProviderResult(
            success=True,
            transaction_id=refund.id,
            details={"refundStatus": refund.status},
        )
