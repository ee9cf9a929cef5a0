"""Manual-settlement adapters (bank transfer, cash)."""
from typing import Any

import structlog

from marketplace_payments.database.models import Payment, PaymentProvider
from marketplace_payments.integrations.base import (
    PaymentProviderAdapter,
    ProviderResult,
    epoch_millis,
)

logger = structlog.get_logger(__name__)


class ManualSettlementAdapter(PaymentProviderAdapter):
    """
    Records an offline settlement.

    The money moves outside the system; the adapter only issues a
    reference such as ``BANK_1700000000000``.
    """

    reference_prefix: str

    async def process(self, payment: Payment, **kwargs: Any) -> ProviderResult:
        reference = f"{self.reference_prefix}_{epoch_millis()}"
        logger.info(
            "manual_settlement_recorded",
            payment_id=payment.id,
            provider=self.provider.value,
            reference=reference,
        )
        return ProviderResult(success=True, transaction_id=reference)

    async def refund(self, payment: Payment) -> ProviderResult:
        reference = f"REFUND_{self.reference_prefix}_{epoch_millis()}"
        logger.info(
            "manual_refund_recorded",
            payment_id=payment.id,
            provider=self.provider.value,
            reference=reference,
        )
        return ProviderResult(success=True, transaction_id=reference)


class BankTransferAdapter(ManualSettlementAdapter):
    provider = PaymentProvider.BANK_TRANSFER
    reference_prefix = "BANK"


class CashAdapter(ManualSettlementAdapter):
    provider = PaymentProvider.CASH
    reference_prefix = "CASH"
