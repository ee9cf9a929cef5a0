"""
Payment orchestration across the lifecycle manager and provider adapters.

Flows:
1. Create and process a payment with any provider
2. Initiate an M-Pesa STK Push and reconcile its callback
3. Refund a completed payment inside the refund window
4. Verify a Flutterwave hosted checkout
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

import structlog

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.exceptions import (
    NotFoundError,
    PaymentError,
    PaymentValidationError,
)
from marketplace_payments.core.lifecycle import PaymentLifecycleManager
from marketplace_payments.database.models import Payment, PaymentProvider, PaymentStatus
from marketplace_payments.integrations.base import PaymentProviderAdapter, ProviderResult
from marketplace_payments.integrations.mpesa import normalize_phone_number
from marketplace_payments.integrations.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

REFUND_NOT_ELIGIBLE = "Payment not found or not eligible for refund"


@dataclass
class PaymentOutcome:
    """Result of a payment flow handed back to the API layer."""

    payment: Payment
    success: bool
    error: Optional[str] = None
    transaction_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class PaymentService:
    """
    High-level payment operations.

    Once a payment row exists every path leaves it in PROCESSING or a
    terminal state; provider exceptions become FAILED payments.
    """

    def __init__(
        self,
        lifecycle: PaymentLifecycleManager,
        registry: ProviderRegistry,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment service.

        Args:
            lifecycle: Payment lifecycle manager
            registry: Provider adapter registry
            settings: Optional settings (defaults to the cached instance)
        """
        self.lifecycle = lifecycle
        self.registry = registry
        self.settings = settings or get_settings()

    async def create_and_process(self, user_id: str, body: Mapping[str, Any]) -> PaymentOutcome:
        """
        Create a payment and run it through its provider.

        MPESA payments are routed to the STK Push flow and come back
        PROCESSING; Flutterwave payments stay PROCESSING until verified.

        Raises:
            PaymentValidationError: If the request is invalid (nothing written)
            NotFoundError: If the owner or property does not exist
        """
        provider = body.get("paymentMethod")
        if provider == PaymentProvider.MPESA.value:
            return await self.initiate_stk_push(user_id, body)

        if not provider:
            raise PaymentValidationError("Valid payment provider is required")
        adapter = self.registry.get(provider)
        payment = await self.lifecycle.create(self._payment_fields(user_id, body, provider))

        await self.lifecycle.transition(
            payment.id, PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value
        )
        result = await self._run_process(adapter, payment)

        if result.success and adapter.is_async:
            await self.lifecycle.log_action(payment.id, "PROVIDER_INITIATED", result.to_log())
            current = await self.lifecycle.get_by_id(payment.id)
            return PaymentOutcome(
                payment=current,
                success=True,
                transaction_id=result.transaction_id,
                details=result.details,
            )

        if result.success:
            target = PaymentStatus.COMPLETED.value
            details = result.to_log()
        else:
            target = PaymentStatus.FAILED.value
            details = {"error": result.error}

        new_ref = None
        if result.success and adapter.stores_provider_reference:
            new_ref = result.transaction_id
        updated = await self.lifecycle.transition(
            payment.id, PaymentStatus.PROCESSING.value, target, details, transaction_ref=new_ref
        )
        current = updated or await self.lifecycle.get_by_id(payment.id)
        return PaymentOutcome(
            payment=current,
            success=result.success,
            error=result.error,
            transaction_id=result.transaction_id or current.transaction_ref,
            details=result.details,
        )

    async def _run_process(self, adapter: PaymentProviderAdapter, payment: Payment) -> ProviderResult:
        try:
            return await adapter.process(payment)
        except Exception as e:
            logger.exception(
                "provider_process_unexpected_error",
                payment_id=payment.id,
                provider=payment.provider,
            )
            return ProviderResult(success=False, error=str(e) or e.__class__.__name__)

    @staticmethod
    def _payment_fields(user_id: str, body: Mapping[str, Any], provider: Optional[str]) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "amount": body.get("amount"),
            "currency": body.get("currency"),
            "provider": provider,
            "property_id": body.get("propertyId"),
            "description": body.get("description"),
        }

    async def initiate_stk_push(self, user_id: str, body: Mapping[str, Any]) -> PaymentOutcome:
        """
        Create an MPESA payment and send the STK prompt.

        The phone number is checked before anything is written.

        Raises:
            PaymentValidationError: If the request is invalid (nothing written)
        """
        phone_number = normalize_phone_number(body.get("phoneNumber"))
        payment = await self.lifecycle.create(
            self._payment_fields(user_id, body, PaymentProvider.MPESA.value)
        )

        property_details = body.get("propertyDetails")
        if not property_details and payment.property is not None:
            property_details = {"title": payment.property.title}

        result = await self.registry.mpesa.initiate(payment, phone_number, property_details)
        if not result["success"]:
            current = await self.lifecycle.get_by_id(payment.id)
            return PaymentOutcome(payment=current, success=False, error=result["error"])

        return PaymentOutcome(
            payment=result["payment"],
            success=True,
            transaction_id=result["checkoutRequestId"],
            details={
                "checkoutRequestId": result["checkoutRequestId"],
                "merchantRequestId": result["merchantRequestId"],
                "responseCode": result["responseCode"],
                "responseDescription": result["responseDescription"],
                "customerMessage": result["customerMessage"],
                "phoneNumber": phone_number,
            },
        )

    async def handle_mpesa_callback(self, payload: Any) -> Dict[str, Any]:
        """Reconcile a Daraja STK callback."""
        return await self.registry.mpesa.handle_callback(payload)

    async def refund(self, payment_id: str, user_id: str, reason: str) -> PaymentOutcome:
        """
        Refund a COMPLETED payment owned by `user_id`.

        Raises:
            NotFoundError: If the payment is missing, foreign or not COMPLETED
            PaymentValidationError: If the payment is outside the refund window
        """
        try:
            payment = await self.lifecycle.get_by_id(payment_id, owner_id=user_id)
        except NotFoundError:
            raise NotFoundError(REFUND_NOT_ELIGIBLE)
        if payment.status != PaymentStatus.COMPLETED.value:
            raise NotFoundError(REFUND_NOT_ELIGIBLE)

        window = timedelta(days=self.settings.refund_window_days)
        if datetime.utcnow() - payment.created_at > window:
            raise PaymentValidationError(
                "Payment is outside refund window", error_code="refund_window_expired"
            )

        adapter = self.registry.get(payment.provider)
        try:
            result = await adapter.refund(payment)
        except Exception as e:
            logger.exception("provider_refund_unexpected_error", payment_id=payment.id)
            result = ProviderResult(success=False, error=str(e) or e.__class__.__name__)

        if not result.success:
            await self.lifecycle.log_action(
                payment.id, "REFUND_FAILED", {"reason": reason, "error": result.error}
            )
            logger.warning("refund_failed", payment_id=payment.id, error=result.error)
            return PaymentOutcome(payment=payment, success=False, error=result.error)

        updated = await self.lifecycle.transition(
            payment.id,
            PaymentStatus.COMPLETED.value,
            PaymentStatus.REFUNDED.value,
            {
                "reason": reason,
                "refundTransactionId": result.transaction_id,
                "refundAmount": payment.amount,
            },
        )
        if updated is None:
            raise NotFoundError(REFUND_NOT_ELIGIBLE)

        logger.info(
            "refund_processed",
            payment_id=payment.id,
            refund_transaction_id=result.transaction_id,
        )
        return PaymentOutcome(
            payment=updated,
            success=True,
            transaction_id=result.transaction_id,
            details=result.details,
        )

    async def verify_flutterwave(
        self, user_id: str, tx_ref: str, transaction_id: Optional[str] = None
    ) -> PaymentOutcome:
        """
        Verify a Flutterwave checkout and settle the payment.

        Raises:
            NotFoundError: If no Flutterwave payment with `tx_ref` belongs to the user
        """
        payment = await self.lifecycle.find_by_transaction_ref(
            tx_ref, PaymentProvider.FLUTTERWAVE.value
        )
        if payment is None or payment.user_id != user_id:
            raise NotFoundError("Payment not found")

        if payment.status != PaymentStatus.PROCESSING.value:
            current = await self.lifecycle.get_by_id(payment.id)
            return PaymentOutcome(
                payment=current,
                success=current.status == PaymentStatus.COMPLETED.value,
                error=None if current.status == PaymentStatus.COMPLETED.value else f"Payment is {current.status}",
                details={"alreadySettled": True},
            )

        result = await self.registry.flutterwave.verify(payment)
        if transaction_id and result.transaction_id and str(transaction_id) != result.transaction_id:
            logger.warning(
                "flutterwave_transaction_id_mismatch",
                payment_id=payment.id,
                claimed=transaction_id,
                verified=result.transaction_id,
            )
            result = ProviderResult(
                success=False,
                transaction_id=result.transaction_id,
                error="Transaction ID does not match",
                status=PaymentStatus.FAILED,
                details=result.details,
            )

        return await self.settle(payment, result)

    async def settle(self, payment: Payment, result: Optional[ProviderResult]) -> PaymentOutcome:
        """
        Apply a provider status result to a PROCESSING payment.

        A result without a final status leaves the payment untouched.
        """
        if result is None or result.status is None:
            current = await self.lifecycle.get_by_id(payment.id)
            return PaymentOutcome(
                payment=current,
                success=False,
                error=(result.error if result else None) or "Payment is still being processed",
                details=result.details if result else {},
            )

        details = result.to_log()
        if result.status == PaymentStatus.FAILED and result.error:
            details.setdefault("failureReason", result.error)

        try:
            updated = await self.lifecycle.transition(
                payment.id,
                PaymentStatus.PROCESSING.value,
                result.status.value,
                details,
            )
        except PaymentError as e:
            logger.error("payment_settle_failed", payment_id=payment.id, error=e.message)
            raise

        current = updated or await self.lifecycle.get_by_id(payment.id)
        return PaymentOutcome(
            payment=current,
            success=current.status == PaymentStatus.COMPLETED.value,
            error=result.error,
            transaction_id=result.transaction_id,
            details=result.details,
        )
