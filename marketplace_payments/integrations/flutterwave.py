"""
Flutterwave hosted-checkout adapter.

The customer pays on Flutterwave's page; the payment waits in PROCESSING
until it is verified by reference.
"""
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.database.models import Payment, PaymentProvider, PaymentStatus
from marketplace_payments.integrations.base import PaymentProviderAdapter, ProviderResult
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class FlutterwaveAdapter(PaymentProviderAdapter):
    """Flutterwave Standard checkout with verify-by-reference settlement."""

    provider = PaymentProvider.FLUTTERWAVE
    is_async = True

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.flutterwave_base_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.flutterwave_request_timeout
        )

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.flutterwave_secret_key}",
            "Content-Type": "application/json",
        }

    async def process(self, payment: Payment, **kwargs: Any) -> ProviderResult:
        """Create a hosted checkout link for the payment's tx_ref."""
        if not self.settings.flutterwave_secret_key:
            return ProviderResult(success=False, error="Flutterwave secret key not configured")

        user = payment.user
        payload = {
            "tx_ref": payment.transaction_ref,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "redirect_url": self.settings.flutterwave_redirect_url,
            "customer": {
                "email": user.email,
                "phonenumber": user.phone,
                "name": " ".join(filter(None, [user.first_name, user.last_name])),
            },
            "customizations": {"title": payment.description or "Property payment"},
        }

        started = time.perf_counter()
        try:
            response = await self.http_client.post(
                f"{self.base_url}/v3/payments", json=payload, headers=self.headers
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            metrics.record_provider_call(
                "FLUTTERWAVE", "create_checkout", "failed", time.perf_counter() - started
            )
            logger.error("flutterwave_checkout_failed", payment_id=payment.id, error=str(e))
            return ProviderResult(success=False, error=f"Flutterwave checkout failed: {e}")

        metrics.record_provider_call(
            "FLUTTERWAVE", "create_checkout", "success", time.perf_counter() - started
        )
        link = (data.get("data") or {}).get("link")
        if data.get("status") != "success" or not link:
            return ProviderResult(
                success=False,
                error=data.get("message") or "Flutterwave checkout failed",
            )
        return ProviderResult(
            success=True,
            transaction_id=payment.transaction_ref,
            details={"checkoutLink": link},
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _verify_request(self, tx_ref: str) -> httpx.Response:
        return await self.http_client.get(
            f"{self.base_url}/v3/transactions/verify_by_reference",
            params={"tx_ref": tx_ref},
            headers=self.headers,
        )

    async def verify(self, payment: Payment) -> ProviderResult:
        """
        Verify a checkout by its tx_ref.

        Returns a result whose `status` is COMPLETED or FAILED when
        Flutterwave has settled the transaction, and None while it is
        still pending or the lookup failed.
        """
        if not self.settings.flutterwave_secret_key:
            return ProviderResult(success=False, error="Flutterwave secret key not configured")

        started = time.perf_counter()
        try:
            response = await self._verify_request(payment.transaction_ref)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            metrics.record_provider_call(
                "FLUTTERWAVE", "verify", "failed", time.perf_counter() - started
            )
            logger.warning("flutterwave_verify_failed", payment_id=payment.id, error=str(e))
            return ProviderResult(success=False, error=f"Flutterwave verification failed: {e}")

        metrics.record_provider_call("FLUTTERWAVE", "verify", "success", time.perf_counter() - started)
        data = body.get("data") or {}
        transaction_id = str(data["id"]) if data.get("id") is not None else None
        details = {
            "flutterwaveTransactionId": transaction_id,
            "flutterwaveStatus": data.get("status"),
            "source": "verify_by_reference",
        }

        status = data.get("status")
        if status == "successful":
            amount_ok = Decimal(str(data.get("amount") or 0)) >= Decimal(str(payment.amount))
            if amount_ok and data.get("currency") == payment.currency:
                return ProviderResult(
                    success=True,
                    transaction_id=transaction_id,
                    status=PaymentStatus.COMPLETED,
                    details=details,
                )
            logger.warning(
                "flutterwave_verify_mismatch",
                payment_id=payment.id,
                amount=data.get("amount"),
                currency=data.get("currency"),
            )
            return ProviderResult(
                success=False,
                transaction_id=transaction_id,
                error="Amount or currency mismatch",
                status=PaymentStatus.FAILED,
                details=details,
            )
        if status == "failed":
            return ProviderResult(
                success=False,
                transaction_id=transaction_id,
                error=data.get("processor_response") or "Flutterwave transaction failed",
                status=PaymentStatus.FAILED,
                details=details,
            )
        return ProviderResult(success=False, transaction_id=transaction_id, details=details)

    async def query_status(self, payment: Payment) -> Optional[ProviderResult]:
        result = await self.verify(payment)
        return result if result.status is not None else None

    async def refund(self, payment: Payment) -> ProviderResult:
        verified = await self.verify(payment)
        if verified.status != PaymentStatus.COMPLETED or not verified.transaction_id:
            return ProviderResult(
                success=False,
                error=verified.error or "Flutterwave transaction not refundable",
            )

        started = time.perf_counter()
        try:
            response = await self.http_client.post(
                f"{self.base_url}/v3/transactions/{verified.transaction_id}/refund",
                headers=self.headers,
                json={},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            metrics.record_provider_call(
                "FLUTTERWAVE", "refund", "failed", time.perf_counter() - started
            )
            logger.error("flutterwave_refund_failed", payment_id=payment.id, error=str(e))
            return ProviderResult(success=False, error=f"Flutterwave refund failed: {e}")

        metrics.record_provider_call("FLUTTERWAVE", "refund", "success", time.perf_counter() - started)
        refund_id = (body.get("data") or {}).get("id")
        return ProviderResult(
            success=body.get("status") == "success",
            transaction_id=str(refund_id) if refund_id is not None else None,
            error=None if body.get("status") == "success" else body.get("message"),
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()
