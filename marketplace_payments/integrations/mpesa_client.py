"""
Safaricom Daraja API client.

Implements:
- OAuth client-credentials token with in-memory caching
- STK Push (Lipa Na M-Pesa Online) initiation
- STK Push status query
"""
import base64
import time
from decimal import ROUND_HALF_UP, Decimal
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.exceptions import ProviderError
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Refresh the token this many seconds before Daraja expires it.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def daraja_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp in the YYYYMMDDHHmmss form Daraja expects."""
    return (now or datetime.utcnow()).strftime("%Y%m%d%H%M%S")


def whole_units(amount: Any) -> int:
    """Daraja takes integer shillings; halves round up."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Base64 of shortcode + passkey + timestamp."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class DarajaClient:
    """
    Async client for the Daraja endpoints used by STK Push.

    Shares a single httpx.AsyncClient across calls. Only idempotent reads
    (token fetch, status query) are retried; STK initiation never is.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize Daraja client.

        Args:
            settings: Optional settings (defaults to the cached instance)
            http_client: Optional shared HTTP client
            clock: Monotonic clock used for token expiry
        """
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.mpesa_base_url,
            timeout=self.settings.mpesa_request_timeout,
        )
        self._clock = clock
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def base_url(self) -> str:
        return self.settings.mpesa_base_url

    def _require(self, value: Optional[str], name: str) -> str:
        if not value:
            raise ProviderError(f"M-Pesa {name} not configured", provider="MPESA")
        return value

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _fetch_token(self) -> Dict[str, Any]:
        key = self._require(self.settings.mpesa_consumer_key, "consumer key")
        secret = self._require(self.settings.mpesa_consumer_secret, "consumer secret")
        response = await self.http_client.get(
            f"{self.base_url}{TOKEN_PATH}", auth=httpx.BasicAuth(key, secret)
        )
        response.raise_for_status()
        return response.json()

    async def get_access_token(self) -> str:
        """
        Get a bearer token, reusing the cached one until shortly before expiry.

        Raises:
            ProviderError: If credentials are missing or Daraja rejects them
        """
        now = self._clock()
        if self._access_token and now < self._token_expires_at:
            return self._access_token

        try:
            data = await self._fetch_token()
        except httpx.HTTPError as e:
            logger.error("mpesa_token_request_failed", error=str(e))
            raise ProviderError(
                f"Failed to get M-Pesa access token: {e}", provider="MPESA"
            ) from e

        token = data.get("access_token")
        if not token:
            raise ProviderError("Failed to get M-Pesa access token", provider="MPESA")

        expires_in = int(data.get("expires_in") or 3599)
        self._access_token = token
        self._token_expires_at = now + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        logger.info("mpesa_token_refreshed", expires_in=expires_in)
        return token

    def _credentials(self) -> Dict[str, str]:
        shortcode = self.settings.mpesa_shortcode
        passkey = self._require(self.settings.mpesa_passkey, "passkey")
        timestamp = daraja_timestamp()
        return {
            "BusinessShortCode": shortcode,
            "Password": stk_password(shortcode, passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def stk_push(
        self,
        phone_number: str,
        amount: Any,
        account_reference: str,
        transaction_desc: str,
    ) -> Dict[str, Any]:
        """
        Send an STK Push prompt to the customer's handset.

        Args:
            phone_number: Normalised 2547XXXXXXXX number
            amount: Amount to charge (rounded to whole shillings)
            account_reference: Reference shown to the customer
            transaction_desc: Short description

        Returns:
            Dict[str, Any]: Daraja response (CheckoutRequestID, ResponseCode, ...)

        Raises:
            ProviderError: If the request fails for any reason
        """
        callback_url = self._require(self.settings.mpesa_callback_url, "callback URL")
        body = {
            **self._credentials(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_units(amount),
            "PartyA": phone_number,
            "PartyB": self.settings.mpesa_shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }
        token = await self.get_access_token()

        started = time.perf_counter()
        try:
            response = await self.http_client.post(
                f"{self.base_url}{STK_PUSH_PATH}",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            metrics.record_provider_call("MPESA", "stk_push", "failed", time.perf_counter() - started)
            logger.error("mpesa_stk_push_transport_error", error=str(e))
            raise ProviderError(f"STK Push failed: {e}", provider="MPESA") from e

        duration = time.perf_counter() - started
        if response.is_error:
            metrics.record_provider_call("MPESA", "stk_push", "failed", duration)
            try:
                message = response.json().get("errorMessage") or response.reason_phrase
            except ValueError:
                message = response.reason_phrase
            logger.error(
                "mpesa_stk_push_rejected",
                status_code=response.status_code,
                error_message=message,
            )
            raise ProviderError(
                f"STK Push failed: {response.status_code} - {message}", provider="MPESA"
            )

        data = response.json()
        metrics.record_provider_call("MPESA", "stk_push", "success", duration)
        logger.info(
            "mpesa_stk_push_accepted",
            checkout_request_id=data.get("CheckoutRequestID"),
            response_code=data.get("ResponseCode"),
        )
        return data

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def stk_query(self, checkout_request_id: str) -> httpx.Response:
        """
        Query the status of an STK Push request.

        Returns the raw response; Daraja reports "still processing" as an
        HTTP error with a body, so callers inspect both.
        """
        token = await self.get_access_token()
        body = {**self._credentials(), "CheckoutRequestID": checkout_request_id}
        return await self.http_client.post(
            f"{self.base_url}{STK_QUERY_PATH}",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.http_client.aclose()
