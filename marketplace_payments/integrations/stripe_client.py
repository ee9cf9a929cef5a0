"""
Stripe API client with a circuit breaker and error classification.

Implements:
- Circuit breaker pattern around every SDK call
- Idempotent PaymentIntent and Refund creation (keyed by payment id)
- Retry with exponential backoff on reads only
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.error_type != StripeErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Opens after `failure_threshold` consecutive failures and lets a trial
    call through once `timeout` seconds have passed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            clock: Time source
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._clock = clock

    def before_call(self) -> None:
        """
        Check whether a call may proceed.

        Raises:
            StripeError: If circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time is not None and self._clock() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeClient:
    """
    Async wrapper around the blocking Stripe SDK.

    SDK calls run in a worker thread through the circuit breaker; SDK
    exceptions are re-raised as classified `StripeError`s.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """Initialize Stripe client."""
        self.settings = settings or get_settings()
        self.api_key = self.settings.stripe_secret_key
        self.api_version = self.settings.stripe_api_version
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        if isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError),
        ):
            return StripeErrorType.PERMANENT
        return StripeErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        if not self.api_key:
            raise StripeError("Stripe secret key not configured", StripeErrorType.PERMANENT)

        self.circuit_breaker.before_call()
        started = time.perf_counter()
        try:
            result = await asyncio.to_thread(func)
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            error_type = self._classify_error(e)
            metrics.record_provider_call("STRIPE", operation, "failed", time.perf_counter() - started)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise StripeError(
                message=getattr(e, "user_message", None) or str(e),
                error_type=error_type,
                original_error=e,
            ) from e

        self.circuit_breaker.on_success()
        metrics.record_provider_call("STRIPE", operation, "success", time.perf_counter() - started)
        return result

    def _request_options(self) -> Dict[str, Any]:
        return {"api_key": self.api_key, "stripe_version": self.api_version}

    async def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        Args:
            amount_minor: Amount in the currency's minor unit
            currency: Currency code (e.g., 'KES')
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata
            description: Optional statement description

        Returns:
            stripe.PaymentIntent: Created payment intent

        Raises:
            StripeError: If payment creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_minor=amount_minor,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency.lower(),
                description=description,
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
                **self._request_options(),
            )

        payment_intent = await self._call("create_payment_intent", _create)
        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """
        Retrieve a PaymentIntent by ID.

        Raises:
            StripeError: If retrieval fails
        """
        return await self._call(
            "retrieve_payment_intent",
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id, **self._request_options()),
        )

    async def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> stripe.Refund:
        """
        Create a full refund for a PaymentIntent.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            idempotency_key: Optional idempotency key
            reason: Optional Stripe refund reason code

        Raises:
            StripeError: If refund creation fails
        """
        logger.info("creating_refund", payment_intent_id=payment_intent_id)

        def _create_refund() -> stripe.Refund:
            kwargs: Dict[str, Any] = {"payment_intent": payment_intent_id}
            if reason:
                kwargs["reason"] = reason
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.Refund.create(**kwargs, **self._request_options())

        refund = await self._call("create_refund", _create_refund)
        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return refund
