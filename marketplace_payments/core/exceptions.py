"""
Exception taxonomy for the payment core.

Every error carries a machine-readable code and an HTTP status so the API
layer can render it without knowing which component raised it.
"""
from typing import Any, Dict, List, Optional


class PaymentError(Exception):
    """
    Base exception for all payment-core errors.

    `message` is safe to return to API clients.
    """

    error_code = "payment_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the API error envelope."""
        return {"status": "error", "message": self.message, "code": self.error_code}


class PaymentValidationError(PaymentError):
    """Request data failed validation. Nothing was written."""

    error_code = "validation_failed"
    http_status = 400

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class NotFoundError(PaymentError):
    """Referenced record does not exist."""

    error_code = "not_found"
    http_status = 404


class AuthorizationError(PaymentError):
    """
    Caller does not own the record.

    Rendered as 404 so foreign record ids are indistinguishable from
    missing ones.
    """

    error_code = "not_found"
    http_status = 404


class InvalidTransitionError(PaymentError):
    """Requested status change is not in the transition table."""

    error_code = "invalid_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Cannot transition payment from {from_status} to {to_status}",
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class ProviderError(PaymentError):
    """A payment gateway call failed or returned an unusable response."""

    error_code = "provider_error"
    http_status = 502

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs: Any):
        super().__init__(message, provider=provider, **kwargs)
        self.provider = provider


class RateLimitError(PaymentError):
    """Caller exceeded a sliding-window request budget."""

    error_code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, retry_after: int, **kwargs: Any):
        super().__init__(message, retry_after=retry_after, **kwargs)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retryAfter"] = self.retry_after
        return body


class SecurityPolicyError(PaymentError):
    """Request rejected by the IP gate or fraud heuristics."""

    error_code = "security_policy"
    http_status = 403


class AuthenticationError(PaymentError):
    """Request carries no authenticated caller."""

    error_code = "unauthorized"
    http_status = 401
