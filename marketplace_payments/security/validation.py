"""Request-body validation and per-currency amount limits."""
import math
from typing import Any, Dict, Optional, Tuple

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.exceptions import PaymentValidationError
from marketplace_payments.database.models import Currency, PaymentProvider
from marketplace_payments.security.context import RequestContext
from marketplace_payments.security.events import SecurityEventLogger, SecurityEventType


def is_number(value: Any) -> bool:
    """True for finite ints and floats (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _display(value: float) -> Any:
    return int(value) if float(value).is_integer() else value


class PaymentInputValidator:
    """
    Validates amount, currency and payment method in a request body.

    Oversized amounts are logged as SUSPICIOUS_AMOUNT and rejected; amounts
    below 1 are logged as SUSPICIOUS_SMALL_AMOUNT and allowed through.
    """

    name = "input_validator"

    def __init__(self, events: SecurityEventLogger, settings: Optional[Settings] = None):
        self.events = events
        self.settings = settings or get_settings()

    async def __call__(self, ctx: RequestContext) -> None:
        body = ctx.body
        amount = body.get("amount")
        currency = body.get("currency")

        if amount is not None:
            if not is_number(amount) or amount <= 0:
                raise PaymentValidationError("Invalid amount. Must be a positive number.")

            if amount > self.settings.suspicious_amount_threshold:
                await self.events.log(
                    SecurityEventType.SUSPICIOUS_AMOUNT,
                    details={"amount": amount, "currency": currency},
                    **ctx.event_fields(),
                )
                raise PaymentValidationError("Payment amount exceeds maximum allowed limit.")

            if amount < 1:
                await self.events.log(
                    SecurityEventType.SUSPICIOUS_SMALL_AMOUNT,
                    details={"amount": amount, "currency": currency},
                    **ctx.event_fields(),
                )

        if currency and currency not in {c.value for c in Currency}:
            raise PaymentValidationError("Invalid currency. Only KES and USD are supported.")

        payment_method = body.get("paymentMethod")
        if payment_method and payment_method not in {p.value for p in PaymentProvider}:
            raise PaymentValidationError("Invalid payment method.")


class AmountLimits:
    """Per-currency minimum and maximum; unknown currencies use the KES band."""

    name = "amount_limits"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def bands(self) -> Dict[str, Tuple[float, float]]:
        return {
            Currency.KES.value: (self.settings.kes_min_amount, self.settings.kes_max_amount),
            Currency.USD.value: (self.settings.usd_min_amount, self.settings.usd_max_amount),
        }

    def check_amount(self, amount: Any, currency: Optional[str]) -> None:
        """
        Raises:
            PaymentValidationError: If the amount falls outside the band
        """
        if not amount or not is_number(amount):
            return
        band_currency = currency if currency in self.bands else Currency.KES.value
        minimum, maximum = self.bands[band_currency]

        if amount < minimum:
            raise PaymentValidationError(
                f"Minimum payment amount is {_display(minimum)} {band_currency}."
            )
        if amount > maximum:
            raise PaymentValidationError(
                f"Maximum payment amount is {_display(maximum)} {band_currency}."
            )

    async def __call__(self, ctx: RequestContext) -> None:
        self.check_amount(ctx.body.get("amount"), ctx.body.get("currency"))
