"""
Fraud heuristics over a caller's recent payment history.

Only repeated failures block; the other signals are advisory events.
"""
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.exceptions import SecurityPolicyError
from marketplace_payments.core.lifecycle import PaymentLifecycleManager
from marketplace_payments.database.models import PaymentStatus
from marketplace_payments.security.context import RequestContext
from marketplace_payments.security.events import SecurityEventLogger, SecurityEventType
from marketplace_payments.security.validation import is_number

logger = structlog.get_logger(__name__)

FAILED_LOOKBACK = timedelta(hours=1)
SUCCESS_LOOKBACK = timedelta(hours=24)
ROUND_AMOUNT_STEP = 1000


class FraudHeuristics:
    """Checks failed-payment lockout, round amounts and rapid successive payments."""

    name = "fraud_detection"

    def __init__(
        self,
        lifecycle: PaymentLifecycleManager,
        events: SecurityEventLogger,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.lifecycle = lifecycle
        self.events = events
        self.settings = settings or get_settings()
        self.clock = clock

    async def __call__(self, ctx: RequestContext) -> None:
        """
        Evaluate the heuristics for an authenticated caller.

        Raises:
            SecurityPolicyError: 429 when the caller has too many recent failures
        """
        if not ctx.user_id:
            return

        now = self.clock()
        try:
            failed = await self.lifecycle.count_recent(
                ctx.user_id, PaymentStatus.FAILED.value, now - FAILED_LOOKBACK
            )
            completed = await self.lifecycle.count_recent(
                ctx.user_id, PaymentStatus.COMPLETED.value, now - SUCCESS_LOOKBACK
            )
        except SQLAlchemyError as e:
            logger.error("fraud_detection_lookup_failed", user_id=ctx.user_id, error=str(e))
            return

        if failed >= self.settings.failed_payments_lockout_threshold:
            await self.events.log(
                SecurityEventType.REPEATED_FAILED_PAYMENTS,
                details={"failedCount": failed},
                **ctx.event_fields(),
            )
            raise SecurityPolicyError(
                "Too many failed payment attempts. Please contact support.",
                error_code="too_many_failed_payments",
                http_status=429,
            )

        amount = ctx.body.get("amount")
        if (
            is_number(amount)
            and amount % ROUND_AMOUNT_STEP == 0
            and amount >= self.settings.round_amount_threshold
        ):
            await self.events.log(
                SecurityEventType.ROUND_NUMBER_AMOUNT,
                details={"amount": amount},
                **ctx.event_fields(),
            )

        if completed >= self.settings.rapid_payments_threshold:
            await self.events.log(
                SecurityEventType.RAPID_SUCCESSIVE_PAYMENTS,
                details={"recentCount": completed},
                **ctx.event_fields(),
            )
