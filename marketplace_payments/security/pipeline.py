"""
Ordered security pipelines for payment-initiating endpoints.

Checks run in order and the first rejection short-circuits the rest.
"""
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.exceptions import RateLimitError
from marketplace_payments.core.lifecycle import PaymentLifecycleManager
from marketplace_payments.security.context import RequestContext
from marketplace_payments.security.events import SecurityEventLogger, SecurityEventType
from marketplace_payments.security.fraud import FraudHeuristics
from marketplace_payments.security.ip_policy import IPPolicyGate
from marketplace_payments.security.rate_limiter import RateLimiter, RateLimitStore
from marketplace_payments.security.validation import AmountLimits, PaymentInputValidator

logger = structlog.get_logger(__name__)

SecurityCheck = Callable[[RequestContext], Awaitable[Optional[Dict[str, str]]]]


class RateLimitCheck:
    """Adapts a RateLimiter to the pipeline, logging rejections as security events."""

    def __init__(self, limiter: RateLimiter, events: SecurityEventLogger):
        self.limiter = limiter
        self.events = events
        self.name = f"{limiter.name}_rate_limit"

    async def __call__(self, ctx: RequestContext) -> Dict[str, str]:
        try:
            decision = await self.limiter.check(ctx)
        except RateLimitError as e:
            await self.events.log(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                details={
                    "key": e.metadata.get("key"),
                    "requestCount": e.metadata.get("request_count"),
                    "maxRequests": self.limiter.max_requests,
                    "windowSeconds": self.limiter.window_seconds,
                },
                **ctx.event_fields(),
            )
            raise
        return decision.headers


class SecurityPipeline:
    """Runs security checks in order; returns response headers to attach."""

    def __init__(self, name: str, checks: Sequence[SecurityCheck]):
        self.name = name
        self.checks: List[SecurityCheck] = list(checks)

    async def run(self, ctx: RequestContext) -> Dict[str, str]:
        """
        Apply every check to the request.

        Returns:
            Dict[str, str]: Rate-limit headers produced along the way

        Raises:
            PaymentError: The first check's rejection
        """
        headers: Dict[str, str] = {}
        for check in self.checks:
            result = await check(ctx)
            if isinstance(result, dict):
                headers.update(result)
        logger.debug("security_pipeline_passed", pipeline=self.name, user_id=ctx.user_id)
        return headers


class SecurityPipelines:
    """The named pipelines guarding payment, STK push and refund endpoints."""

    def __init__(
        self,
        lifecycle: PaymentLifecycleManager,
        events: SecurityEventLogger,
        store: RateLimitStore,
        settings: Optional[Settings] = None,
        ip_gate: Optional[IPPolicyGate] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        settings = settings or get_settings()
        limiter_kwargs = {"clock": clock} if clock is not None else {}

        self.payment_limiter = RateLimiter(
            "payment",
            settings.payment_rate_limit_window_seconds,
            settings.payment_rate_limit_max_requests,
            store,
            **limiter_kwargs,
        )
        self.stk_push_limiter = RateLimiter(
            "stk_push",
            settings.stk_push_rate_limit_window_seconds,
            settings.stk_push_rate_limit_max_requests,
            store,
            **limiter_kwargs,
        )
        self.refund_limiter = RateLimiter(
            "refund",
            settings.refund_rate_limit_window_seconds,
            settings.refund_rate_limit_max_requests,
            store,
            **limiter_kwargs,
        )

        ip_gate = ip_gate or IPPolicyGate(events, lifecycle.session_factory, settings)
        validator = PaymentInputValidator(events, settings)
        limits = AmountLimits(settings)
        fraud = FraudHeuristics(lifecycle, events, settings)

        self.payment = SecurityPipeline(
            "payment",
            [ip_gate, RateLimitCheck(self.payment_limiter, events), validator, limits, fraud],
        )
        self.stk_push = SecurityPipeline(
            "stk_push",
            [ip_gate, RateLimitCheck(self.stk_push_limiter, events), validator, limits, fraud],
        )
        self.refund = SecurityPipeline(
            "refund",
            [ip_gate, RateLimitCheck(self.refund_limiter, events), fraud],
        )
