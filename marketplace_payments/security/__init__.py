"""Security layer: rate limiting, fraud heuristics, IP policy and audit events."""
from .context import RequestContext
from .events import SEVERITY_MAP, SecurityEventLogger, SecurityEventType, Severity, severity_for
from .fraud import FraudHeuristics
from .ip_policy import IPPolicyGate
from .pipeline import SecurityPipeline, SecurityPipelines
from .rate_limiter import (
    InMemoryRateLimitStore,
    RateLimitDecision,
    RateLimiter,
    RateLimitStore,
    RedisRateLimitStore,
)
from .validation import AmountLimits, PaymentInputValidator

__all__ = [
    "SEVERITY_MAP",
    "AmountLimits",
    "FraudHeuristics",
    "IPPolicyGate",
    "InMemoryRateLimitStore",
    "PaymentInputValidator",
    "RateLimitDecision",
    "RateLimitStore",
    "RateLimiter",
    "RedisRateLimitStore",
    "RequestContext",
    "SecurityEventLogger",
    "SecurityEventType",
    "SecurityPipeline",
    "SecurityPipelines",
    "Severity",
    "severity_for",
]
