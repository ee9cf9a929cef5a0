"""
Prometheus metrics for payment and security monitoring.

Tracks:
- Payment creation and status transitions by provider
- Provider API calls and failures
- M-Pesa callback outcomes
- Security events by severity
- Rate-limit rejections per endpoint
- Processing sweeper results
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payments_created_total = Counter(
    "payments_created_total",
    "Total number of payment records created",
    ["provider", "currency"],
)

payment_transitions_total = Counter(
    "payment_transitions_total",
    "Total payment status transitions",
    ["from_status", "to_status"],
)

payment_amount = Histogram(
    "payment_amount",
    "Payment amounts in major currency units",
    ["currency"],
    buckets=(10, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 5000000),
)

# Provider metrics
provider_requests_total = Counter(
    "provider_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],  # status: success, failed
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

# Circuit breaker metrics
stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Callback metrics
mpesa_callbacks_total = Counter(
    "mpesa_callbacks_total",
    "Total M-Pesa STK callbacks received",
    ["outcome"],  # completed, failed, duplicate, not_found, malformed
)

# Security metrics
security_events_total = Counter(
    "security_events_total",
    "Total security events recorded",
    ["event_type", "severity"],
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Total requests rejected by a rate limiter",
    ["limiter"],
)

# Sweeper metrics
processing_sweeps_total = Counter(
    "processing_sweeps_total",
    "Stale PROCESSING payments handled by the sweeper",
    ["outcome"],  # completed, failed, expired, pending
)

processing_sweep_last_run_timestamp = Gauge(
    "processing_sweep_last_run_timestamp",
    "Timestamp of last processing sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_created(provider: str, currency: str, amount: float) -> None:
        """Record a newly created payment."""
        payments_created_total.labels(provider=provider, currency=currency).inc()
        payment_amount.labels(currency=currency).observe(amount)

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record a committed status transition."""
        payment_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a provider API call."""
        provider_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_request_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_mpesa_callback(outcome: str) -> None:
        """Record an M-Pesa callback outcome."""
        mpesa_callbacks_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_security_event(event_type: str, severity: str) -> None:
        """Record a security event."""
        security_events_total.labels(event_type=event_type, severity=severity).inc()

    @staticmethod
    def record_rate_limit_rejection(limiter: str) -> None:
        """Record a rate-limit rejection."""
        rate_limit_rejections_total.labels(limiter=limiter).inc()

    @staticmethod
    def record_sweep(outcomes: dict[str, int]) -> None:
        """Record the outcome counts of one sweep pass."""
        for outcome, count in outcomes.items():
            if count:
                processing_sweeps_total.labels(outcome=outcome).inc(count)
        processing_sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
