"""Prometheus metrics for the consent lifecycle engine.

Metrics include:

- State transitions by target state
- Engine operations by name and outcome
- Webhook deliveries by event and outcome, plus delivery latency
- Sweep runs and records expired by sweeps
- Store failures by operation

Examples:
    >>> record_transition("ACCEPTED")
    >>> record_operation("accept", "already_accepted")
    >>> record_delivery("accepted", "delivered", elapsed_ms=42)
"""

from prometheus_client import Counter, Histogram

transitions_total = Counter(
    "consent_transitions_total",
    "Committed consent request state transitions",
    ["to_state"],
)

# Labels: operation (create, read, accept), outcome (ok, not_found, expired, ...)
operations_total = Counter(
    "consent_operations_total",
    "Consent lifecycle operations by outcome",
    ["operation", "outcome"],
)

webhook_deliveries_total = Counter(
    "consent_webhook_deliveries_total",
    "Webhook delivery attempts",
    ["event", "outcome"],
)

webhook_delivery_seconds = Histogram(
    "consent_webhook_delivery_seconds",
    "Webhook delivery latency in seconds",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

sweep_runs_total = Counter(
    "consent_sweep_runs_total",
    "Expiration sweep passes performed",
)

sweep_expired_total = Counter(
    "consent_sweep_expired_total",
    "Requests moved to EXPIRED by sweeps",
)

persistence_failures_total = Counter(
    "consent_persistence_failures_total",
    "Durable store failures",
    ["operation"],
)


def record_transition(to_state: str) -> None:
    """Record a committed state transition."""
    transitions_total.labels(to_state=to_state).inc()


def record_operation(operation: str, outcome: str) -> None:
    """Record the outcome of an engine operation."""
    operations_total.labels(operation=operation, outcome=outcome).inc()


def record_delivery(event: str, outcome: str, elapsed_ms: int) -> None:
    """Record a webhook delivery attempt.

    Args:
        event: Webhook event name
        outcome: "delivered" or "failed"
        elapsed_ms: Time spent on the attempt in milliseconds
    """
    webhook_deliveries_total.labels(event=event, outcome=outcome).inc()
    webhook_delivery_seconds.observe(elapsed_ms / 1000.0)


def record_sweep(expired: int) -> None:
    """Record a sweep pass."""
    sweep_runs_total.inc()
    sweep_expired_total.inc(expired)


def record_persistence_failure(operation: str) -> None:
    """Record a store failure for the given operation."""
    persistence_failures_total.labels(operation=operation).inc()
