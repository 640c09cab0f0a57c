"""Observability utilities for the consent lifecycle engine.

- Prometheus metrics for transitions, webhook deliveries and sweeps
- Structured logging with contextual information
"""

from consent_lifecycle.observability.logging import configure_logging, get_logger
from consent_lifecycle.observability.metrics import (
    record_delivery,
    record_operation,
    record_persistence_failure,
    record_sweep,
    record_transition,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "record_delivery",
    "record_operation",
    "record_persistence_failure",
    "record_sweep",
    "record_transition",
]
