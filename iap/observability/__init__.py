"""
Observability module - Logging, Metrics, and Tracing.
"""

from iap.observability.logging import get_logger, log_context, setup_logging
from iap.observability.metrics import metrics
from iap.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
