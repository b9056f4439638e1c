"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobforge.observability.logging import SUCCESS, get_logger, log_success, setup_logging
from jobforge.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobforge.observability.tracing import create_span, get_tracer, setup_tracing

__all__ = [
    "SUCCESS",
    "setup_logging",
    "get_logger",
    "log_success",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "create_span",
]
