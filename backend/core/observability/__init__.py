"""Minimal observability for logging, health checks and metrics.

Provides JSON logging, health/readiness endpoints, and in-process metrics
for the collections service without external dependencies.
"""
import uuid
from typing import Optional

from . import logging as logging_module
from . import health
from . import metrics


def generate_trace_id() -> str:
    """Generate a new trace ID for request/worker context."""
    return str(uuid.uuid4())


def bind_trace(trace_id: Optional[str] = None, org_id: Optional[str] = None) -> str:
    """Bind trace and org IDs to the current thread's log context."""
    trace_id = trace_id or generate_trace_id()
    logging_module.set_trace_id(trace_id)
    logging_module.set_org_id(org_id)
    return trace_id


def init_observability(enable_metrics: bool = True) -> None:
    """Initialize all observability components."""
    logging_module.init_logging()
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "health",
    "metrics",
    "generate_trace_id",
    "bind_trace",
    "init_observability",
]
