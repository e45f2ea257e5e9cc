"""In-process metrics counters and histograms."""

import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    if value < 10:
        metrics["buckets"]["<10"] += 1
    elif value < 100:
        metrics["buckets"]["10-100"] += 1
    elif value < 1000:
        metrics["buckets"]["100-1000"] += 1
    else:
        metrics["buckets"][">=1000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] | None = None) -> None:
    """Observe a duration measurement in milliseconds."""
    record_histogram(name, (time.time() - start_time) * 1000, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    for key, data in _metrics.items():
        metric_result = {"count": data["count"], "sum": data["sum"]}
        if data["values"]:
            values = data["values"]
            metric_result.update(
                {
                    "min": min(values),
                    "max": max(values),
                    "avg": data["sum"] / len(values),
                    "buckets": dict(data["buckets"]),
                }
            )
        result[key] = metric_result
    return result


def get_counter(name: str, labels: dict[str, str] | None = None) -> float:
    """Current value of a counter (0 when never incremented)."""
    key = _key(name, labels)
    if key not in _metrics:
        return 0.0
    return _metrics[key]["count"]


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    _metrics.clear()


# Outreach metrics
def increment_emails_sent(tone: str) -> None:
    increment_counter("emails_sent_total", labels={"tone": tone})


def increment_emails_failed() -> None:
    increment_counter("emails_failed_total")


def increment_emails_deferred(reason: str) -> None:
    increment_counter("emails_deferred_total", labels={"reason": reason})


def increment_invoices_skipped(reason: str) -> None:
    increment_counter("invoices_skipped_total", labels={"reason": reason})


# Scheduler metrics
def increment_tasks_enqueued(task_type: str) -> None:
    increment_counter("tasks_enqueued_total", labels={"type": task_type})


def increment_tasks_claimed(n: float = 1.0) -> None:
    increment_counter("tasks_claimed_total", value=n)


def increment_task_claim_conflicts(n: float = 1.0) -> None:
    """Count leases lost to a concurrent poller."""
    increment_counter("task_claim_conflicts_total", value=n)


def increment_tasks_completed(task_type: str) -> None:
    increment_counter("tasks_completed_total", labels={"type": task_type})


def increment_tasks_failed(task_type: str, retryable: bool) -> None:
    increment_counter(
        "tasks_failed_total", labels={"type": task_type, "retryable": str(retryable).lower()}
    )


# Reply metrics
def increment_replies(intent: str) -> None:
    increment_counter("replies_total", labels={"intent": intent})


def increment_stop_requests() -> None:
    increment_counter("stop_requests_total")


def record_cycle_duration(trigger: str, duration_ms: float) -> None:
    record_histogram("cycle_duration_ms", duration_ms, labels={"trigger": trigger})
