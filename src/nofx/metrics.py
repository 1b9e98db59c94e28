"""Prometheus metrics for step execution and queue retries."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

step_duration_ms = Histogram(
    "nofx_step_duration_ms",
    "Step handler duration in milliseconds",
    ["tool", "status"],
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 300000),
)
steps_total = Counter("nofx_steps_total", "Finished steps by outcome", ["status"])
queue_retries_total = Counter(
    "nofx_queue_retries_total", "Queue jobs re-enqueued after a failure", ["topic"]
)
queue_dead_letters_total = Counter(
    "nofx_queue_dead_letters_total", "Queue jobs moved to the dead-letter list", ["topic"]
)


def observe_step(tool: str, status: str, latency_ms: float) -> None:
    step_duration_ms.labels(tool=tool, status=status).observe(latency_ms)
    steps_total.labels(status=status).inc()
