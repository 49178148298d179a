"""
Prometheus metrics for the delivery engine.

This module provides:
- Send attempt / failure counters for the outbound scheduler
- Acknowledgement and incoming message counters for the transport
- Sync outcome counter and duration histogram for the coordinator
- Queue depth gauge
- Request counter and latency histogram for the ops HTTP app

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

send_attempts_total = Counter(
    "chat_send_attempts_total",
    "Outbound message send attempts handed to the transport",
)

# source: local (dispatch error) or wire (message_failed from the server)
send_failures_total = Counter(
    "chat_send_failures_total",
    "Outbound message send failures",
    labelnames=["source"]
)

# status: sent, delivered
messages_acked_total = Counter(
    "chat_messages_acked_total",
    "Server acknowledgements of outbound messages",
    labelnames=["status"]
)

incoming_messages_total = Counter(
    "chat_incoming_messages_total",
    "Messages received from the server",
)

# result: completed, failed
sync_total = Counter(
    "chat_sync_total",
    "Snapshot merge outcomes",
    labelnames=["result"]
)

sync_duration_seconds = Histogram(
    "chat_sync_duration_seconds",
    "Time spent merging a server snapshot",
)

send_queue_depth = Gauge(
    "chat_send_queue_depth",
    "Send requests waiting in the scheduler queue",
)

ops_requests_total = Counter(
    "chat_ops_requests_total",
    "Requests served by the ops HTTP app",
    labelnames=["path", "status"]
)

ops_request_latency_seconds = Histogram(
    "chat_ops_request_latency_seconds",
    "Ops HTTP request latency in seconds",
    labelnames=["path"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0)
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_send_attempt() -> None:
    send_attempts_total.inc()


def record_send_failure(source: str) -> None:
    """
    Record a failed send.

    Args:
        source: "local" when dispatch failed on this side,
            "wire" when the server reported message_failed
    """
    send_failures_total.labels(source=source).inc()


def record_ack(status: str) -> None:
    messages_acked_total.labels(status=status).inc()


def record_incoming_message() -> None:
    incoming_messages_total.inc()


def record_sync(result: str, duration_seconds: float) -> None:
    """
    Record a snapshot merge outcome.

    Args:
        result: "completed" or "failed"
        duration_seconds: Time spent in the merge transaction
    """
    sync_total.labels(result=result).inc()
    sync_duration_seconds.observe(duration_seconds)


def set_queue_depth(depth: int) -> None:
    send_queue_depth.set(depth)


def record_ops_request(path: str, status: int, latency_seconds: float) -> None:
    # Query strings would make the path label unbounded
    path = path.partition("?")[0]
    ops_requests_total.labels(path=path, status=str(status)).inc()
    ops_request_latency_seconds.labels(path=path).observe(latency_seconds)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Content type for the Prometheus exposition format."""
    return CONTENT_TYPE_LATEST
