"""
Prometheus metrics: lifecycle outcomes (API), notifications sent/failed (worker), queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

# API: lifecycle operations
deliveries_created_total = Counter(
    "deliveries_created_total",
    "Total deliveries created",
)
delivery_transitions_total = Counter(
    "delivery_transitions_total",
    "Total accepted delivery status changes",
    ["from_status", "to_status"],
)
delivery_operations_rejected_total = Counter(
    "delivery_operations_rejected_total",
    "Total lifecycle operations rejected, by operation and error kind",
    ["operation", "reason"],
)
notifications_published_total = Counter(
    "notifications_published_total",
    "Total SMS notifications queued after a status change",
    ["status"],
)
notifications_publish_failed_total = Counter(
    "notifications_publish_failed_total",
    "Total notification batches that could not be queued",
)

# Worker: SMS outcomes
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Total SMS notifications accepted by the gateway",
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total SMS sends that failed (retried or sent to DLQ)",
)
notifications_dlq_total = Counter(
    "notifications_dlq_total",
    "Total notifications moved to DLQ after max retries",
)

# SQS queue depth (when using SQS)
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
