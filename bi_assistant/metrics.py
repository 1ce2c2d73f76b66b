import time
from prometheus_client import Counter, Histogram, Gauge
from prometheus_fastapi_instrumentator import Instrumentator, metrics

QUEUE_ITEMS_TOTAL = Counter(
    "assistant_queue_items_total",
    "Queue items finished by a drain pass",
    ["outcome"]
)

QUEUE_RETRIES_TOTAL = Counter(
    "assistant_queue_retries_total",
    "Queue items rescheduled with backoff",
    ["reason"]
)

QUEUE_CLAIM_CONFLICTS_TOTAL = Counter(
    "assistant_queue_claim_conflicts_total",
    "Queue items already claimed by a concurrent drain"
)

QUEUE_BACKLOG = Gauge(
    "assistant_queue_backlog",
    "Pending queue items seen by the last drain pass"
)

MODEL_CALLS_TOTAL = Counter(
    "assistant_model_calls_total",
    "Language model calls",
    ["outcome"]
)

DAX_EXECUTIONS_TOTAL = Counter(
    "assistant_dax_executions_total",
    "Analytical query executions",
    ["outcome"]
)

ALERT_EVALUATIONS_TOTAL = Counter(
    "assistant_alert_evaluations_total",
    "Alert evaluations by outcome",
    ["outcome"]
)

NOTIFICATIONS_TOTAL = Counter(
    "assistant_notifications_total",
    "Outbound messaging gateway sends",
    ["channel", "outcome"]
)

OPERATION_LATENCY_SECONDS = Histogram(
    "assistant_operation_latency_seconds",
    "Time taken by pipeline operations",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 20, 45, 90],
)

# Performance timer context manager
class TimerContextManager:
    def __init__(self, metric, labels=None):
        self.metric = metric
        self.labels = labels or {}
        self.start = None

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start:
            duration = time.perf_counter() - self.start
            self.metric.labels(**self.labels).observe(duration)

instrumentator = Instrumentator()
instrumentator.add(metrics.default())

def timer(operation):
    """Timer context manager for measuring operation duration"""
    return TimerContextManager(OPERATION_LATENCY_SECONDS, {"operation": operation})
