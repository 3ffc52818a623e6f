from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a 5xx response",
    ["method", "path", "status"],
)

# ── Billing ──────────────────────────────────────────────

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Inbound webhook notifications by outcome",
    ["source", "event_type", "outcome"],
)
WEBHOOK_PROCESSING_SECONDS = Histogram(
    "billing_webhook_processing_seconds",
    "Time spent applying a webhook notification",
    ["source"],
)
UNMAPPED_STATUS = Counter(
    "billing_unmapped_status_total",
    "Processor subscription statuses that fell back to revoked",
    ["raw_status"],
)
PROCESSOR_REQUESTS = Counter(
    "billing_processor_requests_total",
    "Outbound processor API calls by result",
    ["method", "result"],
)
JOB_RUNS = Counter(
    "billing_job_runs_total",
    "Reconciliation job runs by status",
    ["job", "status"],
)
CIRCUIT_BREAKER_OPEN = Gauge(
    "billing_circuit_breaker_open",
    "1 while the named circuit breaker is open",
    ["breaker"],
)
USAGE_EVENTS_FORWARDED = Counter(
    "billing_usage_events_forwarded_total",
    "Usage events handed to the processor metering endpoint",
    ["result"],
)
ALERTS_RAISED = Counter(
    "billing_alerts_total",
    "Operational alerts raised",
    ["type", "severity"],
)
