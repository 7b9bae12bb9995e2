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
    "HTTP requests that ended with a 5xx status",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Inbound payment provider webhook events by outcome",
    ["provider", "event_type", "outcome"],
)
SUBSCRIPTION_TRANSITIONS = Counter(
    "subscription_transitions_total",
    "Subscription state transitions applied to companies",
    ["transition"],
)
SWEEP_RESULTS = Counter(
    "subscription_sweep_companies_total",
    "Companies visited by maintenance sweeps",
    ["sweep", "result"],
)
DEFERRED_JOBS = Gauge(
    "deferred_jobs_registered",
    "Deferred subscription jobs currently held by the in-process scheduler",
)
