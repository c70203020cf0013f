# app/metrics.py
from prometheus_client import Counter, Gauge, Histogram

# ---------------------------
# Request metrics
# ---------------------------
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ---------------------------
# Pipeline metrics
# ---------------------------
JOB_COUNT = Counter(
    "prophet_jobs_total",
    "Total number of pipeline runs",
    ["job_type", "status"],
)

JOB_LATENCY = Histogram(
    "prophet_job_duration_seconds",
    "Pipeline run duration in seconds",
    ["job_type"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

STEP_COUNT = Counter(
    "prophet_steps_total",
    "Total number of pipeline steps by outcome",
    ["job_type", "step", "status"],
)

ACTIVE_STREAMS = Gauge(
    "prophet_active_streams",
    "Number of open SSE progress streams",
    ["kind"],  # start | reconnect | ambient
)

# ---------------------------
# Provider metrics
# ---------------------------
PROVIDER_CALLS = Counter(
    "prophet_provider_calls_total",
    "External provider calls",
    ["provider", "result"],  # success | error
)


def record_job_metrics(job_type: str, status: str, duration: float) -> None:
    JOB_COUNT.labels(job_type=job_type, status=status).inc()
    JOB_LATENCY.labels(job_type=job_type).observe(duration)


def record_step_metrics(job_type: str, step: str, status: str) -> None:
    STEP_COUNT.labels(job_type=job_type, step=step, status=status).inc()


def record_provider_call(provider: str, ok: bool) -> None:
    PROVIDER_CALLS.labels(provider=provider, result="success" if ok else "error").inc()
