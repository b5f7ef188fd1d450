from prometheus_client import Counter, Histogram

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "aurelia_webhook_deliveries_total",
    "Inbound gateway webhook deliveries by outcome.",
    labelnames=("outcome",),
)

JOB_RUNS_TOTAL = Counter(
    "aurelia_job_runs_total",
    "Background job runs by job and outcome.",
    labelnames=("job", "outcome"),
)

JOB_ITEMS_TOTAL = Counter(
    "aurelia_job_items_total",
    "Items handled by background jobs.",
    labelnames=("job", "result"),
)

JOB_DURATION_SECONDS = Histogram(
    "aurelia_job_duration_seconds",
    "Wall time of one background job run.",
    labelnames=("job",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)
