from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Ingestion Metrics
INGESTION_RUNS = Counter(
    "ingestion_runs_total",
    "Total number of source ingestion runs",
    ["kind", "status"]
)

INGESTION_LATENCY = Histogram(
    "ingestion_latency_seconds",
    "Source ingestion run latency in seconds",
    ["kind"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

FETCH_RETRIES = Counter(
    "fetch_retries_total",
    "Total number of fetch retries after transient failures"
)

EMBEDDING_RETRIES = Counter(
    "embedding_rate_limit_retries_total",
    "Total number of embedding retries after rate-limit responses"
)

# Query Metrics
QUERY_REQUESTS = Counter(
    "query_requests_total",
    "Total number of question answering requests",
    ["status"]
)

QUERY_LATENCY = Histogram(
    "query_latency_seconds",
    "Question answering latency in seconds",
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0]
)

RATE_LIMIT_REJECTIONS = Counter(
    "rate_limit_rejections_total",
    "Total number of requests rejected by the rate limiter",
    ["route"]
)

def get_metrics():
    """Return latest metrics in Prometheus format."""
    return generate_latest(), CONTENT_TYPE_LATEST
