"""Observability package."""

from source_query.observability.logging import configure_logging
from source_query.observability.metrics import (
    EMBEDDING_RETRIES,
    FETCH_RETRIES,
    INGESTION_LATENCY,
    INGESTION_RUNS,
    QUERY_LATENCY,
    QUERY_REQUESTS,
    RATE_LIMIT_REJECTIONS,
    get_metrics,
)

__all__ = [
    "EMBEDDING_RETRIES",
    "FETCH_RETRIES",
    "INGESTION_LATENCY",
    "INGESTION_RUNS",
    "QUERY_LATENCY",
    "QUERY_REQUESTS",
    "RATE_LIMIT_REJECTIONS",
    "configure_logging",
    "get_metrics",
]
