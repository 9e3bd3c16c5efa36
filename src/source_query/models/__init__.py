"""Models package."""

from source_query.models.index import EmbeddingRecord, VectorMatch, vector_id
from source_query.models.query import QueryResult, SourceReference
from source_query.models.source import (
    IN_FLIGHT_STATES,
    TRIGGERABLE_STATES,
    BulkItemResult,
    BulkResult,
    EmbeddingSummary,
    FetchResult,
    Progress,
    ScrapedContent,
    Source,
    SourceStatus,
    StatusDetail,
)

__all__ = [
    "BulkItemResult",
    "BulkResult",
    "EmbeddingRecord",
    "EmbeddingSummary",
    "FetchResult",
    "IN_FLIGHT_STATES",
    "Progress",
    "QueryResult",
    "ScrapedContent",
    "Source",
    "SourceReference",
    "SourceStatus",
    "StatusDetail",
    "TRIGGERABLE_STATES",
    "VectorMatch",
    "vector_id",
]
