"""Data models for sources, their ingestion status, and scraped content."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceStatus(str, Enum):
    """Ingestion state machine states."""

    UNKNOWN = "unknown"
    PENDING = "pending"
    SCRAPING = "scraping"
    PROCESSING = "processing"
    EMBEDDING = "embedding"
    ACTIVE = "active"
    ERROR = "error"


# A run is in flight while the source sits in one of these states
IN_FLIGHT_STATES = frozenset(
    {
        SourceStatus.PENDING,
        SourceStatus.SCRAPING,
        SourceStatus.PROCESSING,
        SourceStatus.EMBEDDING,
    }
)

# States from which a new run may be triggered
TRIGGERABLE_STATES = frozenset(
    {SourceStatus.UNKNOWN, SourceStatus.ERROR, SourceStatus.ACTIVE}
)


class Progress(BaseModel):
    """Progress of the current phase."""

    phase: str
    current: int = 0
    total: int = 0


class StatusDetail(BaseModel):
    """Details about the in-flight (or last) ingestion run."""

    current_attempt: int | None = None
    max_attempts: int | None = None
    last_status_code: int | None = None
    last_error: str | None = None
    progress: Progress | None = None
    last_update: datetime = Field(default_factory=utcnow)


class EmbeddingSummary(BaseModel):
    """Vector count written by the last successful run."""

    count: int
    last_updated: datetime = Field(default_factory=utcnow)


class Source(BaseModel):
    """A registered origin: a web page URL or an uploaded document."""

    id: str
    kind: Literal["website", "document"] = "website"
    origin: str  # URL, or raw text for documents
    title: str | None = None
    description: str | None = None
    status: SourceStatus = SourceStatus.UNKNOWN
    status_detail: StatusDetail | None = None
    owner_id: str
    last_scraped: datetime | None = None
    embeddings: EmbeddingSummary | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATES


class FetchResult(BaseModel):
    """What the fetcher extracted from an origin."""

    url: str | None = None
    title: str
    description: str = ""
    body: str
    status_code: int | None = 200


class ScrapedContent(BaseModel):
    """Latest successful fetch of a source. Replaced on re-ingestion."""

    source_id: str
    owner_id: str
    url: str | None = None
    title: str
    description: str = ""
    body: str
    content_length: int
    status_code: int | None = None
    scraped_at: datetime = Field(default_factory=utcnow)


class BulkItemResult(BaseModel):
    """Outcome for one source in a bulk operation."""

    id: str
    success: bool
    status: SourceStatus | None = None
    error: str | None = None


class BulkResult(BaseModel):
    """Summary of a re-ingest-all or delete-all run."""

    total_sources: int
    deleted_contents: int
    processed: int
    vector_index_cleared: bool
    results: list[BulkItemResult] = Field(default_factory=list)
