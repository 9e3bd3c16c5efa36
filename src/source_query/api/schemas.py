"""API Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from source_query.models import BulkResult, Source, SourceStatus, StatusDetail


# ===== Sources =====

class RegisterSourceSchema(BaseModel):
    """Register a web page."""

    url: str | None = None


class RegisterDocumentSchema(BaseModel):
    """Register uploaded text."""

    title: str | None = None
    content: str | None = None
    description: str | None = None


class EmbeddingSummarySchema(BaseModel):
    count: int
    last_updated: datetime


class SourceSchema(BaseModel):
    """A source and its ingestion status."""

    id: str
    kind: Literal["website", "document"]
    url: str | None = None
    title: str | None = None
    description: str | None = None
    status: SourceStatus
    status_detail: StatusDetail | None = None
    last_scraped: datetime | None = None
    embeddings: EmbeddingSummarySchema | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, source: Source) -> "SourceSchema":
        return cls(
            id=source.id,
            kind=source.kind,
            # Document bodies are not echoed back
            url=source.origin if source.kind == "website" else None,
            title=source.title,
            description=source.description,
            status=source.status,
            status_detail=source.status_detail,
            last_scraped=source.last_scraped,
            embeddings=(
                EmbeddingSummarySchema(**source.embeddings.model_dump())
                if source.embeddings
                else None
            ),
            created_at=source.created_at,
            updated_at=source.updated_at,
        )


class SourceListSchema(BaseModel):
    sources: list[SourceSchema]
    total: int


class IngestResponseSchema(BaseModel):
    """Returned once a run is queued."""

    message: str
    source: SourceSchema


class BulkItemSchema(BaseModel):
    id: str
    success: bool
    status: SourceStatus | None = None
    error: str | None = None


class BulkResponseSchema(BaseModel):
    """Summary of a bulk re-ingest or delete."""

    message: str
    total_sources: int
    deleted_contents: int
    processed: int
    vector_index_cleared: bool
    results: list[BulkItemSchema] = Field(default_factory=list)

    @classmethod
    def from_result(cls, message: str, result: BulkResult) -> "BulkResponseSchema":
        return cls(message=message, **result.model_dump())


# ===== Ask =====

class AskRequestSchema(BaseModel):
    """Question answering request."""

    question: str = ""
    top_k: int | None = None


class SourceReferenceSchema(BaseModel):
    title: str
    description: str
    score: float


class AskResponseSchema(BaseModel):
    """Answer plus the fragments it was built from."""

    answer: str
    sources: list[SourceReferenceSchema]
    follow_up_questions: list[str] = Field(default_factory=list)


# ===== Health =====

class ComponentStatusSchema(BaseModel):
    """Status of a system component."""

    database: str = "unknown"
    vector_index: str = "unknown"
    worker_pool: str = "unknown"


class HealthResponseSchema(BaseModel):
    """Health check response schema."""

    status: str
    components: ComponentStatusSchema
    vector_count: int = 0
    queued_jobs: int = 0
