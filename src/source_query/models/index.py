"""Vector index records and matches."""

from typing import Any

from pydantic import BaseModel, Field


def vector_id(source_id: str, chunk_index: int) -> str:
    """Deterministic vector id so re-ingestion overwrites prior vectors."""
    return f"{source_id}-chunk-{chunk_index}"


class EmbeddingRecord(BaseModel):
    """A chunk embedding ready to upsert."""

    id: str
    values: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorMatch(BaseModel):
    """A ranked similarity match."""

    id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)
