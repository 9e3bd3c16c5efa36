"""Ingestion package."""

from source_query.ingestion.chunker import TextChunk, TextChunker, get_chunker
from source_query.ingestion.fetcher import SourceFetcher
from source_query.ingestion.orchestrator import IngestionOrchestrator
from source_query.ingestion.worker import WorkerPool

__all__ = [
    "IngestionOrchestrator",
    "SourceFetcher",
    "TextChunk",
    "TextChunker",
    "WorkerPool",
    "get_chunker",
]
