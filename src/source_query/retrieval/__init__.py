"""Retrieval package."""

from source_query.retrieval.embeddings import (
    Embedder,
    EmbeddingClient,
    HttpEmbedder,
    SentenceTransformerEmbedder,
    create_embedder,
)
from source_query.retrieval.engine import NO_MATCH_ANSWER, QueryEngine, build_context
from source_query.retrieval.followups import suggest_follow_ups
from source_query.retrieval.generator import ChatCompletionGenerator, Generator
from source_query.retrieval.vector import FaissVectorIndex, VectorIndex

__all__ = [
    "ChatCompletionGenerator",
    "Embedder",
    "EmbeddingClient",
    "FaissVectorIndex",
    "Generator",
    "HttpEmbedder",
    "NO_MATCH_ANSWER",
    "QueryEngine",
    "SentenceTransformerEmbedder",
    "VectorIndex",
    "build_context",
    "create_embedder",
    "suggest_follow_ups",
]
