"""Question answering over the vector index."""

import asyncio
import time

import structlog

from source_query.config import get_settings
from source_query.errors import (
    EmbeddingError,
    GenerationError,
    SourceQueryError,
    ValidationError,
    VectorIndexError,
)
from source_query.models import QueryResult, SourceReference, VectorMatch
from source_query.observability import QUERY_LATENCY, QUERY_REQUESTS
from source_query.retrieval.embeddings import EmbeddingClient
from source_query.retrieval.followups import suggest_follow_ups
from source_query.retrieval.generator import Generator
from source_query.retrieval.vector import VectorIndex

logger = structlog.get_logger()

NO_MATCH_ANSWER = (
    "I couldn't find relevant documents. Please try rephrasing your question."
)

SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer the question using only the provided "
    "context. If the context is empty or does not contain the answer, say so "
    "instead of guessing."
)

CONTEXT_SEPARATOR = "\n\n---\n\n"
NO_TITLE = "[No title]"
NO_DESCRIPTION = "[No description]"
NO_CONTENT = "[No content]"


def build_context(matches: list[VectorMatch], budget: int) -> str:
    """Join match metadata into a context string cut to *budget* characters."""
    parts = []
    for match in matches:
        meta = match.metadata
        parts.append(
            f"Title: {meta.get('title') or NO_TITLE}\n"
            f"Description: {meta.get('description') or NO_DESCRIPTION}\n"
            f"Content: {meta.get('text') or NO_CONTENT}"
        )
    return CONTEXT_SEPARATOR.join(parts)[:budget]


def format_sources(matches: list[VectorMatch]) -> list[SourceReference]:
    """Sources in index rank order."""
    return [
        SourceReference(
            title=match.metadata.get("title") or NO_TITLE,
            description=match.metadata.get("description") or NO_DESCRIPTION,
            score=match.score,
        )
        for match in matches
    ]


def build_user_prompt(question: str, context: str) -> str:
    return f"Context:\n{context}\n\nQuestion: {question}"


class QueryEngine:
    """
    Retrieval-augmented answering.

    Embeds the question, retrieves the closest chunks, and asks the
    generator to answer from them. Every external call runs under its own
    timeout; a failure in any of them fails the request.
    """

    def __init__(
        self,
        embeddings: EmbeddingClient,
        index: VectorIndex,
        generator: Generator,
        max_top_k: int | None = None,
        context_char_budget: int | None = None,
        embedding_timeout: float | None = None,
        query_timeout: float | None = None,
        generation_timeout: float | None = None,
    ):
        settings = get_settings()
        self.embeddings = embeddings
        self.index = index
        self.generator = generator
        self.max_top_k = max_top_k or settings.max_top_k
        self.context_char_budget = context_char_budget or settings.context_char_budget
        self.embedding_timeout = embedding_timeout or settings.query_embedding_timeout_seconds
        self.query_timeout = query_timeout or settings.vector_query_timeout_seconds
        self.generation_timeout = generation_timeout or settings.llm_timeout_seconds

    async def answer(self, question: str, top_k: int | None = None) -> QueryResult:
        """
        Answer a question from the indexed sources.

        Args:
            question: Natural-language question
            top_k: Number of chunks to retrieve (1..max_top_k)

        Returns:
            QueryResult with the answer, ranked sources and follow-ups
        """
        question = (question or "").strip()
        if not question:
            raise ValidationError("Question is required")
        top_k = get_settings().default_top_k if top_k is None else top_k
        if not 1 <= top_k <= self.max_top_k:
            raise ValidationError(f"top_k must be between 1 and {self.max_top_k}")

        start_time = time.time()
        try:
            result = await self._answer(question, top_k)
        except SourceQueryError as e:
            QUERY_REQUESTS.labels(status="error").inc()
            logger.warning("query_failed", error=e.message)
            raise

        status = "success" if result.sources else "no_match"
        QUERY_REQUESTS.labels(status=status).inc()
        QUERY_LATENCY.observe(time.time() - start_time)
        logger.info(
            "query_complete",
            sources=len(result.sources),
            status=status,
            latency_ms=(time.time() - start_time) * 1000,
        )
        return result

    async def _answer(self, question: str, top_k: int) -> QueryResult:
        try:
            vector = await asyncio.wait_for(
                self.embeddings.embed(question), timeout=self.embedding_timeout
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingError("Failed to generate embedding: timed out") from e
        except EmbeddingError as e:
            raise EmbeddingError(f"Failed to generate embedding: {e.message}") from e

        try:
            matches = await asyncio.wait_for(
                self.index.query(vector, top_k, include_metadata=True),
                timeout=self.query_timeout,
            )
        except (asyncio.TimeoutError, VectorIndexError) as e:
            raise VectorIndexError("Failed to search the knowledge base") from e

        if not matches:
            return QueryResult(answer=NO_MATCH_ANSWER, sources=[], follow_up_questions=[])

        context = build_context(matches, self.context_char_budget)

        try:
            answer = await asyncio.wait_for(
                self.generator.generate(SYSTEM_PROMPT, build_user_prompt(question, context)),
                timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GenerationError("Failed to generate response: timed out") from e
        except GenerationError as e:
            raise GenerationError(f"Failed to generate response: {e.message}") from e

        return QueryResult(
            answer=answer,
            sources=format_sources(matches),
            follow_up_questions=suggest_follow_ups(question, answer),
        )
