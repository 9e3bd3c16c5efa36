"""Source registration and the per-source ingestion state machine."""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable
from urllib.parse import urlparse

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from source_query.config import get_settings
from source_query.errors import (
    AuthError,
    ConflictError,
    FetchError,
    InternalError,
    NotFoundError,
    SourceQueryError,
    ValidationError,
)
from source_query.ingestion.chunker import TextChunker, get_chunker
from source_query.ingestion.fetcher import SourceFetcher
from source_query.ingestion.worker import WorkerPool
from source_query.models import (
    IN_FLIGHT_STATES,
    TRIGGERABLE_STATES,
    BulkItemResult,
    BulkResult,
    EmbeddingRecord,
    EmbeddingSummary,
    FetchResult,
    Progress,
    ScrapedContent,
    Source,
    SourceStatus,
    StatusDetail,
    vector_id,
)
from source_query.models.source import utcnow
from source_query.observability import INGESTION_LATENCY, INGESTION_RUNS
from source_query.retrieval.embeddings import EmbeddingClient
from source_query.retrieval.vector import VectorIndex
from source_query.storage import ScrapedContentRepository, SourceRepository, session_scope

logger = structlog.get_logger()

ALREADY_RUNNING = "Ingestion already in progress"
INTERRUPTED = "Ingestion interrupted"


class StateChanged(InternalError):
    """The source left the expected state while a run was working on it."""


class IngestionOrchestrator:
    """
    Drives sources through fetch, chunk, embed and index.

    State machine:
        unknown|error|active -> pending -> scraping -> processing -> embedding -> active
        any in-flight state -> error

    Every transition is a compare-and-set on the stored status, so two
    concurrent triggers can never both get a run past `pending`. Runs
    execute on the worker pool; their failures are written to the source
    and logged, never raised to the caller that triggered them.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: SourceFetcher,
        embeddings: EmbeddingClient,
        index: VectorIndex,
        pool: WorkerPool,
        chunker: TextChunker | None = None,
        upsert_batch_size: int | None = None,
        bulk_concurrency: int | None = None,
        bulk_batch_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.embeddings = embeddings
        self.index = index
        self.pool = pool
        self.chunker = chunker or get_chunker()
        self.upsert_batch_size = upsert_batch_size or settings.vector_upsert_batch_size
        self.bulk_concurrency = bulk_concurrency or settings.bulk_concurrency
        self.bulk_batch_delay = (
            settings.bulk_batch_delay_seconds if bulk_batch_delay is None else bulk_batch_delay
        )
        self._sleep = sleep
        self._runs: dict[str, asyncio.Future] = {}

    @asynccontextmanager
    async def _sources(self) -> AsyncIterator[SourceRepository]:
        async with session_scope(self.session_factory) as session:
            yield SourceRepository(session)

    @asynccontextmanager
    async def _contents(self) -> AsyncIterator[ScrapedContentRepository]:
        async with session_scope(self.session_factory) as session:
            yield ScrapedContentRepository(session)

    # Registration and inspection

    async def register_source(self, principal: str | None, url: str | None) -> Source:
        """Register a web page in the `unknown` state."""
        principal = _require_principal(principal)
        url = (url or "").strip()
        if not url:
            raise ValidationError("URL is required")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("Invalid URL format")

        source = Source(id=uuid.uuid4().hex, kind="website", origin=url, owner_id=principal)
        async with self._sources() as repo:
            if await repo.get_by_origin(url):
                raise ConflictError("URL already exists")
            try:
                await repo.create(source)
            except ConflictError as e:
                raise ConflictError("URL already exists") from e

        logger.info("source_registered", source_id=source.id, url=url, owner_id=principal)
        return source

    async def register_document(
        self,
        principal: str | None,
        title: str | None,
        content: str | None,
        description: str | None = None,
    ) -> Source:
        """Register uploaded text; its "fetch" yields the stored text."""
        principal = _require_principal(principal)
        title = (title or "").strip()
        content = (content or "").strip()
        if not title:
            raise ValidationError("Title is required")
        if not content:
            raise ValidationError("Content is required")

        source = Source(
            id=uuid.uuid4().hex,
            kind="document",
            origin=content,
            title=title,
            description=(description or "").strip() or None,
            owner_id=principal,
        )
        async with self._sources() as repo:
            if await repo.get_by_origin(content):
                raise ConflictError("Document already exists")
            try:
                await repo.create(source)
            except ConflictError as e:
                raise ConflictError("Document already exists") from e

        logger.info("document_registered", source_id=source.id, owner_id=principal)
        return source

    async def get_source(self, principal: str | None, source_id: str) -> Source:
        principal = _require_principal(principal)
        async with self._sources() as repo:
            source = await repo.get_owned(source_id, principal)
        if source is None:
            raise NotFoundError("Source not found")
        return source

    async def list_sources(self, principal: str | None) -> list[Source]:
        principal = _require_principal(principal)
        async with self._sources() as repo:
            return await repo.list_by_owner(principal)

    async def delete_source(self, principal: str | None, source_id: str):
        """Remove a source, its scraped content and its vectors."""
        source = await self.get_source(principal, source_id)
        if source.in_flight:
            raise ConflictError(ALREADY_RUNNING)

        removed = await self.index.delete_by_filter({"source_id": source.id})
        async with self._contents() as contents:
            await contents.delete_by_source(source.id)
        async with self._sources() as repo:
            deleted = await repo.delete(source.id, source.owner_id)
        if not deleted:
            raise NotFoundError("Source not found")

        logger.info("source_deleted", source_id=source.id, vectors_removed=removed)

    # Triggering

    async def trigger_ingestion(self, principal: str | None, source_id: str) -> Source:
        """
        Move a source to `pending` and queue its run.

        Returns as soon as the run is queued.

        Raises:
            NotFoundError: Unknown or foreign source
            ConflictError: A run is already in flight
        """
        source = await self.get_source(principal, source_id)
        await self._start(source.id)
        self._schedule(source.id)
        return await self.get_source(principal, source_id)

    async def _start(self, source_id: str):
        detail = StatusDetail(progress=Progress(phase="pending"))
        async with self._sources() as repo:
            claimed = await repo.transition(
                source_id, TRIGGERABLE_STATES, SourceStatus.PENDING, detail
            )
        if not claimed:
            raise ConflictError(ALREADY_RUNNING)
        logger.info("ingestion_queued", source_id=source_id)

    def _schedule(self, source_id: str) -> asyncio.Future:
        future = self.pool.submit(lambda: self.run(source_id))
        self._runs[source_id] = future
        future.add_done_callback(lambda f: self._forget(source_id, f))
        return future

    def _forget(self, source_id: str, future: asyncio.Future):
        if self._runs.get(source_id) is future:
            del self._runs[source_id]

    # Lifecycle

    async def recover_interrupted(self) -> list[str]:
        """
        Move sources left in flight by a previous process to `error`.

        Call once at startup, before any run is queued.
        """
        async with self._sources() as repo:
            ids = await repo.interrupt_in_flight(INTERRUPTED)
        if ids:
            logger.warning("ingestion_runs_recovered", count=len(ids), source_ids=ids)
        return ids

    async def shutdown(self, drain: bool = True):
        """
        Stop the worker pool.

        Without *drain*, queued and running jobs are cancelled and their
        sources end in `error`.
        """
        scheduled = dict(self._runs)
        await self.pool.shutdown(drain=drain)

        cancelled = [sid for sid, future in scheduled.items() if future.cancelled()]
        if cancelled:
            async with self._sources() as repo:
                ids = await repo.interrupt_in_flight(INTERRUPTED, cancelled)
            if ids:
                logger.warning("ingestion_runs_interrupted", count=len(ids), source_ids=ids)

    # The run

    async def run(self, source_id: str) -> SourceStatus | None:
        """
        Execute one ingestion run for a `pending` source.

        Returns the state the source ended in, or None when the source is
        gone or another run claimed it first.
        """
        async with self._sources() as repo:
            source = await repo.get(source_id)
        if source is None:
            logger.warning("ingestion_source_missing", source_id=source_id)
            return None

        start_time = time.time()
        detail = StatusDetail(
            current_attempt=0,
            max_attempts=self._max_attempts(source),
            progress=Progress(phase="scraping"),
        )
        async with self._sources() as repo:
            claimed = await repo.transition(
                source_id, [SourceStatus.PENDING], SourceStatus.SCRAPING, detail
            )
        if not claimed:
            logger.info("ingestion_skipped", source_id=source_id, reason="not_pending")
            return None

        logger.info("ingestion_started", source_id=source_id, kind=source.kind)
        try:
            fetched = await self._scrape(source, detail)
            chunk_count = await self._process_and_embed(source, fetched, detail)
        except asyncio.CancelledError:
            await self._fail(source, detail, InternalError(INTERRUPTED))
            INGESTION_RUNS.labels(kind=source.kind, status="interrupted").inc()
            raise
        except Exception as e:
            await self._fail(source, detail, e)
            INGESTION_RUNS.labels(kind=source.kind, status="error").inc()
            return SourceStatus.ERROR

        INGESTION_RUNS.labels(kind=source.kind, status="active").inc()
        INGESTION_LATENCY.labels(kind=source.kind).observe(time.time() - start_time)
        logger.info(
            "ingestion_complete",
            source_id=source_id,
            chunks=chunk_count,
            duration_seconds=round(time.time() - start_time, 3),
        )
        return SourceStatus.ACTIVE

    def _max_attempts(self, source: Source) -> int:
        return self.fetcher.max_retries if source.kind == "website" else 1

    async def _scrape(self, source: Source, detail: StatusDetail) -> FetchResult:
        if source.kind == "document":
            detail.current_attempt = 1
            await self._update(source.id, SourceStatus.SCRAPING, detail)
            return FetchResult(
                title=source.title or "Untitled document",
                description=source.description or "",
                body=source.origin,
                status_code=None,
            )

        async def on_attempt(attempt: int, max_attempts: int):
            detail.current_attempt = attempt
            detail.max_attempts = max_attempts
            await self._update(source.id, SourceStatus.SCRAPING, detail)

        fetched = await self.fetcher.fetch(source.origin, on_attempt=on_attempt)
        detail.last_status_code = fetched.status_code
        return fetched

    async def _process_and_embed(
        self, source: Source, fetched: FetchResult, detail: StatusDetail
    ) -> int:
        detail.progress = Progress(phase="processing")
        await self._advance(source.id, SourceStatus.SCRAPING, SourceStatus.PROCESSING, detail)

        async with self._contents() as contents:
            await contents.upsert(
                ScrapedContent(
                    source_id=source.id,
                    owner_id=source.owner_id,
                    url=fetched.url or (source.origin if source.kind == "website" else None),
                    title=fetched.title,
                    description=fetched.description,
                    body=fetched.body,
                    content_length=len(fetched.body),
                    status_code=fetched.status_code,
                )
            )

        chunks = self.chunker.split(fetched.body)
        if not chunks:
            raise FetchError("No content extracted", reason="no_content")

        detail.progress = Progress(phase="embedding", current=0, total=len(chunks))
        await self._advance(source.id, SourceStatus.PROCESSING, SourceStatus.EMBEDDING, detail)

        vectors: list[list[float]] = []
        step = self.embeddings.batch_size
        for i in range(0, len(chunks), step):
            vectors.extend(await self.embeddings.embed_batch(chunks[i : i + step]))
            detail.progress = Progress(phase="embedding", current=len(vectors), total=len(chunks))
            await self._update(source.id, SourceStatus.EMBEDDING, detail)

        records = [
            EmbeddingRecord(
                id=vector_id(source.id, idx),
                values=values,
                metadata={
                    "text": text,
                    "owner_id": source.owner_id,
                    "source_id": source.id,
                    "chunk_index": idx,
                    "title": fetched.title,
                    "description": fetched.description,
                    "url": source.origin if source.kind == "website" else None,
                    "source": source.kind,
                },
            )
            for idx, (text, values) in enumerate(zip(chunks, vectors))
        ]

        # Drops chunks beyond the new count left by a longer previous version
        async with self.index.batch():
            await self.index.delete_by_filter({"source_id": source.id})
            for i in range(0, len(records), self.upsert_batch_size):
                await self.index.upsert(records[i : i + self.upsert_batch_size])

        now = utcnow()
        detail.progress = Progress(phase="complete", current=len(records), total=len(records))
        detail.last_error = None
        detail.last_update = now
        await self._advance(
            source.id,
            SourceStatus.EMBEDDING,
            SourceStatus.ACTIVE,
            detail,
            title=fetched.title,
            description=fetched.description or None,
            last_scraped=now,
            embeddings=EmbeddingSummary(count=len(records), last_updated=now),
        )
        return len(records)

    async def _fail(self, source: Source, detail: StatusDetail, error: Exception):
        if isinstance(error, SourceQueryError):
            message = error.message
        else:
            message = str(error) or error.__class__.__name__

        if isinstance(error, FetchError):
            detail.current_attempt = error.attempts
            if error.http_status is not None:
                detail.last_status_code = error.http_status
        detail.last_error = message
        detail.last_update = utcnow()

        logger.error(
            "ingestion_failed",
            source_id=source.id,
            error=message,
            attempt=detail.current_attempt,
            status_code=detail.last_status_code,
            exc_info=not isinstance(error, SourceQueryError),
        )

        async with self._sources() as repo:
            await repo.transition(source.id, IN_FLIGHT_STATES, SourceStatus.ERROR, detail)

    async def _advance(
        self,
        source_id: str,
        current: SourceStatus,
        new: SourceStatus,
        detail: StatusDetail,
        **fields,
    ):
        detail.last_update = utcnow()
        async with self._sources() as repo:
            moved = await repo.transition(source_id, [current], new, detail, **fields)
        if not moved:
            raise StateChanged(f"Source left '{current.value}' during ingestion")
        logger.debug("ingestion_state", source_id=source_id, status=new.value)

    async def _update(self, source_id: str, current: SourceStatus, detail: StatusDetail):
        detail.last_update = utcnow()
        async with self._sources() as repo:
            if not await repo.update_detail(source_id, current, detail):
                raise StateChanged(f"Source left '{current.value}' during ingestion")

    # Bulk workflows

    async def reingest_all(self, principal: str | None) -> BulkResult:
        """
        Wipe derived data for the principal's sources and ingest them again.

        Runs go through the worker pool `bulk_concurrency` at a time with a
        fixed pause between batches. Sources already mid-run are skipped.
        """
        principal = _require_principal(principal)
        sources, deleted, cleared, reset_ids = await self._reset(principal)
        results = self._skipped(sources, reset_ids)

        batches = [
            reset_ids[i : i + self.bulk_concurrency]
            for i in range(0, len(reset_ids), self.bulk_concurrency)
        ]
        for n, batch in enumerate(batches):
            results.extend(await self._run_batch(batch))
            if n < len(batches) - 1:
                await self._sleep(self.bulk_batch_delay)

        logger.info(
            "reingest_all_complete",
            owner_id=principal,
            total=len(sources),
            processed=len(reset_ids),
            succeeded=sum(1 for r in results if r.success),
        )
        return BulkResult(
            total_sources=len(sources),
            deleted_contents=deleted,
            processed=len(reset_ids),
            vector_index_cleared=cleared,
            results=results,
        )

    async def delete_all(self, principal: str | None) -> BulkResult:
        """Wipe derived data for the principal's sources without re-ingesting."""
        principal = _require_principal(principal)
        sources, deleted, cleared, reset_ids = await self._reset(principal)
        results = self._skipped(sources, reset_ids)
        results.extend(
            BulkItemResult(id=sid, success=True, status=SourceStatus.UNKNOWN)
            for sid in reset_ids
        )

        logger.info(
            "delete_all_complete",
            owner_id=principal,
            deleted_contents=deleted,
            vector_index_cleared=cleared,
        )
        return BulkResult(
            total_sources=len(sources),
            deleted_contents=deleted,
            processed=len(reset_ids),
            vector_index_cleared=cleared,
            results=results,
        )

    async def _reset(self, principal: str) -> tuple[list[Source], int, bool, list[str]]:
        async with self._sources() as repo:
            sources = await repo.list_by_owner(principal)
            any_running = await repo.has_in_flight()
        busy = [s.id for s in sources if s.in_flight]
        idle = [s.id for s in sources if not s.in_flight]

        async with self._contents() as contents:
            deleted = await contents.delete_by_owner(principal, exclude=busy)
        # A run still writing vectors must keep them
        cleared = await self._clear_index(idle if any_running else None)
        async with self._sources() as repo:
            reset_ids = await repo.reset_to_unknown(principal)
        return sources, deleted, cleared, reset_ids

    async def _clear_index(self, source_ids: list[str] | None = None) -> bool:
        """Clear the whole index, or only the vectors of *source_ids*."""
        try:
            if source_ids is None:
                await self.index.delete_all()
            else:
                for source_id in source_ids:
                    await self.index.delete_by_filter({"source_id": source_id})
        except Exception as e:
            logger.warning("vector_index_clear_failed", error=str(e))
            return False
        return True

    def _skipped(self, sources: list[Source], reset_ids: list[str]) -> list[BulkItemResult]:
        reset = set(reset_ids)
        return [
            BulkItemResult(id=s.id, success=False, status=s.status, error=ALREADY_RUNNING)
            for s in sources
            if s.id not in reset
        ]

    async def _run_batch(self, batch: list[str]) -> list[BulkItemResult]:
        futures = []
        results = []
        for source_id in batch:
            try:
                await self._start(source_id)
            except ConflictError as e:
                results.append(BulkItemResult(id=source_id, success=False, error=e.message))
                continue
            futures.append((source_id, self._schedule(source_id)))

        outcomes = await asyncio.gather(*(f for _, f in futures), return_exceptions=True)
        for (source_id, _), outcome in zip(futures, outcomes):
            async with self._sources() as repo:
                source = await repo.get(source_id)
            status = source.status if source else None
            error = None
            if isinstance(outcome, BaseException):
                error = str(outcome) or outcome.__class__.__name__
            elif status != SourceStatus.ACTIVE:
                error = (
                    source.status_detail.last_error
                    if source and source.status_detail
                    else "Ingestion did not complete"
                )
            results.append(
                BulkItemResult(
                    id=source_id,
                    success=status == SourceStatus.ACTIVE,
                    status=status,
                    error=error,
                )
            )
        return results


def _require_principal(principal: str | None) -> str:
    if not principal or not principal.strip():
        raise AuthError("Unauthorized")
    return principal.strip()
