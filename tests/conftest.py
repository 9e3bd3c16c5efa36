"""Shared fixtures: isolated settings, a temp database, and fake providers."""

import asyncio
import hashlib
import re

import httpx
import pytest
import structlog

from source_query.config import get_settings
from source_query.errors import EmbeddingRateLimited
from source_query.ingestion import IngestionOrchestrator, SourceFetcher, TextChunker, WorkerPool
from source_query.models import SourceStatus
from source_query.retrieval import (
    Embedder,
    EmbeddingClient,
    FaissVectorIndex,
    Generator,
    QueryEngine,
)
from source_query.storage import (
    SourceRepository,
    create_engine_for,
    get_session_factory,
    init_database,
)

DIMENSION = 16
WORD_PATTERN = re.compile(r"[a-z0-9]+")


async def no_sleep(_seconds: float):
    return None


def force_status(source_id: str, status: SourceStatus):
    """Set a stored status from outside any running loop, as a dead process would leave it."""

    async def update():
        engine = create_engine_for(get_settings().database_url)
        try:
            async with get_session_factory(engine)() as session:
                await SourceRepository(session).transition(
                    source_id, [SourceStatus.UNKNOWN], status
                )
        finally:
            await engine.dispose()

    asyncio.run(update())


class FakeEmbedder(Embedder):
    """Bag-of-words hashing embedder: texts sharing words score higher."""

    def __init__(self, model_name: str = "fake-model", dimension: int = DIMENSION):
        self._model_name = model_name
        self.dimension = dimension
        self.calls: list[list[str]] = []
        self.rate_limited_calls = 0

    @property
    def model_name(self) -> str:
        return self._model_name

    def vector(self, text: str) -> list[float]:
        values = [0.0] * self.dimension
        values[0] = 0.1
        for word in WORD_PATTERN.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % (self.dimension - 1)
            values[bucket + 1] += 1.0
        return values

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if self.rate_limited_calls > 0:
            self.rate_limited_calls -= 1
            raise EmbeddingRateLimited("slow down")
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class FakeGenerator(Generator):
    def __init__(self, answer: str = "Applications close in June."):
        self.answer = answer
        self.prompts: list[tuple[str, str]] = []

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        self.prompts.append((system_prompt, user_prompt))
        return self.answer


class FakeSite:
    """Serves canned pages through httpx.MockTransport and counts hits."""

    def __init__(self):
        self.pages: dict[str, tuple[int, str, str]] = {}
        self.hits: dict[str, int] = {}

    def add(self, url: str, body: str, status: int = 200, content_type: str = "text/html"):
        self.pages[url.rstrip("/")] = (status, body, content_type)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url).rstrip("/")
        self.hits[url] = self.hits.get(url, 0) + 1
        if url not in self.pages:
            return httpx.Response(404, text="not found")
        status, body, content_type = self.pages[url]
        return httpx.Response(status, text=body, headers={"content-type": content_type})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def page(body: str, title: str = "", description: str = "") -> str:
    head = f"<title>{title}</title>" if title else ""
    if description:
        head += f'<meta name="description" content="{description}">'
    return f"<html><head>{head}</head><body><p>{body}</p></body></html>"


@pytest.fixture(autouse=True)
def uncached_logging(monkeypatch):
    """Resolve the output stream per call so captured streams never go stale."""
    structlog.configure(cache_logger_on_first_use=False)
    monkeypatch.setattr("source_query.api.app.configure_logging", lambda debug=False: None)
    monkeypatch.setattr("source_query.cli.configure_logging", lambda debug=False: None)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point settings at a temp directory with zero backoff delays."""
    monkeypatch.setenv("SOURCE_QUERY_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SOURCE_QUERY_INDEX_DIR", str(tmp_path / "data" / "indexes"))
    monkeypatch.setenv(
        "SOURCE_QUERY_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    )
    monkeypatch.setenv("SOURCE_QUERY_EMBEDDING_MODEL", "fake-model")
    monkeypatch.setenv("SOURCE_QUERY_FETCH_RETRY_DELAY_SECONDS", "0")
    monkeypatch.setenv("SOURCE_QUERY_EMBEDDING_RETRY_DELAY_SECONDS", "0")
    monkeypatch.setenv("SOURCE_QUERY_BULK_BATCH_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def engine(isolated_settings):
    engine = create_engine_for(isolated_settings.database_url)
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def fetcher(site):
    return SourceFetcher(transport=site.transport, retry_delay=0, sleep=no_sleep)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def embeddings(embedder):
    return EmbeddingClient(embedder, batch_size=5, max_retries=5, retry_delay=0, sleep=no_sleep)


@pytest.fixture
def index(tmp_path):
    return FaissVectorIndex("fake-model", tmp_path / "vectors")


@pytest.fixture
def generator():
    return FakeGenerator()


class HeldPool:
    """Stands in for WorkerPool: keeps jobs queued until `join` runs them."""

    def __init__(self):
        self.jobs = []
        self.started = True
        self.size = 1

    @property
    def pending(self) -> int:
        return len(self.jobs)

    def submit(self, job):
        future = asyncio.get_running_loop().create_future()
        self.jobs.append((job, future))
        return future

    async def join(self):
        while self.jobs:
            job, future = self.jobs.pop(0)
            future.set_result(await job())


@pytest.fixture
async def pool():
    pool = WorkerPool(2)
    yield pool
    await pool.shutdown(drain=True)


@pytest.fixture
def orchestrator(engine, fetcher, embeddings, index, pool):
    return IngestionOrchestrator(
        session_factory=get_session_factory(engine),
        fetcher=fetcher,
        embeddings=embeddings,
        index=index,
        pool=pool,
        chunker=TextChunker(1000, 200),
        bulk_concurrency=3,
        bulk_batch_delay=0,
        sleep=no_sleep,
    )


@pytest.fixture
def held(orchestrator):
    """Hold queued runs so a source stays in flight until `held.join()`."""
    orchestrator.pool = HeldPool()
    return orchestrator.pool


@pytest.fixture
def query_engine(embeddings, index, generator):
    return QueryEngine(embeddings=embeddings, index=index, generator=generator)
