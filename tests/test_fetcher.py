import httpx
import pytest

from source_query.errors import FetchError
from source_query.ingestion import SourceFetcher

from conftest import no_sleep, page

URL = "https://example.edu"


async def test_extracts_title_description_and_body(site, fetcher):
    html = """
    <html><head>
      <title>Example College</title>
      <meta name="description" content="A small college">
      <script>var tracking = 1;</script>
    </head>
    <body>
      <nav>Home | About | Contact</nav>
      <main><h1>Admissions</h1><p>Admissions open for 2025. Apply by June.
      Applications are reviewed on a rolling basis by the admissions office.</p></main>
      <footer>Copyright</footer>
    </body></html>
    """
    site.add(URL, html)

    result = await fetcher.fetch(URL)

    assert result.title == "Example College"
    assert result.description == "A small college"
    assert "Apply by June." in result.body
    assert "tracking" not in result.body
    assert "Home | About" not in result.body
    assert "Copyright" not in result.body
    assert "  " not in result.body
    assert result.status_code == 200


async def test_title_falls_back_to_og_title_then_heading_then_url(site, fetcher):
    site.add(f"{URL}/a", '<html><head><meta property="og:title" content="OG"></head><body><p>Body text</p></body></html>')
    site.add(f"{URL}/b", "<html><body><h1>Heading</h1><p>Body text</p></body></html>")
    site.add(f"{URL}/c", "<html><body><p>Body text</p></body></html>")

    assert (await fetcher.fetch(f"{URL}/a")).title == "OG"
    assert (await fetcher.fetch(f"{URL}/b")).title == "Heading"
    assert (await fetcher.fetch(f"{URL}/c")).title == f"{URL}/c"


async def test_og_description_fallback(site, fetcher):
    site.add(URL, '<html><head><meta property="og:description" content="From OG"></head><body><p>Body</p></body></html>')
    assert (await fetcher.fetch(URL)).description == "From OG"


async def test_short_main_region_falls_back_to_body(site, fetcher):
    site.add(URL, "<html><body><main>Tiny</main><div>Outside the main region</div></body></html>")
    result = await fetcher.fetch(URL)
    assert "Outside the main region" in result.body


async def test_retries_5xx_then_fails(site, fetcher):
    site.add(URL, "unavailable", status=503)

    attempts = []

    async def on_attempt(attempt, max_attempts):
        attempts.append((attempt, max_attempts))

    with pytest.raises(FetchError) as excinfo:
        await fetcher.fetch(URL, on_attempt=on_attempt)

    assert site.hits[URL] == 3
    assert attempts == [(1, 3), (2, 3), (3, 3)]
    assert excinfo.value.attempts == 3
    assert excinfo.value.http_status == 503
    assert "503" in excinfo.value.message


async def test_recovers_after_transient_failure(site):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429)
        return httpx.Response(200, text=page("Recovered content"))

    fetcher = SourceFetcher(transport=httpx.MockTransport(handler), retry_delay=0, sleep=no_sleep)
    result = await fetcher.fetch(URL)
    assert result.body == "Recovered content"
    assert calls["n"] == 2


async def test_404_is_not_retried(site, fetcher):
    with pytest.raises(FetchError) as excinfo:
        await fetcher.fetch(f"{URL}/missing")

    assert site.hits[f"{URL}/missing"] == 1
    assert excinfo.value.http_status == 404
    assert not excinfo.value.retryable


async def test_connection_refused_is_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = SourceFetcher(transport=httpx.MockTransport(handler), retry_delay=0, sleep=no_sleep)
    with pytest.raises(FetchError) as excinfo:
        await fetcher.fetch(URL)

    assert calls["n"] == 3
    assert excinfo.value.reason == "connection"


async def test_backoff_doubles():
    delays = []

    async def record(seconds):
        delays.append(seconds)

    fetcher = SourceFetcher(
        transport=httpx.MockTransport(lambda r: httpx.Response(500)),
        retry_delay=2,
        sleep=record,
    )
    with pytest.raises(FetchError):
        await fetcher.fetch(URL)

    assert delays == [2, 4]


async def test_empty_body_is_no_content(site, fetcher):
    site.add(URL, "<html><head><title>Empty</title></head><body><script>x()</script></body></html>")

    with pytest.raises(FetchError) as excinfo:
        await fetcher.fetch(URL)

    assert excinfo.value.reason == "no_content"
    assert site.hits[URL] == 1


async def test_body_size_cap(site):
    site.add(URL, page("x" * 5000))
    fetcher = SourceFetcher(transport=site.transport, max_bytes=1000, retry_delay=0, sleep=no_sleep)

    with pytest.raises(FetchError) as excinfo:
        await fetcher.fetch(URL)

    assert excinfo.value.reason == "too_large"


async def test_plain_text_passthrough(site, fetcher):
    site.add(URL, "Plain   text\n\nbody", content_type="text/plain")
    result = await fetcher.fetch(URL)
    assert result.body == "Plain text body"
