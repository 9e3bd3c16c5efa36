"""Web page fetcher with retry/backoff and structured extraction."""

import asyncio
import re
from typing import Awaitable, Callable

import httpx
import structlog
from bs4 import BeautifulSoup

from source_query.config import get_settings
from source_query.errors import FetchError
from source_query.models.source import FetchResult
from source_query.observability import FETCH_RETRIES

logger = structlog.get_logger()

AttemptCallback = Callable[[int, int], Awaitable[None]]

# Removed before any text is read
NOISE_SELECTORS = (
    "script, style, noscript, iframe, nav, footer, header, aside, "
    ".cookie-banner, .ad, #cookie-consent"
)
MAIN_CONTENT_SELECTORS = "main, article, .content, .main-content, #content, #main"
NAVIGATION_SELECTORS = "nav, header, footer, aside, .navigation, .menu, .sidebar"
MIN_MAIN_CONTENT_CHARS = 100

WHITESPACE_PATTERN = re.compile(r"\s+")


class SourceFetcher:
    """
    Fetch a URL and extract title, description and body text.

    Retries timeouts, connection failures, HTTP 429 and 5xx with
    exponential backoff; everything else fails on the first attempt.
    """

    def __init__(
        self,
        timeout: float | None = None,
        max_bytes: int | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the fetcher.

        Args:
            timeout: Per-request timeout in seconds
            max_bytes: Response body cap
            max_retries: Total attempts for retryable failures
            retry_delay: Base backoff delay, doubled after every attempt
            user_agent: Client identity header
            transport: Optional httpx transport (tests use MockTransport)
            sleep: Backoff sleeper
        """
        settings = get_settings()
        self.timeout = timeout or settings.fetch_timeout_seconds
        self.max_bytes = max_bytes or settings.fetch_max_bytes
        self.max_retries = max_retries or settings.fetch_max_retries
        self.retry_delay = settings.fetch_retry_delay_seconds if retry_delay is None else retry_delay
        self.user_agent = user_agent or settings.fetch_user_agent
        self._transport = transport
        self._sleep = sleep

    def _get_headers(self) -> dict:
        return {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }

    async def fetch(self, url: str, on_attempt: AttemptCallback | None = None) -> FetchResult:
        """
        Fetch and extract *url*.

        Args:
            url: Page to fetch
            on_attempt: Awaited with (attempt, max_attempts) before each try

        Returns:
            FetchResult with title, description, body and status code

        Raises:
            FetchError: With `attempts` set to the number of tries made
        """
        last_error: FetchError | None = None

        for attempt in range(1, self.max_retries + 1):
            if on_attempt is not None:
                await on_attempt(attempt, self.max_retries)
            try:
                return await self._fetch_once(url)
            except FetchError as e:
                e.attempts = attempt
                last_error = e
                logger.warning(
                    "fetch_attempt_failed",
                    url=url,
                    attempt=attempt,
                    max_attempts=self.max_retries,
                    reason=e.reason,
                    status_code=e.http_status,
                    error=e.message,
                )
                if not e.retryable or attempt >= self.max_retries:
                    raise

            wait = self.retry_delay * (2 ** (attempt - 1))
            FETCH_RETRIES.inc()
            logger.info("fetch_retry_scheduled", url=url, wait_seconds=wait)
            await self._sleep(wait)

        raise last_error or FetchError(f"Failed to fetch {url}")

    async def _fetch_once(self, url: str) -> FetchResult:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers=self._get_headers(),
            transport=self._transport,
        ) as client:
            try:
                async with client.stream("GET", url) as response:
                    status = response.status_code
                    if status >= 400:
                        raise FetchError(
                            f"Failed to fetch {url}: HTTP {status}",
                            reason="http",
                            status_code=status,
                            retryable=status == 429 or 500 <= status < 600,
                        )
                    raw = await self._read_capped(response, url)
                    content_type = response.headers.get("content-type", "text/html")
                    text = raw.decode(response.encoding or "utf-8", errors="replace")
            except httpx.TimeoutException as e:
                raise FetchError(
                    f"Failed to fetch {url}: request timed out",
                    reason="timeout",
                    retryable=True,
                ) from e
            except httpx.ConnectError as e:
                raise FetchError(
                    f"Failed to fetch {url}: connection failed ({e})",
                    reason="connection",
                    retryable=True,
                ) from e
            except httpx.HTTPError as e:
                raise FetchError(
                    f"Failed to fetch {url}: {e}",
                    reason="connection",
                ) from e

        result = self.extract(text, url, content_type=content_type, status_code=status)
        if not result.body:
            raise FetchError(
                f"Failed to fetch {url}: no meaningful content found in the webpage",
                reason="no_content",
                status_code=status,
            )
        return result

    async def _read_capped(self, response: httpx.Response, url: str) -> bytes:
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            raise FetchError(
                f"Failed to fetch {url}: response exceeds {self.max_bytes} bytes",
                reason="too_large",
                status_code=response.status_code,
            )
        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > self.max_bytes:
                raise FetchError(
                    f"Failed to fetch {url}: response exceeds {self.max_bytes} bytes",
                    reason="too_large",
                    status_code=response.status_code,
                )
        return bytes(body)

    def extract(
        self,
        html: str,
        url: str,
        content_type: str = "text/html",
        status_code: int = 200,
    ) -> FetchResult:
        """Extract title, description and body text from a page."""
        if content_type.split(";")[0].strip().lower() == "text/plain":
            return FetchResult(
                url=url,
                title=url,
                body=_collapse(html),
                status_code=status_code,
            )

        soup = BeautifulSoup(html, "html.parser")

        title = _title(soup) or url
        description = _meta(soup, name="description") or _meta(soup, prop="og:description")

        for tag in soup.select(NOISE_SELECTORS):
            tag.decompose()

        return FetchResult(
            url=url,
            title=title,
            description=description,
            body=_collapse(_body_text(soup)),
            status_code=status_code,
        )


def _collapse(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def _meta(soup: BeautifulSoup, name: str | None = None, prop: str | None = None) -> str:
    attrs = {"name": name} if name else {"property": prop}
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip()
    return ""


def _title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.get_text(strip=True):
        return soup.title.get_text(strip=True)
    og_title = _meta(soup, prop="og:title")
    if og_title:
        return og_title
    h1 = soup.find("h1")
    if h1 and h1.get_text(strip=True):
        return h1.get_text(strip=True)
    return ""


def _body_text(soup: BeautifulSoup) -> str:
    """Prefer the main content region; fall back to the stripped body."""
    regions = soup.select(MAIN_CONTENT_SELECTORS)
    # Nested matches (article inside main) would repeat text
    matched = {id(r) for r in regions}
    top_level = [r for r in regions if not any(id(p) in matched for p in r.parents)]
    main_text = " ".join(r.get_text(" ") for r in top_level)
    if len(_collapse(main_text)) > MIN_MAIN_CONTENT_CHARS:
        return main_text

    body = soup.body or soup
    for tag in body.select(NAVIGATION_SELECTORS):
        tag.decompose()
    return body.get_text(" ")
