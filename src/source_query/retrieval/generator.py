"""Answer generation via an OpenAI-compatible chat completions API."""

import time
from abc import ABC, abstractmethod

import httpx
import structlog

from source_query.config import get_settings
from source_query.errors import GenerationError

logger = structlog.get_logger()


class Generator(ABC):
    """Produces an answer from a system prompt and a user prompt."""

    @abstractmethod
    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        pass


class ChatCompletionGenerator(Generator):
    """Thin wrapper over a `/chat/completions` endpoint."""

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_url = (api_url or settings.llm_api_url).rstrip("/")
        self.api_key = api_key or settings.llm_api_key
        self.model = model or settings.llm_model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.timeout = timeout or settings.llm_timeout_seconds
        self._transport = transport

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }

        start = time.perf_counter()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.api_url}/chat/completions",
                    headers=self._get_headers(),
                    json=payload,
                )
            except httpx.TimeoutException as e:
                raise GenerationError(f"LLM request timed out after {self.timeout}s") from e
            except httpx.HTTPError as e:
                raise GenerationError(f"LLM request failed: {e}") from e

        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        if response.status_code != 200:
            logger.error(
                "llm_request_failed",
                status_code=response.status_code,
                elapsed_ms=elapsed_ms,
            )
            raise GenerationError(f"LLM returned HTTP {response.status_code}")

        try:
            content = response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError("LLM returned an unexpected response") from e

        logger.debug("llm_request_completed", elapsed_ms=elapsed_ms, chars=len(content))
        return clean_answer(content)


def clean_answer(text: str) -> str:
    """Strip a leading role label some models echo back."""
    text = text.strip()
    if text.lower().startswith("assistant:"):
        text = text[len("assistant:"):].lstrip()
    return text
