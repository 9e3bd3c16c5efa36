"""Error taxonomy shared by the ingestion pipeline, query engine and API."""


class SourceQueryError(Exception):
    """Base class for errors that map to a caller-facing failure."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SourceQueryError):
    """Bad input, rejected before any side effect."""

    status_code = 400
    code = "validation_error"


class AuthError(SourceQueryError):
    """No authenticated principal."""

    status_code = 401
    code = "unauthorized"


class NotFoundError(SourceQueryError):
    """Unknown or foreign-owned source."""

    status_code = 404
    code = "not_found"


class ConflictError(SourceQueryError):
    """Duplicate origin, or an ingestion run already in flight."""

    status_code = 409
    code = "conflict"


class RateLimitError(SourceQueryError):
    """Too many requests for a client/route window."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class FetchError(SourceQueryError):
    """Fetching or extracting a source failed."""

    status_code = 502
    code = "fetch_failed"

    def __init__(
        self,
        message: str,
        *,
        reason: str = "http",
        status_code: int | None = None,
        retryable: bool = False,
        attempts: int = 1,
    ):
        super().__init__(message)
        self.reason = reason  # "timeout" | "connection" | "http" | "too_large" | "no_content"
        self.http_status = status_code
        self.retryable = retryable
        self.attempts = attempts


class EmbeddingError(SourceQueryError):
    """Embedding provider failure after retries."""

    status_code = 502
    code = "embedding_failed"


class EmbeddingRateLimited(EmbeddingError):
    """Provider answered with a rate-limit response; the client retries these."""


class VectorIndexError(SourceQueryError):
    """Vector store failure."""

    status_code = 502
    code = "vector_index_failed"


class GenerationError(SourceQueryError):
    """Language model failure or timeout."""

    status_code = 502
    code = "generation_failed"


class InternalError(SourceQueryError):
    """Unexpected failure; the message shown to callers stays generic."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
