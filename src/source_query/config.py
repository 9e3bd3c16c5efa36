"""Configuration management using pydantic-settings."""

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SOURCE_QUERY_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Paths
    data_dir: Path = Path("data")
    index_dir: Path = Path("data/indexes")
    database_url: str = "sqlite+aiosqlite:///data/source_query.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    cors_origins: str = "http://localhost:3000"

    # Identity
    principal_header: str = "X-Principal-Id"
    default_principal: str = "cli"

    # Fetching
    fetch_timeout_seconds: float = 60.0
    fetch_max_bytes: int = 5 * 1024 * 1024
    fetch_max_retries: int = 3
    fetch_retry_delay_seconds: float = 2.0
    fetch_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # Embedding
    embedding_provider: str = "sentence-transformers"  # or "http"
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_api_url: str = "https://api.openai.com/v1"
    embedding_api_key: str | None = None
    embedding_batch_size: int = 5
    embedding_max_retries: int = 5
    embedding_retry_delay_seconds: float = 5.0
    query_embedding_timeout_seconds: float = 5.0

    # Vector index
    vector_upsert_batch_size: int = 100
    vector_query_timeout_seconds: float = 10.0

    # Generation
    llm_api_url: str = "https://openrouter.ai/api/v1"
    llm_api_key: str | None = None
    llm_model: str = "deepseek/deepseek-r1-distill-llama-70b:free"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 1000
    llm_timeout_seconds: float = 30.0

    # Query
    default_top_k: int = 5
    max_top_k: int = 10
    context_char_budget: int = 3000

    # Background / bulk work
    ingest_workers: int = 3
    bulk_concurrency: int = 3
    bulk_batch_delay_seconds: float = 5.0

    # Rate limits: (max requests, window seconds)
    rate_limit_ask: tuple[int, int] = (60, 60)
    rate_limit_scrape: tuple[int, int] = (10, 5 * 60)
    rate_limit_bulk: tuple[int, int] = (5, 15 * 60)
    rate_limit_purge_interval_seconds: float = 60.0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Ensure directories exist
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.index_dir.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
