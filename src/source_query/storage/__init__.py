"""Storage package."""

from source_query.storage.database import (
    Base,
    ScrapedContentORM,
    SourceORM,
    create_engine_for,
    get_session_factory,
    init_database,
    session_scope,
)
from source_query.storage.repositories import (
    ScrapedContentRepository,
    SourceRepository,
    compute_content_hash,
)

__all__ = [
    "Base",
    "ScrapedContentORM",
    "ScrapedContentRepository",
    "SourceORM",
    "SourceRepository",
    "compute_content_hash",
    "create_engine_for",
    "get_session_factory",
    "init_database",
    "session_scope",
]
