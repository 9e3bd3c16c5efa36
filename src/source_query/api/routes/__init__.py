"""Routes package."""

from source_query.api.routes.ask import router as ask_router
from source_query.api.routes.health import router as health_router
from source_query.api.routes.sources import router as sources_router

__all__ = [
    "ask_router",
    "health_router",
    "sources_router",
]
