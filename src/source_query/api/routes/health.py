"""Health and metrics API routes."""

import structlog
from fastapi import APIRouter, Depends, Response
from sqlalchemy import text

from source_query.api.schemas import ComponentStatusSchema, HealthResponseSchema
from source_query.api.service import Services, get_services
from source_query.observability import get_metrics

logger = structlog.get_logger()

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponseSchema)
async def health_check(services: Services = Depends(get_services)):
    """
    Health check endpoint.

    Returns component status and index information.
    """
    try:
        async with services.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.warning("health_database_failed", error=str(e))
        database = "error"

    vector_count = await services.index.count()
    components = ComponentStatusSchema(
        database=database,
        vector_index="ok" if vector_count else "empty",
        worker_pool="ok" if services.pool.started else "stopped",
    )

    return HealthResponseSchema(
        status="healthy" if database == "ok" and services.pool.started else "degraded",
        components=components,
        vector_count=vector_count,
        queued_jobs=services.pool.pending,
    )


@router.get("/metrics")
async def metrics():
    """Get Prometheus metrics."""
    data, content_type = get_metrics()
    return Response(content=data, media_type=content_type)
