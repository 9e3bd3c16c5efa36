"""Source registration, ingestion and bulk maintenance routes."""

from fastapi import APIRouter, Depends, status

from source_query.api.dependencies import get_principal, rate_limited
from source_query.api.schemas import (
    BulkResponseSchema,
    IngestResponseSchema,
    RegisterDocumentSchema,
    RegisterSourceSchema,
    SourceListSchema,
    SourceSchema,
)
from source_query.api.service import (
    ROUTE_DELETE_ALL,
    ROUTE_INGEST,
    ROUTE_REINGEST_ALL,
    Services,
    get_services,
)

router = APIRouter(prefix="/sources", tags=["sources"])


@router.post("", response_model=SourceSchema, status_code=status.HTTP_201_CREATED)
async def register_source(
    request: RegisterSourceSchema,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """Register a web page. Duplicate URLs are rejected with 409."""
    source = await services.orchestrator.register_source(principal, request.url)
    return SourceSchema.from_model(source)


@router.post("/documents", response_model=SourceSchema, status_code=status.HTTP_201_CREATED)
async def register_document(
    request: RegisterDocumentSchema,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """Register uploaded text as a source."""
    source = await services.orchestrator.register_document(
        principal, request.title, request.content, request.description
    )
    return SourceSchema.from_model(source)


@router.get("", response_model=SourceListSchema)
async def list_sources(
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
):
    sources = await services.orchestrator.list_sources(principal)
    return SourceListSchema(
        sources=[SourceSchema.from_model(s) for s in sources],
        total=len(sources),
    )


@router.post(
    "/reingest-all",
    response_model=BulkResponseSchema,
    dependencies=[Depends(rate_limited(ROUTE_REINGEST_ALL))],
)
async def reingest_all(
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """
    Clear all scraped content and vectors, then ingest every source again.

    Waits for the runs to finish and reports per-source outcomes.
    """
    result = await services.orchestrator.reingest_all(principal)
    return BulkResponseSchema.from_result("Re-ingestion completed", result)


@router.post(
    "/delete-all",
    response_model=BulkResponseSchema,
    dependencies=[Depends(rate_limited(ROUTE_DELETE_ALL))],
)
async def delete_all(
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """Clear all scraped content and vectors and reset sources to unknown."""
    result = await services.orchestrator.delete_all(principal)
    return BulkResponseSchema.from_result("All scraped content deleted", result)


@router.get("/{source_id}", response_model=SourceSchema)
async def get_source(
    source_id: str,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
):
    source = await services.orchestrator.get_source(principal, source_id)
    return SourceSchema.from_model(source)


@router.delete("/{source_id}")
async def delete_source(
    source_id: str,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """Delete a source with its scraped content and vectors."""
    await services.orchestrator.delete_source(principal, source_id)
    return {"message": "Source deleted successfully"}


@router.post(
    "/{source_id}/ingest",
    response_model=IngestResponseSchema,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limited(ROUTE_INGEST))],
)
async def trigger_ingestion(
    source_id: str,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """Queue an ingestion run. Returns once the source is `pending`."""
    source = await services.orchestrator.trigger_ingestion(principal, source_id)
    return IngestResponseSchema(
        message="Ingestion started",
        source=SourceSchema.from_model(source),
    )
