"""Question answering route."""

from fastapi import APIRouter, Depends

from source_query.api.dependencies import get_principal, rate_limited
from source_query.api.schemas import AskRequestSchema, AskResponseSchema, SourceReferenceSchema
from source_query.api.service import ROUTE_ASK, Services, get_services

router = APIRouter(tags=["ask"])


@router.post(
    "/ask",
    response_model=AskResponseSchema,
    dependencies=[Depends(rate_limited(ROUTE_ASK)), Depends(get_principal)],
)
async def ask(
    request: AskRequestSchema,
    services: Services = Depends(get_services),
):
    """
    Answer a question from the indexed sources.

    Returns the answer, the ranked sources it used, and suggested
    follow-up questions.
    """
    result = await services.query_engine.answer(request.question, request.top_k)
    return AskResponseSchema(
        answer=result.answer,
        sources=[SourceReferenceSchema(**s.model_dump()) for s in result.sources],
        follow_up_questions=result.follow_up_questions,
    )
