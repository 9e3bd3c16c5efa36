"""Request dependencies: principal and rate limiting."""

from typing import Callable

from fastapi import Depends, Request

from source_query.api.service import Services, get_services
from source_query.errors import RateLimitError
from source_query.observability import RATE_LIMIT_REJECTIONS
from source_query.security import client_identity, current_principal


def get_principal(request: Request) -> str:
    """Dependency returning the calling principal."""
    return current_principal(request)


def rate_limited(route: str) -> Callable:
    """Dependency factory enforcing the rate limit registered for *route*."""

    def check(request: Request, services: Services = Depends(get_services)):
        decision = services.rate_limiter.check(client_identity(request), route)
        if not decision.allowed:
            RATE_LIMIT_REJECTIONS.labels(route=route).inc()
            raise RateLimitError(
                "Too many requests. Please try again later.",
                retry_after=decision.retry_after,
            )

    return check
