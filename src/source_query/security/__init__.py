"""Security package."""

from source_query.security.auth import client_identity, current_principal
from source_query.security.rate_limit import (
    RateLimitBucket,
    RateLimitDecision,
    RateLimiter,
    RateLimitRule,
)

__all__ = [
    "RateLimitBucket",
    "RateLimitDecision",
    "RateLimitRule",
    "RateLimiter",
    "client_identity",
    "current_principal",
]
