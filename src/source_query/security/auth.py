"""Caller identity helpers."""

from fastapi import Request

from source_query.config import get_settings
from source_query.errors import AuthError


def current_principal(request: Request) -> str:
    """Principal id from the configured identity header."""
    header = get_settings().principal_header
    principal = (request.headers.get(header) or "").strip()
    if not principal:
        raise AuthError("Unauthorized")
    return principal


def client_identity(request: Request) -> str:
    """Client address for rate limiting, honouring proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First hop is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"
