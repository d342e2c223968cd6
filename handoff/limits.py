"""Rate limiting shared by the relay routes."""

from __future__ import annotations

from fastapi import Request
from slowapi import Limiter

from .config import get_settings


def get_client_ip(request: Request) -> str:
    """Key the limiter on the first ``X-Forwarded-For`` hop, else the peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def escalation_rate_limit() -> str:
    return get_settings().escalation_rate_limit


limiter = Limiter(key_func=get_client_ip)
