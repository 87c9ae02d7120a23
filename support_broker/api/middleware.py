"""HTTP middleware: CORS and rate limiting.

Middleware ordering (outermost first):
1. CORS -- handles OPTIONS preflight from the chat widget
2. Rate limiting -- per-client limit on session starts (slowapi)

There is no authentication; a session id is the only visitor credential.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from support_broker.config import Settings, settings

logger = logging.getLogger(__name__)

# Replaced by install_middleware from the app's settings
_limits = {
    "start": settings.start_rate_limit,
    "trust_forwarded_for": settings.trust_forwarded_for,
}


def _get_client_ip(request: Request) -> str:
    """Extract client IP, honoring X-Forwarded-For only when configured."""
    if _limits["trust_forwarded_for"]:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def start_rate_limit() -> str:
    return str(_limits["start"])


# Rate limiter
limiter = Limiter(key_func=_get_client_ip)


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    logger.info("Rate limit hit on %s from %s", request.url.path, _get_client_ip(request))
    return JSONResponse(
        {"status": "rejected", "error": "Rate limit exceeded", "retry_after": retry_after},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def install_middleware(app: FastAPI, config: Settings) -> None:
    """Install CORS and rate limiting on the app.

    Middleware is added in reverse order (last added = outermost = runs first).
    """
    _limits["start"] = config.start_rate_limit
    _limits["trust_forwarded_for"] = config.trust_forwarded_for
    limiter.enabled = config.rate_limit_enabled
    limiter.reset()

    # 2. Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # 1. CORS middleware (outermost -- runs first, handles OPTIONS preflight)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
