"""Visitor HTTP API: start, end, queue status, health.

Session ids are the visitor's only credential, so status views expose
short ids only.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from support_broker import __version__, events
from support_broker.api.middleware import limiter, start_rate_limit
from support_broker.errors import QueueFullError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sessions"])
health_router = APIRouter(tags=["health"])


class EndRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    user_id: Optional[str] = Field(default=None, alias="userId")  # Older widget builds


def _public_status(status) -> dict:
    return {
        "activeId": status.active_id[:8] if status.active_id else None,
        "queueSize": status.queue_size,
        "queueSnapshot": [
            {
                "sessionId": entry.session_id[:8],
                "position": entry.position,
                "estimatedWait": entry.estimated_wait,
            }
            for entry in status.queue
        ],
        "sessions": status.sessions,
    }


@router.post("/start")
@limiter.limit(start_rate_limit)
async def start_session(request: Request):
    """Open a support session: connected if support is free, queued otherwise."""
    broker = request.app.state.broker
    try:
        result = await broker.start_session()
    except QueueFullError as e:
        logger.warning("Start rejected: %s", e)
        return JSONResponse(
            {"status": "rejected", "error": "Support queue is full, please try again later"},
            status_code=503,
        )
    return result.to_dict()


@router.post("/end")
async def end_session(request: Request, body: Optional[EndRequest] = None):
    session_id = (body.session_id or body.user_id) if body else None
    if not session_id:
        return JSONResponse({"error": "sessionId is required"}, status_code=400)

    result = await request.app.state.broker.end_session(session_id, events.REASON_ENDED_BY_VISITOR)
    next_id = result.next_active_id
    return {"status": "ended", "nextActiveId": next_id[:8] if next_id else None}


@router.get("/queue-status")
async def queue_status(request: Request):
    status = await request.app.state.broker.queue_status()
    return _public_status(status)


@health_router.get("/health")
async def health(request: Request):
    """Liveness plus a queue and relay summary."""
    status = await request.app.state.broker.queue_status()
    return {
        "status": "healthy",
        "service": "support-broker",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queue": _public_status(status),
        "relay": request.app.state.relay.status(),
    }
