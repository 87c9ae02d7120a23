"""Visitor-facing event frames.

Every frame pushed to a visitor connection is a flat JSON object with a
``type`` and a ``timestamp`` (ISO-8601 UTC). Field names follow the
browser client (camelCase).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

CONNECTED = "connected"
CONNECTING = "connecting"
QUEUED = "queued"
MESSAGE_DELIVERED = "message_delivered"
MESSAGE_UNDELIVERED = "message_undelivered"
SESSION_ENDED = "session_ended"
SUPPORT_MESSAGE = "support_message"
ERROR = "error"

# Reasons carried by session_ended / message_undelivered
REASON_ENDED_BY_VISITOR = "ended_by_visitor"
REASON_ENDED_BY_SUPPORT = "ended_by_support"
REASON_DISCONNECTED = "disconnected"
REASON_TIMEOUT = "timeout"
REASON_NOT_ACTIVE = "not_active"
REASON_DELIVERY_FAILED = "delivery_failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _frame(event_type: str, **fields: Any) -> dict[str, Any]:
    frame = {"type": event_type, **fields}
    frame.setdefault("timestamp", _now_iso())
    return frame


def connected() -> dict[str, Any]:
    return _frame(CONNECTED, message="You are connected to support.")


def connecting() -> dict[str, Any]:
    """Sent during the promotion grace period, before ``connected``."""
    return _frame(CONNECTING, message="Support is available, connecting you now...", position=0)


def queued(position: int, queue_size: int, estimated_wait: int) -> dict[str, Any]:
    return _frame(
        QUEUED,
        position=position,
        queueSize=queue_size,
        estimatedWait=estimated_wait,
    )


def message_delivered() -> dict[str, Any]:
    return _frame(MESSAGE_DELIVERED)


def message_undelivered(reason: str) -> dict[str, Any]:
    return _frame(MESSAGE_UNDELIVERED, reason=reason)


def session_ended(reason: str) -> dict[str, Any]:
    return _frame(SESSION_ENDED, reason=reason)


def support_message(text: str) -> dict[str, Any]:
    return _frame(SUPPORT_MESSAGE, text=text)


def error(message: str) -> dict[str, Any]:
    return _frame(ERROR, message=message)
