"""Broker error taxonomy.

- NotFoundError: an unknown (or already ended) session id was referenced
- QueueFullError: a start request was rejected because the queue is at capacity
- UnroutableError: a staff reply could not be matched to any session
- DeliveryFailedError: a relay or connection send failed

NotFound and DeliveryFailed are swallowed (logged) on best-effort notifications.
QueueFull surfaces to the HTTP layer and Unroutable to the relay adapter.
"""

from __future__ import annotations

__all__ = [
    "BrokerError",
    "NotFoundError",
    "QueueFullError",
    "UnroutableError",
    "DeliveryFailedError",
]


class BrokerError(Exception):
    """Base exception for broker errors."""

    pass


class NotFoundError(BrokerError):
    """Raised when a session id is not known to the registry."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class QueueFullError(BrokerError):
    """Raised when the admission queue is at capacity."""

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(f"Support queue is full (size={size}, max={max_size})")
        self.size = size
        self.max_size = max_size


class UnroutableError(BrokerError):
    """Raised when a staff reply cannot be matched to a session."""

    pass


class DeliveryFailedError(BrokerError):
    """Raised when a message could not be handed to its transport."""

    pass
