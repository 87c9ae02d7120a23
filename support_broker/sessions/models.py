"""Visitor session data models.

Contract:
- session_id is a UUID4, created on start and never reused
- connection is a key into the transport's connection table, never the
  connection object itself
- queue_position is only meaningful while the session is queued
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from enum import Enum


class SessionState(str, Enum):
    """Visitor session lifecycle states."""
    QUEUED = "queued"
    ACTIVE = "active"
    ENDED = "ended"  # Terminal


@dataclass
class Session:
    """A visitor session waiting for, or chatting with, support."""
    session_id: str = ""
    state: SessionState = SessionState.QUEUED
    queue_position: int | None = None
    connection: str | None = None  # Handle into the connection table
    created_at: float = 0.0
    connected_at: float = 0.0  # First attach, 0.0 if never connected
    activated_at: float = 0.0

    @property
    def short_id(self) -> str:
        return self.session_id[:8]

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def ever_connected(self) -> bool:
        return self.connected_at > 0.0


def create_session() -> Session:
    """Create a new queued session with a generated session_id."""
    return Session(
        session_id=str(uuid.uuid4()),
        state=SessionState.QUEUED,
        created_at=time.time(),
    )
