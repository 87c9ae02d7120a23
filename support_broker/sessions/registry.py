"""In-memory registry of known visitor sessions.

Holds every session that has not ended, together with the key of the
connection currently bound to it. The registry never owns a connection:
removing a session hands back the record so the caller can instruct the
transport to close whatever handle was attached.

Not thread-safe on its own; the broker's single consumer task is the only
writer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator

from support_broker.errors import NotFoundError
from support_broker.sessions.models import Session, SessionState, create_session

logger = logging.getLogger(__name__)

# Shortest id prefix staff may use to address a session
_MIN_PREFIX_LENGTH = 4


class SessionRegistry:
    """In-memory session store keyed by session_id."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def sessions(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def create(self) -> Session:
        """Create and register a new session with no connection."""
        session = create_session()
        self._sessions[session.session_id] = session
        logger.info("Session created: %s", session.short_id)
        return session

    def get(self, session_id: str) -> Session | None:
        """Get a session by ID. Returns None if unknown."""
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        """Get a session by ID or raise NotFoundError."""
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(session_id)
        return session

    def find_by_prefix(self, prefix: str) -> Session | None:
        """Resolve a full id or a unique id prefix.

        Returns None when nothing matches, the prefix is too short, or more
        than one session shares the prefix.
        """
        prefix = prefix.strip().lower()
        exact = self._sessions.get(prefix)
        if exact is not None:
            return exact
        if len(prefix) < _MIN_PREFIX_LENGTH:
            return None

        matches = [s for sid, s in self._sessions.items() if sid.startswith(prefix)]
        if len(matches) != 1:
            if matches:
                logger.info("Ambiguous session prefix %r (%d matches)", prefix, len(matches))
            return None
        return matches[0]

    def attach_connection(self, session_id: str, handle: str) -> Session:
        """Bind a connection handle, replacing any previous one (reconnect)."""
        session = self.require(session_id)
        previous = session.connection
        session.connection = handle
        if not session.connected_at:
            session.connected_at = time.time()
        if previous and previous != handle:
            logger.info("Session %s reconnected (handle replaced)", session.short_id)
        return session

    def detach_connection(self, session_id: str, handle: str) -> bool:
        """Clear the connection handle if it is still the given one."""
        session = self._sessions.get(session_id)
        if session is None or session.connection != handle:
            return False
        session.connection = None
        return True

    def remove(self, session_id: str) -> Session | None:
        """Remove a session and mark it ended.

        The returned record still carries the connection handle that was
        attached, so the caller can release it.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session.state = SessionState.ENDED
        session.queue_position = None
        logger.info("Session removed: %s", session.short_id)
        return session
