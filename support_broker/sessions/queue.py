"""Admission queue for visitors waiting on the single support slot.

Strict FIFO: insertion order is the wait order, there is no priority
reordering, and re-enqueueing an id that is already waiting keeps its
original place.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass

from support_broker.errors import QueueFullError

log = logging.getLogger(__name__)

__all__ = ["AdmissionQueue", "QueueEntry"]


@dataclass(slots=True, frozen=True)
class QueueEntry:
    """A point-in-time view of one waiting session.

    Attributes
    ----------
    session_id : str
        The waiting session.
    position : int
        1-based position in the queue.
    estimated_wait : int
        Advisory wait in seconds (position x per-slot duration).
    """

    session_id: str
    position: int
    estimated_wait: int

    def to_dict(self) -> dict[str, object]:
        return {
            "sessionId": self.session_id,
            "position": self.position,
            "estimatedWait": self.estimated_wait,
        }


class AdmissionQueue:
    """Bounded FIFO of session ids.

    Attributes
    ----------
    max_size : int
        Capacity; enqueue beyond it raises QueueFullError.
    wait_unit_seconds : int
        Per-position duration used for wait estimates.
    """

    __slots__ = ("max_size", "wait_unit_seconds", "_items")

    def __init__(self, max_size: int = 100, wait_unit_seconds: int = 120) -> None:
        """Initialize an empty queue.

        Parameters
        ----------
        max_size : int
            Maximum number of waiting sessions.
        wait_unit_seconds : int
            Seconds of estimated wait per queue position.
        """
        self.max_size = max_size
        self.wait_unit_seconds = wait_unit_seconds
        self._items: list[str] = []

    def __repr__(self) -> str:
        return f"<AdmissionQueue size={len(self._items)} max={self.max_size}>"

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    @property
    def is_full(self) -> bool:
        return len(self._items) >= self.max_size

    def enqueue(self, session_id: str) -> int:
        """Append a session to the tail of the queue.

        Parameters
        ----------
        session_id : str
            Session to enqueue.

        Returns
        -------
        int
            1-based position. An id already present keeps its position.

        Raises
        ------
        QueueFullError
            If the queue is at capacity.
        """
        if session_id in self._items:
            return self._items.index(session_id) + 1
        if self.is_full:
            raise QueueFullError(len(self._items), self.max_size)
        self._items.append(session_id)
        log.debug("Enqueued %s: size now %d", session_id[:8], len(self._items))
        return len(self._items)

    def dequeue_head(self) -> str | None:
        """Remove and return the earliest-inserted id, or None if empty."""
        if not self._items:
            return None
        return self._items.pop(0)

    def peek_head(self) -> str | None:
        return self._items[0] if self._items else None

    def remove(self, session_id: str) -> bool:
        """Remove an id wherever it sits. Returns True if it was present."""
        try:
            self._items.remove(session_id)
        except ValueError:
            return False
        return True

    def position(self, session_id: str) -> int | None:
        try:
            return self._items.index(session_id) + 1
        except ValueError:
            return None

    def estimated_wait(self, position: int) -> int:
        return position * self.wait_unit_seconds

    def positions_snapshot(self) -> list[QueueEntry]:
        """Return (id, position, estimated wait) for every waiting session."""
        return [
            QueueEntry(
                session_id=sid,
                position=index + 1,
                estimated_wait=self.estimated_wait(index + 1),
            )
            for index, sid in enumerate(self._items)
        ]
