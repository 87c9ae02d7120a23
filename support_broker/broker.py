"""Session broker: the single-slot + FIFO-queue state machine.

Owns the session registry, the admission queue, the active slot, the
promotion reservation and the relay correlation table. Every mutation
runs on one consumer task that drains a command inbox, so concurrent
callers (visitor sockets, HTTP handlers, relay updates, timers) are
serialized without locks:

- Public coroutines submit a command and await its result
- Command handlers never await; they mutate state and issue effects
- Visitor effects are non-blocking enqueues on per-connection queues
- Relay effects go to an outbox drained by a separate worker task, so a
  slow or failing support channel never stalls the state machine

Session lifecycle: queued -> active -> ended, or queued -> ended. Ended is
terminal; the record is dropped from the registry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol

from support_broker import events
from support_broker.config import Settings
from support_broker.errors import (
    BrokerError,
    DeliveryFailedError,
    NotFoundError,
    QueueFullError,
    UnroutableError,
)
from support_broker.sessions.models import Session, SessionState
from support_broker.sessions.queue import AdmissionQueue, QueueEntry
from support_broker.sessions.registry import SessionRegistry

logger = logging.getLogger(__name__)


# ── Ports ─────────────────────────────────────────────────────────────────


class VisitorSink(Protocol):
    """Outbound side of the transport adapter, addressed by connection handle."""

    def push(self, handle: str, event: dict[str, Any]) -> bool:
        """Queue an event on a connection. Must not block."""
        ...

    def close(self, handle: str, reason: str) -> None:
        """Close a connection after its pending events. Must not block."""
        ...


class RelaySink(Protocol):
    """Outbound side of the relay adapter.

    Methods returning a token give back the support channel's id for the
    sent message (used for reply correlation). Failures raise
    DeliveryFailedError.
    """

    async def notify_new_active_session(self, session_id: str) -> str | None: ...

    async def notify_queued_session(self, session_id: str, position: int) -> str | None: ...

    async def notify_session_ended(self, session_id: str, reason: str) -> None: ...

    async def notify_typing(self, session_id: str) -> None: ...

    async def deliver_visitor_message(self, session_id: str, text: str) -> str: ...


# ── Results ───────────────────────────────────────────────────────────────


class StartStatus(str, Enum):
    CONNECTED = "connected"
    QUEUED = "queued"
    REJECTED = "rejected"


@dataclass
class StartResult:
    status: StartStatus
    session_id: str
    position: int | None = None
    queue_size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "sessionId": self.session_id,
            "position": self.position,
            "queueSize": self.queue_size,
        }


@dataclass
class EndResult:
    ended: bool
    next_active_id: str | None = None


@dataclass
class StaffReplyResult:
    session_id: str
    delivered: bool


@dataclass
class QueueStatus:
    active_id: str | None
    promoting_id: str | None
    queue: list[QueueEntry] = field(default_factory=list)
    sessions: int = 0

    @property
    def queue_size(self) -> int:
        return len(self.queue)

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeId": self.active_id,
            "promotingId": self.promoting_id,
            "queueSize": self.queue_size,
            "queueSnapshot": [entry.to_dict() for entry in self.queue],
            "sessions": self.sessions,
        }


# ── Internal commands and relay jobs ──────────────────────────────────────


@dataclass
class _Command:
    fn: Callable[..., Any]
    args: tuple[Any, ...]
    future: asyncio.Future | None = None


class _RelayKind(str, Enum):
    NEW_ACTIVE = "new_active"
    QUEUED = "queued"
    ENDED = "ended"
    TYPING = "typing"
    VISITOR_MESSAGE = "visitor_message"


@dataclass
class _RelayJob:
    kind: _RelayKind
    session_id: str
    text: str = ""
    position: int = 0
    reason: str = ""


class SessionBroker:
    """Serialized owner of all shared chat-routing state."""

    def __init__(
        self,
        visitors: VisitorSink,
        relay: RelaySink,
        *,
        max_queue_size: int = 100,
        promotion_delay_ms: int = 0,
        wait_unit_seconds: int = 120,
        connect_timeout_seconds: float = 0,
        correlation_table_size: int = 1000,
    ):
        self.registry = SessionRegistry()
        self.queue = AdmissionQueue(max_size=max_queue_size, wait_unit_seconds=wait_unit_seconds)
        self._visitors = visitors
        self._relay = relay
        self._promotion_delay = promotion_delay_ms / 1000.0
        self._connect_timeout = connect_timeout_seconds
        self._correlation_limit = correlation_table_size

        self._active_id: str | None = None
        self._promoting_id: str | None = None
        self._promotion_timer: asyncio.Task | None = None
        self._connect_timers: dict[str, asyncio.Task] = {}
        self._correlations: OrderedDict[str, str] = OrderedDict()  # token -> session_id
        self._announced_queue_size = 0

        self._inbox: asyncio.Queue[_Command] = asyncio.Queue()
        self._relay_outbox: asyncio.Queue[_RelayJob] = asyncio.Queue()
        self._consumer_task: asyncio.Task | None = None
        self._relay_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Settings, visitors: VisitorSink, relay: RelaySink) -> SessionBroker:
        return cls(
            visitors,
            relay,
            max_queue_size=settings.max_queue_size,
            promotion_delay_ms=settings.promotion_delay_ms,
            wait_unit_seconds=settings.wait_unit_seconds,
            connect_timeout_seconds=settings.connect_timeout_seconds,
            correlation_table_size=settings.correlation_table_size,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    async def start(self) -> None:
        """Start the consumer and relay worker tasks."""
        if self.running:
            return
        self._consumer_task = asyncio.create_task(self._consume(), name="broker-consumer")
        self._relay_task = asyncio.create_task(self._relay_worker(), name="broker-relay")
        logger.info(
            "Broker started (max_queue=%d, promotion_delay=%.1fs)",
            self.queue.max_size,
            self._promotion_delay,
        )

    async def stop(self) -> None:
        """Cancel workers and timers. Pending callers get CancelledError."""
        timers = list(self._connect_timers.values())
        if self._promotion_timer is not None:
            timers.append(self._promotion_timer)
        self._connect_timers.clear()
        self._promotion_timer = None

        tasks = [t for t in (self._consumer_task, self._relay_task) if t is not None]
        for task in timers + tasks:
            task.cancel()
        await asyncio.gather(*timers, *tasks, return_exceptions=True)
        self._consumer_task = None
        self._relay_task = None

        while not self._inbox.empty():
            command = self._inbox.get_nowait()
            if command.future is not None and not command.future.done():
                command.future.cancel()
        logger.info("Broker stopped")

    async def wait_idle(self) -> None:
        """Wait until every queued command and relay job has been processed."""
        while True:
            await self._inbox.join()
            await self._relay_outbox.join()
            if self._inbox.empty() and self._relay_outbox.empty():
                return

    # ── Public operations ─────────────────────────────────────────────────

    async def start_session(self) -> StartResult:
        """Create a session, active if the slot is free, queued otherwise.

        Raises:
            QueueFullError: the slot is taken and the queue is at capacity
        """
        return await self._submit(self._do_start)

    async def end_session(self, session_id: str, reason: str = events.REASON_ENDED_BY_VISITOR) -> EndResult:
        """End a session. Unknown or already-ended ids are a no-op."""
        return await self._submit(self._do_end, session_id, reason)

    async def disconnect(self, session_id: str, handle: str) -> bool:
        """Handle a closed visitor connection. Stale handles are ignored."""
        return await self._submit(self._do_disconnect, session_id, handle)

    async def attach_connection(self, session_id: str, handle: str) -> Session:
        """Bind a visitor connection and push it the session's current state.

        Raises:
            NotFoundError: the session is unknown or has ended
        """
        return await self._submit(self._do_attach, session_id, handle)

    async def route_visitor_message(self, session_id: str, text: str) -> bool:
        """Relay a visitor message to support. Only the active session may send."""
        return await self._submit(self._do_route_visitor, session_id, text)

    async def route_typing(self, session_id: str) -> bool:
        return await self._submit(self._do_route_typing, session_id)

    async def route_staff_reply(
        self,
        text: str,
        *,
        session_id: str | None = None,
        token: str | int | None = None,
    ) -> StaffReplyResult:
        """Deliver a staff reply: explicit id, then correlation token.

        Raises:
            UnroutableError: neither identifier resolves to a known session
        """
        return await self._submit(
            self._do_route_staff,
            text,
            session_id,
            None if token is None else str(token),
        )

    async def register_correlation(self, token: str | int, session_id: str) -> None:
        await self._submit(self._do_register_correlation, str(token), session_id)

    async def find_session(self, ref: str) -> str | None:
        """Resolve a full id or unique id prefix to a session id."""
        return await self._submit(self._do_find, ref)

    async def queue_status(self) -> QueueStatus:
        return await self._submit(self._do_status)

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def promoting_id(self) -> str | None:
        return self._promoting_id

    # ── Inbox plumbing ────────────────────────────────────────────────────

    async def _submit(self, fn: Callable[..., Any], *args: Any) -> Any:
        if not self.running:
            raise RuntimeError("Session broker is not running")
        future = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_Command(fn=fn, args=args, future=future))
        return await future

    def _post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Fire-and-forget command (timers)."""
        self._inbox.put_nowait(_Command(fn=fn, args=args))

    async def _consume(self) -> None:
        while True:
            command = await self._inbox.get()
            try:
                result = command.fn(*command.args)
            except Exception as exc:
                if not isinstance(exc, BrokerError):
                    logger.exception("Broker command %s failed", command.fn.__name__)
                if command.future is not None and not command.future.done():
                    command.future.set_exception(exc)
            else:
                if command.future is not None and not command.future.done():
                    command.future.set_result(result)
            finally:
                self._inbox.task_done()

    async def _relay_worker(self) -> None:
        while True:
            job = await self._relay_outbox.get()
            try:
                await self._run_relay_job(job)
            except DeliveryFailedError as e:
                logger.warning("Relay %s for %s failed: %s", job.kind.value, job.session_id[:8], e)
            except Exception:
                logger.exception("Relay %s for %s crashed", job.kind.value, job.session_id[:8])
            finally:
                self._relay_outbox.task_done()

    async def _run_relay_job(self, job: _RelayJob) -> None:
        sid = job.session_id
        if job.kind == _RelayKind.VISITOR_MESSAGE:
            token = None
            try:
                token = await self._relay.deliver_visitor_message(sid, job.text)
            except DeliveryFailedError as e:
                logger.warning("Visitor message from %s not relayed: %s", sid[:8], e)
                delivered = False
            else:
                delivered = True
            await self._submit(self._do_delivery_outcome, sid, delivered, token)
            return

        token = None
        if job.kind == _RelayKind.NEW_ACTIVE:
            token = await self._relay.notify_new_active_session(sid)
        elif job.kind == _RelayKind.QUEUED:
            token = await self._relay.notify_queued_session(sid, job.position)
        elif job.kind == _RelayKind.ENDED:
            await self._relay.notify_session_ended(sid, job.reason)
        elif job.kind == _RelayKind.TYPING:
            await self._relay.notify_typing(sid)
        if token:
            await self._submit(self._do_register_correlation, str(token), sid)

    # ── Effects (called from command handlers only) ───────────────────────

    def _push(self, session: Session, event: dict[str, Any]) -> bool:
        if session.connection is None:
            return False
        return self._visitors.push(session.connection, event)

    def _relay_job(self, kind: _RelayKind, session_id: str, **fields: Any) -> None:
        self._relay_outbox.put_nowait(_RelayJob(kind=kind, session_id=session_id, **fields))

    def _remember(self, token: str, session_id: str) -> None:
        self._correlations[token] = session_id
        self._correlations.move_to_end(token)
        while len(self._correlations) > self._correlation_limit:
            self._correlations.popitem(last=False)

    def _forget(self, session_id: str) -> None:
        stale = [t for t, sid in self._correlations.items() if sid == session_id]
        for token in stale:
            del self._correlations[token]

    # ── Command handlers ──────────────────────────────────────────────────

    def _slot_free(self) -> bool:
        return self._active_id is None and self._promoting_id is None

    def _do_start(self) -> StartResult:
        if not self._slot_free() and self.queue.is_full:
            logger.warning("Start rejected: queue full (%d)", len(self.queue))
            raise QueueFullError(len(self.queue), self.queue.max_size)

        session = self.registry.create()
        self._arm_connect_timer(session.session_id)

        if self._slot_free():
            self._activate(session)
            return StartResult(StartStatus.CONNECTED, session.session_id, queue_size=len(self.queue))

        position = self.queue.enqueue(session.session_id)
        session.queue_position = position
        self._refresh_positions()
        self._relay_job(_RelayKind.QUEUED, session.session_id, position=position)
        logger.info("Session %s queued at position %d", session.short_id, position)
        return StartResult(
            StartStatus.QUEUED,
            session.session_id,
            position=position,
            queue_size=len(self.queue),
        )

    def _activate(self, session: Session) -> None:
        session.state = SessionState.ACTIVE
        session.queue_position = None
        session.activated_at = time.time()
        self._active_id = session.session_id
        self._push(session, events.connected())
        self._relay_job(_RelayKind.NEW_ACTIVE, session.session_id)
        logger.info("Session %s is now active", session.short_id)

    def _do_end(self, session_id: str, reason: str) -> EndResult:
        session = self.registry.get(session_id)
        if session is None:
            return EndResult(ended=False)

        was_active = session_id == self._active_id
        was_promoting = session_id == self._promoting_id

        self.queue.remove(session_id)
        self._cancel_connect_timer(session_id)
        self._push(session, events.session_ended(reason))
        removed = self.registry.remove(session_id)
        if removed is not None and removed.connection is not None:
            self._visitors.close(removed.connection, reason)
        self._forget(session_id)
        self._relay_job(_RelayKind.ENDED, session_id, reason=reason)
        logger.info(
            "Session %s ended (%s, was %s)",
            session_id[:8],
            reason,
            "active" if was_active else "promoting" if was_promoting else "queued",
        )

        next_id = None
        if was_active:
            self._active_id = None
            next_id = self._promote_next()
        elif was_promoting:
            self._cancel_promotion()
            next_id = self._promote_next()
        self._refresh_positions()
        return EndResult(ended=True, next_active_id=next_id)

    def _promote_next(self) -> str | None:
        head = self.queue.peek_head()
        if head is None:
            logger.info("Support slot idle")
            return None
        session = self.registry.require(head)

        if self._promotion_delay <= 0:
            self.queue.dequeue_head()
            self._activate(session)
            return head

        self._promoting_id = head
        self._push(session, events.connecting())
        self._promotion_timer = asyncio.create_task(self._promote_after_delay(head))
        logger.info("Session %s promoting in %.1fs", session.short_id, self._promotion_delay)
        return head

    async def _promote_after_delay(self, session_id: str) -> None:
        await asyncio.sleep(self._promotion_delay)
        self._post(self._do_complete_promotion, session_id)

    def _cancel_promotion(self) -> None:
        if self._promotion_timer is not None:
            self._promotion_timer.cancel()
        self._promotion_timer = None
        self._promoting_id = None

    def _do_complete_promotion(self, session_id: str) -> None:
        if self._promoting_id != session_id:
            return  # superseded or cancelled
        self._promotion_timer = None
        self._promoting_id = None
        session = self.registry.get(session_id)
        if session is None or not self.queue.remove(session_id):
            self._refresh_positions()
            return
        self._activate(session)
        self._refresh_positions()

    def _refresh_positions(self) -> None:
        """Recompute positions; waiting visitors hear of any position or queue size change."""
        size = len(self.queue)
        size_changed = size != self._announced_queue_size
        self._announced_queue_size = size
        for entry in self.queue.positions_snapshot():
            session = self.registry.get(entry.session_id)
            if session is None:
                logger.error("Queue holds unknown session %s", entry.session_id[:8])
                continue
            if session.queue_position == entry.position and not size_changed:
                continue
            session.queue_position = entry.position
            if entry.session_id != self._promoting_id:
                self._push(session, events.queued(entry.position, size, entry.estimated_wait))

    def _do_disconnect(self, session_id: str, handle: str) -> bool:
        if not self.registry.detach_connection(session_id, handle):
            logger.debug("Ignoring stale disconnect for %s", session_id[:8])
            return False
        self._do_end(session_id, events.REASON_DISCONNECTED)
        return True

    def _do_attach(self, session_id: str, handle: str) -> Session:
        session = self.registry.get(session_id)
        if session is None:
            raise NotFoundError(session_id)

        previous = session.connection
        self.registry.attach_connection(session_id, handle)
        if previous is not None and previous != handle:
            self._visitors.close(previous, "replaced")
        self._cancel_connect_timer(session_id)

        if session.is_active:
            self._push(session, events.connected())
        elif session_id == self._promoting_id:
            self._push(session, events.connecting())
        else:
            position = session.queue_position or self.queue.position(session_id) or 0
            self._push(
                session,
                events.queued(position, len(self.queue), self.queue.estimated_wait(position)),
            )
        return replace(session)

    def _do_route_visitor(self, session_id: str, text: str) -> bool:
        session = self.registry.get(session_id)
        if session is None:
            return False
        if not session.is_active:
            self._push(session, events.message_undelivered(events.REASON_NOT_ACTIVE))
            logger.debug("Dropped message from non-active session %s", session.short_id)
            return False
        self._relay_job(_RelayKind.VISITOR_MESSAGE, session_id, text=text)
        return True

    def _do_route_typing(self, session_id: str) -> bool:
        session = self.registry.get(session_id)
        if session is None or not session.is_active:
            return False
        self._relay_job(_RelayKind.TYPING, session_id)
        return True

    def _do_delivery_outcome(self, session_id: str, delivered: bool, token: str | None) -> None:
        session = self.registry.get(session_id)
        if session is None:
            return
        if token:
            self._remember(str(token), session_id)
        if not delivered:
            self._push(session, events.message_undelivered(events.REASON_DELIVERY_FAILED))
        else:
            self._push(session, events.message_delivered())

    def _do_register_correlation(self, token: str, session_id: str) -> None:
        if session_id in self.registry:
            self._remember(token, session_id)

    def _do_route_staff(self, text: str, session_id: str | None, token: str | None) -> StaffReplyResult:
        target = None
        if session_id:
            target = self.registry.find_by_prefix(session_id)
        if target is None and token is not None:
            sid = self._correlations.get(token)
            target = self.registry.get(sid) if sid else None
        if target is None:
            raise UnroutableError(
                f"No session matches id={session_id or '-'} token={token or '-'}"
            )

        delivered = self._push(target, events.support_message(text))
        if not delivered:
            logger.info("Staff reply to %s dropped: visitor not connected", target.short_id)
        return StaffReplyResult(session_id=target.session_id, delivered=delivered)

    def _do_find(self, ref: str) -> str | None:
        session = self.registry.find_by_prefix(ref)
        return session.session_id if session is not None else None

    def _do_status(self) -> QueueStatus:
        return QueueStatus(
            active_id=self._active_id,
            promoting_id=self._promoting_id,
            queue=self.queue.positions_snapshot(),
            sessions=len(self.registry),
        )

    # ── Connect timeout ───────────────────────────────────────────────────

    def _arm_connect_timer(self, session_id: str) -> None:
        if self._connect_timeout <= 0:
            return
        self._connect_timers[session_id] = asyncio.create_task(self._expire_after(session_id))

    def _cancel_connect_timer(self, session_id: str) -> None:
        timer = self._connect_timers.pop(session_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire_after(self, session_id: str) -> None:
        await asyncio.sleep(self._connect_timeout)
        self._post(self._do_expire, session_id)

    def _do_expire(self, session_id: str) -> None:
        self._connect_timers.pop(session_id, None)
        session = self.registry.get(session_id)
        if session is None or session.ever_connected:
            return
        logger.info("Session %s never connected, expiring", session.short_id)
        self._do_end(session_id, events.REASON_TIMEOUT)
