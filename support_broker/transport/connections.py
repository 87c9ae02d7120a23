"""Visitor connection table.

The transport owns every visitor WebSocket. The broker only ever sees the
opaque handle of a connection and talks to it through ConnectionTable,
whose push/close never block: each connection drains its own outbound
queue on its own writer task, so a slow browser only stalls itself.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)

# Oldest frames are dropped past this many pending sends
_MAX_PENDING_FRAMES = 200
# How long shutdown waits for queued frames and the close to flush
_DRAIN_TIMEOUT_SECONDS = 2.0

_CLOSE = object()


class VisitorConnection:
    """One visitor WebSocket plus its outbound queue and writer task."""

    def __init__(self, websocket: WebSocket, handle: str | None = None):
        self.handle = handle or uuid.uuid4().hex
        self.session_id: str | None = None
        self._websocket = websocket
        self._outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._writer: asyncio.Task | None = None
        self._closing = False
        self._close_reason = ""

    @property
    def closed(self) -> bool:
        return self._closing

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self.handle[:8]}")

    def push(self, event: dict[str, Any]) -> bool:
        """Queue a frame for sending. Returns False once the connection is closing."""
        if self._closing:
            return False
        if self._outbox.qsize() >= _MAX_PENDING_FRAMES:
            try:
                self._outbox.get_nowait()
                logger.warning("Connection %s backlog full, dropped oldest frame", self.handle[:8])
            except asyncio.QueueEmpty:
                pass
        self._outbox.put_nowait(event)
        return True

    def close(self, reason: str = "") -> None:
        """Close after every frame already queued has been sent."""
        if self._closing:
            return
        self._closing = True
        self._close_reason = reason
        self._outbox.put_nowait(_CLOSE)

    async def shutdown(self) -> None:
        """Flush pending frames (bounded) and stop the writer."""
        self.close("shutdown")
        if self._writer is None or self._writer.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._writer), timeout=_DRAIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.info("Connection %s did not drain in time", self.handle[:8])
            self._writer.cancel()

    async def _write_loop(self) -> None:
        while True:
            item = await self._outbox.get()
            if item is _CLOSE:
                await self._close_socket()
                return
            try:
                await self._websocket.send_json(item)
            except Exception as e:
                # A failed send closes this connection only
                logger.info("Send to connection %s failed: %s", self.handle[:8], e)
                self._closing = True
                await self._close_socket()
                return

    async def _close_socket(self) -> None:
        try:
            await self._websocket.close(code=1000, reason=self._close_reason[:120])
        except Exception as e:
            logger.debug("Close of connection %s ignored: %s", self.handle[:8], e)


class ConnectionTable:
    """Connections keyed by handle. Implements the broker's VisitorSink."""

    def __init__(self):
        self._connections: dict[str, VisitorConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, handle: object) -> bool:
        return handle in self._connections

    def add(self, connection: VisitorConnection) -> None:
        self._connections[connection.handle] = connection
        logger.debug("Connection opened: %s (total: %d)", connection.handle[:8], len(self._connections))

    def discard(self, handle: str) -> None:
        self._connections.pop(handle, None)
        logger.debug("Connection released: %s (total: %d)", handle[:8], len(self._connections))

    def get(self, handle: str) -> VisitorConnection | None:
        return self._connections.get(handle)

    def push(self, handle: str, event: dict[str, Any]) -> bool:
        connection = self._connections.get(handle)
        if connection is None:
            logger.debug("Push to unknown connection %s dropped", handle[:8])
            return False
        return connection.push(event)

    def close(self, handle: str, reason: str) -> None:
        connection = self._connections.get(handle)
        if connection is not None:
            connection.close(reason)

    async def close_all(self) -> None:
        for connection in list(self._connections.values()):
            await connection.shutdown()
        self._connections.clear()
