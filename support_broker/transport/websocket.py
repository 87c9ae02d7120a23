"""Visitor WebSocket endpoint.

Wire protocol (JSON text frames):

Inbound
- {"type": "identify", "sessionId": "..."}   binds the socket to a session
- {"type": "request_activation", "userId": "..."}   legacy alias of identify
- {"type": "chat", "text": "..."}   message for support (active session only)
- {"type": "typing"}   typing indicator for support
- {"type": "end"}   visitor ends the chat

Outbound frames are built in support_broker.events.

A socket is inert until identified; anything but an identify frame is
ignored. A ``?sessionId=`` query parameter identifies on open.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from support_broker import events
from support_broker.broker import SessionBroker
from support_broker.errors import NotFoundError
from support_broker.transport.connections import ConnectionTable, VisitorConnection

logger = logging.getLogger(__name__)

router = APIRouter(tags=["visitor"])

_IDENTIFY_TYPES = {"identify", "request_activation"}
_MAX_TEXT_LENGTH = 4000


def parse_frame(raw: str) -> dict[str, Any] | None:
    """Decode one inbound frame. Returns None for anything malformed."""
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        return None
    return frame


async def identify(broker: SessionBroker, connection: VisitorConnection, session_id: str) -> str | None:
    """Bind a connection to a session. Closes the connection on unknown ids."""
    try:
        await broker.attach_connection(session_id, connection.handle)
    except NotFoundError:
        logger.info("Connection %s tried unknown session %s", connection.handle[:8], session_id[:8])
        connection.push(events.error("Invalid or expired session"))
        connection.close("invalid session")
        return None
    connection.session_id = session_id
    logger.info("Connection %s identified as session %s", connection.handle[:8], session_id[:8])
    return session_id


async def serve_visitor(websocket: WebSocket, broker: SessionBroker, table: ConnectionTable) -> None:
    """Run one visitor connection until it closes.

    Calls broker.disconnect exactly once for an identified connection, from
    the single exit path of this coroutine.
    """
    await websocket.accept()
    connection = VisitorConnection(websocket)
    table.add(connection)
    connection.start()
    session_id: str | None = None

    try:
        requested = websocket.query_params.get("sessionId")
        if requested:
            session_id = await identify(broker, connection, requested)
            if session_id is None:
                return

        while not connection.closed:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
            raw = message.get("text")
            if raw is None:
                logger.debug("Ignoring binary frame on %s", connection.handle[:8])
                continue
            frame = parse_frame(raw)
            if frame is None:
                logger.debug("Ignoring malformed frame on %s", connection.handle[:8])
                continue
            frame_type = frame["type"]

            if session_id is None:
                if frame_type in _IDENTIFY_TYPES:
                    requested = str(frame.get("sessionId") or frame.get("userId") or "")
                    session_id = await identify(broker, connection, requested)
                    if session_id is None:
                        return
                continue

            if frame_type == "chat":
                text = str(frame.get("text", "")).strip()[:_MAX_TEXT_LENGTH]
                if text:
                    await broker.route_visitor_message(session_id, text)
            elif frame_type == "typing":
                await broker.route_typing(session_id)
            elif frame_type == "end":
                await broker.end_session(session_id, events.REASON_ENDED_BY_VISITOR)
            elif frame_type not in _IDENTIFY_TYPES:
                logger.debug("Unknown frame type %r from %s", frame_type, session_id[:8])
    except WebSocketDisconnect:
        pass
    except RuntimeError:
        # Starlette raises RuntimeError when receiving on a socket we closed
        if not connection.closed:
            raise
    finally:
        table.discard(connection.handle)
        if session_id is not None and broker.running:
            await broker.disconnect(session_id, connection.handle)
        await connection.shutdown()


@router.websocket("/ws")
async def visitor_socket(websocket: WebSocket):
    """Visitor chat socket."""
    await serve_visitor(websocket, websocket.app.state.broker, websocket.app.state.connections)
